"""
Risk classification for improvement actions.
"""

from typing import Union

from .config import ImproverConfig

RISK_MAP = {
    "auto_tag": "low",
    "create_gap_stubs": "low",
    "suggest_schema": "low",
    "promote_to_type": "medium",
    "merge_duplicates": "medium",
    "archive_stale": "high",
    "resolve_contradictions": "high",
}

# Ordered by caution required
RISK_ORDER = ("low", "medium", "high")


def _kind_of(action_or_kind) -> str:
    if isinstance(action_or_kind, str):
        return action_or_kind
    return getattr(action_or_kind, "kind", "")


def classify_risk(action_or_kind: Union[str, object]) -> str:
    """Map an action (or action kind) to its risk tier.

    Kinds missing from RISK_MAP are treated as high risk.
    """
    return RISK_MAP.get(_kind_of(action_or_kind), "high")


def should_auto_execute(action_or_kind, config: ImproverConfig) -> bool:
    """Whether an action may be applied without human approval."""
    return config.auto_execute_enabled(classify_risk(action_or_kind))


def risk_at_least(tier: str, threshold: str) -> bool:
    """Compare two tiers; unknown tiers rank as high."""
    def rank(t):
        return RISK_ORDER.index(t) if t in RISK_ORDER else len(RISK_ORDER) - 1
    return rank(tier) >= rank(threshold)
