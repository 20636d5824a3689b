"""
Self-model - what the store knows about its own shape and health.

Built from the store, the schema and the observer document, and cached in the
observer document's schema_cache after every tick.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .heuristics import Contradiction, detect_keyword_contradictions

STALE_DAYS = 90
RECENTLY_UPDATED_DAYS = 7
STALEST_LIMIT = 5
MISSED_QUERY_GAP_THRESHOLD = 3

HEALTHY_SCORE = 0.7
NEEDS_ATTENTION_SCORE = 0.4


@dataclass
class Gap:
    description: str
    severity: str  # info, warning
    suggestion: str

    def to_dict(self) -> Dict[str, str]:
        return {"description": self.description, "severity": self.severity, "suggestion": self.suggestion}


@dataclass
class StaleEntry:
    id: str
    context_type: Optional[str]
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "context_type": self.context_type, "updated_at": self.updated_at.isoformat()}


@dataclass
class SelfModel:
    # identity
    context_count: int
    type_breakdown: Dict[str, int]
    bubble_count: int
    oldest_entry: datetime
    newest_entry: datetime
    # coverage
    types_with_entries: List[str]
    types_empty: List[str]
    untyped: int
    # freshness
    recently_updated: int
    stale: int
    stalest_entries: List[StaleEntry]
    gaps: List[Gap]
    contradictions: List[Contradiction]
    # health
    coverage_score: float
    freshness_score: float
    overall_health: str  # healthy, needs-attention, sparse
    pending_actions_count: int = 0
    recent_improvements: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": {
                "context_count": self.context_count,
                "type_breakdown": dict(self.type_breakdown),
                "bubble_count": self.bubble_count,
                "oldest_entry": self.oldest_entry.isoformat(),
                "newest_entry": self.newest_entry.isoformat(),
            },
            "coverage": {
                "types_with_entries": list(self.types_with_entries),
                "types_empty": list(self.types_empty),
                "untyped": self.untyped,
            },
            "freshness": {
                "recently_updated": self.recently_updated,
                "stale": self.stale,
                "stalest_entries": [e.to_dict() for e in self.stalest_entries],
            },
            "gaps": [g.to_dict() for g in self.gaps],
            "contradictions": [c.to_dict() for c in self.contradictions],
            "health": {
                "coverage_score": self.coverage_score,
                "freshness_score": self.freshness_score,
                "overall_health": self.overall_health,
            },
            "pending_actions_count": self.pending_actions_count,
            "recent_improvements": list(self.recent_improvements),
        }


def _days_since(stamp: datetime, now: datetime) -> float:
    return (now - stamp).total_seconds() / 86400


def build_self_model(store, schema=None, observer=None, now: Optional[datetime] = None) -> SelfModel:
    """Summarise the store's identity, coverage, freshness, gaps and health."""
    now = now or datetime.now(timezone.utc)
    active = [e for e in store.list_contexts() if not e.archived]
    bubbles = store.list_bubbles()

    type_breakdown: Dict[str, int] = {}
    untyped = 0
    for entry in active:
        if entry.context_type:
            type_breakdown[entry.context_type] = type_breakdown.get(entry.context_type, 0) + 1
        else:
            untyped += 1

    created = sorted(e.created_at for e in active)
    oldest = created[0] if created else now
    newest = created[-1] if created else now

    defined_types = [t.name for t in schema.types] if schema else []
    types_with_entries = [t for t in defined_types if type_breakdown.get(t, 0) > 0]
    types_empty = [t for t in defined_types if type_breakdown.get(t, 0) == 0]

    recently_updated = sum(1 for e in active if _days_since(e.updated_at, now) <= RECENTLY_UPDATED_DAYS)
    stale_entries = sorted(
        (e for e in active if _days_since(e.updated_at, now) >= STALE_DAYS),
        key=lambda e: e.updated_at,
    )
    stalest = [
        StaleEntry(id=e.id, context_type=e.context_type, updated_at=e.updated_at)
        for e in stale_entries[:STALEST_LIMIT]
    ]

    gaps = []
    for empty_type in types_empty:
        gaps.append(Gap(
            description=f'Type "{empty_type}" is defined in your schema but has 0 entries.',
            severity="warning",
            suggestion=f'Save a typed context with type "{empty_type}" to start populating it.',
        ))

    if observer is not None:
        for query, count in observer.get_summary()["missed_query_count"].items():
            if count >= MISSED_QUERY_GAP_THRESHOLD:
                gaps.append(Gap(
                    description=f'Agents searched for "{query}" {count} times but found nothing.',
                    severity="warning",
                    suggestion=f'Save a context entry covering "{query}" to fill this gap.',
                ))

    if stale_entries:
        gaps.append(Gap(
            description=f"{len(stale_entries)} entries haven't been updated in {STALE_DAYS}+ days.",
            severity="info",
            suggestion="Review and update or archive stale entries.",
        ))

    coverage_score = len(types_with_entries) / len(defined_types) if defined_types else 1.0
    freshness_score = recently_updated / len(active) if active else 1.0
    average = (coverage_score + freshness_score) / 2
    if not active:
        overall = "sparse"
    elif average >= HEALTHY_SCORE:
        overall = "healthy"
    elif average >= NEEDS_ATTENTION_SCORE:
        overall = "needs-attention"
    else:
        overall = "sparse"

    pending_count = 0
    recent = []
    if observer is not None:
        document = observer.load_raw()
        pending_count = sum(1 for a in document.get("pending_actions", []) if a.get("status") == "pending")
        recent = [
            {"timestamp": r["timestamp"], "actions": r.get("actions", [])}
            for r in observer.get_recent_improvements(since=None)
        ]

    return SelfModel(
        context_count=len(active),
        type_breakdown=type_breakdown,
        bubble_count=len(bubbles),
        oldest_entry=oldest,
        newest_entry=newest,
        types_with_entries=types_with_entries,
        types_empty=types_empty,
        untyped=untyped,
        recently_updated=recently_updated,
        stale=len(stale_entries),
        stalest_entries=stalest,
        gaps=gaps,
        contradictions=detect_keyword_contradictions(active),
        coverage_score=round(coverage_score, 2),
        freshness_score=round(freshness_score, 2),
        overall_health=overall,
        pending_actions_count=pending_count,
        recent_improvements=recent,
    )


def format_self_model(model: SelfModel) -> str:
    """Render the self-model as a short first-person report."""
    lines = ["I am the context store for this workspace.", ""]
    lines.append(f"I have {model.context_count} active entries:")
    for context_type, count in model.type_breakdown.items():
        lines.append(f"  - {context_type}: {count} entries")
    if model.untyped > 0:
        lines.append(f"  - (untyped): {model.untyped} entries")

    lines.append("")
    lines.append(
        f"Health: {model.overall_health} "
        f"(coverage: {round(model.coverage_score * 100)}%, "
        f"freshness: {round(model.freshness_score * 100)}%)"
    )

    if model.types_empty:
        lines.append("")
        lines.append("Schema types with no entries:")
        for name in model.types_empty:
            lines.append(f'  ! "{name}" is defined but has 0 entries')

    if model.gaps:
        lines.append("")
        lines.append("Gaps:")
        for gap in model.gaps:
            marker = "!" if gap.severity == "warning" else "i"
            lines.append(f"  {marker} {gap.description}")
            lines.append(f"    -> {gap.suggestion}")

    if model.contradictions:
        lines.append("")
        lines.append("Potential contradictions:")
        for contradiction in model.contradictions:
            lines.append(f"  ! {contradiction.description}")
            lines.append(f"    Entries: {contradiction.entry_a} vs {contradiction.entry_b}")

    if model.pending_actions_count > 0:
        lines.append("")
        lines.append(f"{model.pending_actions_count} self-improvement action(s) await your approval.")

    if model.recent_improvements:
        total = sum(len(r["actions"]) for r in model.recent_improvements)
        lines.append("")
        lines.append(f"In the last 24 hours, {total} autonomous improvement(s) were applied.")

    return "\n".join(lines)


def refresh_cache(store, schema, observer, now: Optional[datetime] = None) -> SelfModel:
    """Rebuild the self-model and store it in the observer document."""
    model = build_self_model(store, schema, observer, now)
    with observer.lock:
        document = observer.load_raw()
        cache = dict(document.get("schema_cache") or {})
        cache["analysis_results"] = {"self_model": model.to_dict()}
        cache["last_analysis"] = (now or datetime.now(timezone.utc)).isoformat()
        document["schema_cache"] = cache
        observer.persist_raw(document)
    return model
