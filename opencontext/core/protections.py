"""
Protection registry - standing vetoes on improvement actions.

A protection is bound either to a single entry or to an action-kind pattern,
and lists the action kinds it blocks. The helpers here are pure functions over
lists of protections and pending actions; persistence is handled by the
control plane.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

# Dismissals of one action kind needed before a pattern protection is learned
AUTO_LEARN_THRESHOLD = 3

_KNOWN_FIELDS = ("entry_id", "pattern", "scope", "protected_from", "reason", "created_at")
# Explicit nulls for these are written back as null
_OPTIONAL_FIELDS = ("entry_id", "pattern", "scope")


@dataclass
class Protection:
    protected_from: List[str]
    reason: str
    created_at: datetime
    entry_id: Optional[str] = None
    pattern: Optional[str] = None
    scope: Optional[Dict[str, str]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.entry_id and not self.pattern:
            raise ValueError("Protection requires an entry_id or a pattern")
        if not self.protected_from:
            raise ValueError("Protection must block at least one action kind")

    @property
    def is_pattern(self) -> bool:
        return not self.entry_id and bool(self.pattern)

    def blocks(self, entry_id: Optional[str], action_type: str) -> bool:
        """Whether this protection vetoes action_type against entry_id."""
        if action_type not in self.protected_from:
            return False
        if self.entry_id:
            return entry_id is not None and self.entry_id == entry_id
        return self.pattern == action_type

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        data: Dict[str, Any] = {}
        if self.entry_id is not None:
            data["entry_id"] = self.entry_id
        if self.pattern is not None:
            data["pattern"] = self.pattern
        if self.scope is not None:
            data["scope"] = dict(self.scope)
        data["protected_from"] = list(self.protected_from)
        data["reason"] = self.reason
        data["created_at"] = self.created_at.isoformat()
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'Protection':
        """Create from dictionary (for loading from storage)."""
        return cls(
            entry_id=data.get("entry_id"),
            pattern=data.get("pattern"),
            scope=data.get("scope"),
            protected_from=list(data.get("protected_from") or []),
            reason=data.get("reason", ""),
            created_at=datetime.fromisoformat(data["created_at"]),
            extra={
                k: v for k, v in data.items()
                if k not in _KNOWN_FIELDS or (k in _OPTIONAL_FIELDS and v is None)
            },
        )


def is_protected(protections: Iterable[Protection], entry_id: Optional[str], action_type: str) -> bool:
    """True iff some protection names this entry, or is a pattern for this
    action kind with no entry restriction, and lists the kind as blocked."""
    return any(p.blocks(entry_id, action_type) for p in protections)


def is_kind_blocked(protections: Iterable[Protection], action_type: str) -> bool:
    """True iff a pattern-level protection blocks every action of this kind."""
    return any(p.is_pattern and p.blocks(None, action_type) for p in protections)


def has_pattern_protection(protections: Iterable[Protection], action_type: str) -> bool:
    return any(p.is_pattern and p.pattern == action_type for p in protections)


def entry_protections(entry_ids: Iterable[str], action_type: str, reason: str,
                      now: Optional[datetime] = None) -> List[Protection]:
    """One entry-bound protection per target entry of a dismissed action."""
    now = now or datetime.now(timezone.utc)
    return [
        Protection(entry_id=entry_id, protected_from=[action_type], reason=reason, created_at=now)
        for entry_id in entry_ids
        if entry_id
    ]


def learn_from_dismissals(pending_actions: Iterable, protections: Iterable[Protection],
                          action_type: str, now: Optional[datetime] = None) -> Optional[Protection]:
    """Derive a pattern protection from the dismissal history.

    Counts terminal dismissals of action_type in the persisted history; once
    the count reaches AUTO_LEARN_THRESHOLD and no pattern protection for the
    kind exists yet, returns the protection to install. Returns None otherwise.
    """
    if has_pattern_protection(protections, action_type):
        return None

    dismissed = sum(
        1 for a in pending_actions
        if a.status == "dismissed" and a.action.kind == action_type
    )
    if dismissed < AUTO_LEARN_THRESHOLD:
        return None

    return Protection(
        pattern=action_type,
        protected_from=[action_type],
        reason=f'Auto-learned: user dismissed {dismissed} "{action_type}" actions',
        created_at=now or datetime.now(timezone.utc),
    )
