"""
Improvement actions - the mutations the self-improvement loop can propose.

One dataclass per action kind, each carrying only the payload its execution
needs. Persisted form is a dict with a "type" key plus the payload fields;
fields this version does not know about are kept in `extra` and written back
unchanged.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Tuple


def _split_known(data: Dict[str, Any], known: Tuple[str, ...],
                 optional: Tuple[str, ...] = ()) -> Dict[str, Any]:
    """Fields outside `known`, plus optional fields stored as explicit nulls."""
    return {
        k: v for k, v in data.items()
        if k not in known or (k in optional and v is None)
    }


def _merge_extra(data: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in extra.items():
        data.setdefault(key, value)
    return data


@dataclass
class EntryRef:
    """Reference to a context entry, with an optional update timestamp snapshot."""
    id: str
    updated_at: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.id}
        if self.updated_at is not None:
            data["updated_at"] = self.updated_at
        return _merge_extra(data, self.extra)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EntryRef':
        return cls(
            id=data["id"],
            updated_at=data.get("updated_at"),
            extra=_split_known(data, ("id", "updated_at"), optional=("updated_at",)),
        )


@dataclass
class TypeSuggestion:
    """An untyped entry and the schema type it should be promoted to."""
    id: str
    suggested_type: str
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.id, "suggested_type": self.suggested_type}
        return _merge_extra(data, self.extra)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TypeSuggestion':
        return cls(
            id=data["id"],
            suggested_type=data["suggested_type"],
            extra=_split_known(data, ("id", "suggested_type")),
        )


@dataclass
class ContradictionRef:
    """A contradicting pair; archive_id names the older side to retire."""
    archive_id: str
    keep_id: Optional[str] = None
    description: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {"archive_id": self.archive_id}
        if self.keep_id is not None:
            data["keep_id"] = self.keep_id
        if self.description is not None:
            data["description"] = self.description
        return _merge_extra(data, self.extra)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContradictionRef':
        return cls(
            archive_id=data["archive_id"],
            keep_id=data.get("keep_id"),
            description=data.get("description"),
            extra=_split_known(data, ("archive_id", "keep_id", "description"), optional=("keep_id", "description")),
        )


@dataclass
class ImprovementAction:
    """Base class for all action kinds."""
    kind: ClassVar[str] = ""
    extra: Dict[str, Any] = field(default_factory=dict, kw_only=True)

    def target_entry_ids(self) -> List[str]:
        """Entry IDs this action would touch (used by protection checks)."""
        return []

    def count(self) -> int:
        """Size of the action, reported in execution notes."""
        return 1

    def payload(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        data = {"type": self.kind}
        data.update(self.payload())
        data.update(self.extra)
        return data


@dataclass
class AutoTag(ImprovementAction):
    kind: ClassVar[str] = "auto_tag"
    entries: List[EntryRef] = field(default_factory=list)

    def target_entry_ids(self) -> List[str]:
        return [e.id for e in self.entries]

    def count(self) -> int:
        return len(self.entries)

    def payload(self) -> Dict[str, Any]:
        return {"entries": [e.to_dict() for e in self.entries]}


@dataclass
class MergeDuplicates(ImprovementAction):
    kind: ClassVar[str] = "merge_duplicates"
    pairs: List[Tuple[str, str]] = field(default_factory=list)

    def target_entry_ids(self) -> List[str]:
        ids = []
        for a, b in self.pairs:
            for entry_id in (a, b):
                if entry_id not in ids:
                    ids.append(entry_id)
        return ids

    def count(self) -> int:
        return len(self.pairs)

    def payload(self) -> Dict[str, Any]:
        return {"pairs": [[a, b] for a, b in self.pairs]}


@dataclass
class PromoteToType(ImprovementAction):
    kind: ClassVar[str] = "promote_to_type"
    entries: List[TypeSuggestion] = field(default_factory=list)

    def target_entry_ids(self) -> List[str]:
        return [e.id for e in self.entries]

    def count(self) -> int:
        return len(self.entries)

    def payload(self) -> Dict[str, Any]:
        return {"entries": [e.to_dict() for e in self.entries]}


@dataclass
class ArchiveStale(ImprovementAction):
    kind: ClassVar[str] = "archive_stale"
    entries: List[EntryRef] = field(default_factory=list)

    def target_entry_ids(self) -> List[str]:
        return [e.id for e in self.entries]

    def count(self) -> int:
        return len(self.entries)

    def payload(self) -> Dict[str, Any]:
        return {"entries": [e.to_dict() for e in self.entries]}


@dataclass
class CreateGapStubs(ImprovementAction):
    kind: ClassVar[str] = "create_gap_stubs"
    queries: List[str] = field(default_factory=list)

    def count(self) -> int:
        return len(self.queries)

    def payload(self) -> Dict[str, Any]:
        return {"queries": list(self.queries)}


@dataclass
class ResolveContradictions(ImprovementAction):
    kind: ClassVar[str] = "resolve_contradictions"
    contradictions: List[ContradictionRef] = field(default_factory=list)

    def target_entry_ids(self) -> List[str]:
        return [c.archive_id for c in self.contradictions]

    def count(self) -> int:
        return len(self.contradictions)

    def payload(self) -> Dict[str, Any]:
        return {"contradictions": [c.to_dict() for c in self.contradictions]}


@dataclass
class SuggestSchema(ImprovementAction):
    kind: ClassVar[str] = "suggest_schema"
    suggestions: List[Dict[str, Any]] = field(default_factory=list)

    def count(self) -> int:
        return len(self.suggestions)

    def payload(self) -> Dict[str, Any]:
        return {"suggestions": list(self.suggestions)}


@dataclass
class UnknownAction(ImprovementAction):
    """An action this version cannot interpret: an unknown kind or a
    malformed payload.

    Loaded from persisted state so the document round-trips; never executed.
    """
    type_name: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return self.type_name

    def target_entry_ids(self) -> List[str]:
        entries = self.raw.get("entries") or []
        return [e["id"] for e in entries if isinstance(e, dict) and e.get("id")]

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.raw)


ACTION_TYPES = {
    cls.kind: cls
    for cls in (AutoTag, MergeDuplicates, PromoteToType, ArchiveStale,
                CreateGapStubs, ResolveContradictions, SuggestSchema)
}


def _parse_known(kind: str, data: Dict[str, Any]) -> Optional[ImprovementAction]:
    if kind in ("auto_tag", "archive_stale"):
        cls = ACTION_TYPES[kind]
        return cls(
            entries=[EntryRef.from_dict(e) for e in data.get("entries") or []],
            extra=_split_known(data, ("type", "entries")),
        )
    if kind == "merge_duplicates":
        return MergeDuplicates(
            pairs=[(p[0], p[1]) for p in data.get("pairs") or []],
            extra=_split_known(data, ("type", "pairs")),
        )
    if kind == "promote_to_type":
        return PromoteToType(
            entries=[TypeSuggestion.from_dict(e) for e in data.get("entries") or []],
            extra=_split_known(data, ("type", "entries")),
        )
    if kind == "create_gap_stubs":
        return CreateGapStubs(
            queries=list(data.get("queries") or []),
            extra=_split_known(data, ("type", "queries")),
        )
    if kind == "resolve_contradictions":
        return ResolveContradictions(
            contradictions=[ContradictionRef.from_dict(c) for c in data.get("contradictions") or []],
            extra=_split_known(data, ("type", "contradictions")),
        )
    if kind == "suggest_schema":
        return SuggestSchema(
            suggestions=list(data.get("suggestions") or []),
            extra=_split_known(data, ("type", "suggestions")),
        )

    return None


def action_from_dict(data: Dict[str, Any]) -> ImprovementAction:
    """Rebuild an action from its persisted form.

    Unrecognised kinds and malformed payloads (an entry without an id, a
    short pair) load as UnknownAction so one bad record never blocks the rest
    of the queue.
    """
    kind = data.get("type", "")
    try:
        action = _parse_known(kind, data)
    except (KeyError, IndexError, TypeError, AttributeError):
        action = None
    if action is None:
        return UnknownAction(type_name=kind, raw=dict(data))
    return action
