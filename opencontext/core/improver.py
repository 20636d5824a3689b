"""
Self-improvement tick - the periodic Observe / Decide / Route / Record pass
over the context store, plus the execution path shared with human approval.

Every candidate action goes through the control plane: protected targets are
removed, low-risk actions are applied immediately, everything else is parked
as a pending action for a human to approve or dismiss.
"""

import queue
import re
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from util.logging import audit_event, logger

from .actions import (
    ArchiveStale, AutoTag, CreateGapStubs, EntryRef, ImprovementAction,
    MergeDuplicates, PromoteToType, ResolveContradictions, SuggestSchema,
    TypeSuggestion,
)
from .awareness import build_self_model, refresh_cache
from .config import ImproverConfig
from .control_plane import ApprovalResult, ControlPlane
from .heuristics import (
    detect_near_duplicates, extract_keywords, find_promotable_entries, is_stale,
)
from .observer import Observer
from .protections import Protection, is_kind_blocked, is_protected

AUTO_TAG_MIN_UNTAGGED = 3
GAP_MIN_MISSES = 3
SCHEMA_SUGGESTION_MIN_UNTYPED = 5

TICK_REASONING = "Identified during self-improvement tick based on store analysis."
GAP_TAGS = ["gap", "needs-input"]
GAP_SOURCE = "self-improvement"
_GAP_QUERY = re.compile(r'searched for "([^"]+)"')


class UnsupportedActionError(Exception):
    """Raised when asked to execute an action kind this version does not know."""
    pass


class Analyzer(Protocol):
    """Text-understanding capability that proposes schema types."""

    def suggest_schema_types(self, untyped_entries: Sequence) -> List[Dict[str, Any]]:
        ...


@dataclass
class TickReport:
    """Outcome of one self-improvement tick."""
    started_at: datetime
    completed_at: Optional[datetime] = None
    expired: int = 0
    candidates: List[str] = field(default_factory=list)
    executed: List[Dict[str, Any]] = field(default_factory=list)
    enqueued: List[str] = field(default_factory=list)
    skipped: List[Dict[str, str]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    deadline_exceeded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert report to dictionary for serialization."""
        data = {
            "started_at": self.started_at.isoformat(),
            "expired": self.expired,
            "candidates": self.candidates,
            "executed": self.executed,
            "enqueued": self.enqueued,
            "skipped": self.skipped,
            "errors": self.errors,
            "deadline_exceeded": self.deadline_exceeded,
        }
        if self.completed_at:
            data["completed_at"] = self.completed_at.isoformat()
        return data


def describe_action(action: ImprovementAction) -> str:
    """One-line human description of an action."""
    n = action.count()
    if isinstance(action, AutoTag):
        return f"Auto-tag {n} untagged entries using keyword extraction"
    if isinstance(action, MergeDuplicates):
        return f"Merge {n} near-duplicate entry pair(s) (>80% content overlap)"
    if isinstance(action, PromoteToType):
        return f"Promote {n} untyped entries to matching schema types"
    if isinstance(action, ArchiveStale):
        return f"Archive {n} entries older than 180 days with zero reads"
    if isinstance(action, CreateGapStubs):
        return f"Create {n} stub entry(ies) for repeatedly-missed queries"
    if isinstance(action, ResolveContradictions):
        return f"Archive older entry in {n} contradiction pair(s)"
    if isinstance(action, SuggestSchema):
        return f"Propose {n} new schema type(s) from untyped entry clusters"
    return "Unknown action type"


def generate_preview(action: ImprovementAction) -> Dict[str, Any]:
    """What a reviewer sees before approving an action."""
    if isinstance(action, ArchiveStale):
        return {"entries": [e.to_dict() for e in action.entries], "reversible": True}
    if isinstance(action, MergeDuplicates):
        return {
            "pairs": [[a, b] for a, b in action.pairs],
            "note": "Content of both entries will be merged; one soft-deleted",
        }
    if isinstance(action, PromoteToType):
        return {"entries": [e.to_dict() for e in action.entries]}
    if isinstance(action, SuggestSchema):
        return {"suggestions": list(action.suggestions)}
    return {}


def _archive(store, entry_id: str) -> bool:
    entry = store.get_context(entry_id)
    if entry is None:
        return False
    store.update_context(entry.id, entry.content, archived=True)
    return True


def _merge_pair(store, id_a: str, id_b: str) -> bool:
    a = store.get_context(id_a)
    b = store.get_context(id_b)
    if a is None or b is None:
        return False

    keep, loser = (a, b) if a.updated_at >= b.updated_at else (b, a)
    content = keep.content if len(keep.content) >= len(loser.content) else loser.content
    tags = list(dict.fromkeys(keep.tags + loser.tags))

    store.update_context(keep.id, content, tags=tags)
    store.update_context(loser.id, loser.content, archived=True)
    return True


def execute_improvement(action: ImprovementAction, store, observer: Observer, schema=None) -> int:
    """Apply an action to the store and return how many items it affected.

    Entries that no longer exist are skipped.
    """
    affected = 0

    if isinstance(action, AutoTag):
        for ref in action.entries:
            entry = store.get_context(ref.id)
            if entry is None or entry.tags:
                continue
            keywords = extract_keywords(entry.content)
            if keywords:
                store.update_context(entry.id, entry.content, tags=keywords)
                affected += 1

    elif isinstance(action, CreateGapStubs):
        missed = observer.get_summary()["missed_query_count"]
        for query in action.queries:
            count = missed.get(query, 0)
            store.save_context(
                f'[GAP] Agents have searched for "{query}" {count} times but no context exists. '
                f'Please add relevant information.',
                tags=list(GAP_TAGS),
                source=GAP_SOURCE,
            )
            affected += 1

    elif isinstance(action, ArchiveStale):
        affected = sum(1 for ref in action.entries if _archive(store, ref.id))

    elif isinstance(action, MergeDuplicates):
        affected = sum(1 for a, b in action.pairs if _merge_pair(store, a, b))

    elif isinstance(action, PromoteToType):
        for suggestion in action.entries:
            if store.update_context_type(suggestion.id, suggestion.suggested_type) is not None:
                affected += 1

    elif isinstance(action, ResolveContradictions):
        affected = sum(1 for c in action.contradictions if _archive(store, c.archive_id))

    elif isinstance(action, SuggestSchema):
        # Suggestions live in the pending action; nothing to write
        pass

    else:
        raise UnsupportedActionError(f"Cannot execute unknown action type: {action.kind!r}")

    return affected


def narrow_to_unprotected(action: ImprovementAction, protections: List[Protection]) -> Optional[ImprovementAction]:
    """Drop protected targets from an action.

    A merge pair is dropped when either side is protected. Returns None when
    the action had targets and every one of them is protected.
    """
    kind = action.kind

    def allowed(entry_id):
        return not is_protected(protections, entry_id, kind)

    if isinstance(action, (AutoTag, ArchiveStale, PromoteToType)):
        entries = [e for e in action.entries if allowed(e.id)]
        if action.entries and not entries:
            return None
        return replace(action, entries=entries)

    if isinstance(action, MergeDuplicates):
        pairs = [(a, b) for a, b in action.pairs if allowed(a) and allowed(b)]
        if action.pairs and not pairs:
            return None
        return replace(action, pairs=pairs)

    if isinstance(action, ResolveContradictions):
        contradictions = [c for c in action.contradictions if allowed(c.archive_id)]
        if action.contradictions and not contradictions:
            return None
        return replace(action, contradictions=contradictions)

    return action


class SelfImprovementTick:
    """One Observe / Decide / Route / Record pass over a store."""

    def __init__(self, store, observer: Observer, config: Optional[ImproverConfig] = None,
                 schema=None, analyzer: Optional[Analyzer] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.observer = observer
        self.config = config or ImproverConfig()
        self.schema = schema
        self.analyzer = analyzer
        self.clock = clock
        self.control_plane = ControlPlane(observer, self.config)
        self._deadline = 0.0

    def _remaining(self) -> float:
        return self._deadline - self.clock()

    def _expired(self) -> bool:
        return self._remaining() <= 0

    def run(self) -> TickReport:
        report = TickReport(started_at=datetime.now(timezone.utc))
        self._deadline = self.clock() + self.config.tick_timeout_ms / 1000

        with self.observer.lock:
            start = time.time()
            self.observer.rotate_if_needed()
            report.expired = self.control_plane.expire_stale()
            now = datetime.now(timezone.utc)
            self_model = build_self_model(self.store, self.schema, self.observer, now)
            summary = self.observer.get_summary()
            logger.log_tick_phase("observe", start, time.time(), {"expired": report.expired})

            start = time.time()
            candidates = self._decide(self_model, summary, now, report)
            report.candidates = [a.kind for a in candidates]
            logger.log_tick_phase("decide", start, time.time(), {"candidates": report.candidates})

            start = time.time()
            self._route(candidates, report)
            logger.log_tick_phase("route", start, time.time(), {
                "executed": len(report.executed),
                "enqueued": len(report.enqueued),
            })

            if report.executed:
                self.observer.log_self_improvement({
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "actions": report.executed,
                    "auto_executed": True,
                })
            refresh_cache(self.store, self.schema, self.observer)

        report.completed_at = datetime.now(timezone.utc)
        return report

    def _decide(self, self_model, summary: Dict[str, Any], now: datetime,
                report: TickReport) -> List[ImprovementAction]:
        candidates: List[ImprovementAction] = []
        entries = self.store.list_contexts()

        untagged = [e for e in entries if not e.archived and not e.tags]
        if len(untagged) >= AUTO_TAG_MIN_UNTAGGED:
            candidates.append(AutoTag(entries=[EntryRef(id=e.id) for e in untagged]))

        steps = (
            ("merge_duplicates", lambda: self._find_duplicates(entries)),
            ("promote_to_type", lambda: self._find_promotions(entries)),
            ("archive_stale", lambda: self._find_stale(self_model, summary, now)),
            ("create_gap_stubs", lambda: self._find_gaps(entries, summary)),
            ("suggest_schema", lambda: self._suggest_schema(entries, report)),
        )
        for index, (name, step) in enumerate(steps):
            if self._expired():
                report.deadline_exceeded = True
                logger.log_tick_deadline(f"decide.{name}", len(steps) - index)
                break
            action = step()
            if action is not None:
                candidates.append(action)

        return candidates

    def _find_duplicates(self, entries) -> Optional[ImprovementAction]:
        pairs = detect_near_duplicates(entries)
        return MergeDuplicates(pairs=pairs) if pairs else None

    def _find_promotions(self, entries) -> Optional[ImprovementAction]:
        if self.schema is None:
            return None
        promotable = find_promotable_entries(entries, self.schema)
        if not promotable:
            return None
        return PromoteToType(entries=[
            TypeSuggestion(id=entry.id, suggested_type=suggested) for entry, suggested in promotable
        ])

    def _find_stale(self, self_model, summary, now) -> Optional[ImprovementAction]:
        reads = summary["type_read_frequency"]
        archivable = [
            e for e in self_model.stalest_entries
            if is_stale(e.updated_at, now, reads.get(e.context_type or "untyped", 0))
        ]
        if not archivable:
            return None
        return ArchiveStale(entries=[
            EntryRef(id=e.id, updated_at=e.updated_at.isoformat()) for e in archivable
        ])

    def _find_gaps(self, entries, summary) -> Optional[ImprovementAction]:
        demanded = [q for q, count in summary["missed_query_count"].items() if count >= GAP_MIN_MISSES]

        covered = set()
        for entry in entries:
            if "gap" not in entry.tags:
                continue
            match = _GAP_QUERY.search(entry.content)
            if match:
                covered.add(match.group(1))

        queries = [q for q in demanded if q not in covered]
        return CreateGapStubs(queries=queries) if queries else None

    def _suggest_schema(self, entries, report: TickReport) -> Optional[ImprovementAction]:
        if self.analyzer is None:
            return None
        untyped = [e for e in entries if not e.context_type and not e.archived]
        if len(untyped) < SCHEMA_SUGGESTION_MIN_UNTYPED:
            return None

        timeout = max(min(self._remaining(), self.config.analyzer_timeout_ms / 1000), 0)
        results: queue.Queue = queue.Queue(maxsize=1)

        def call_analyzer():
            try:
                results.put((True, self.analyzer.suggest_schema_types(untyped)))
            except Exception as e:
                results.put((False, e))

        # Daemon thread: an abandoned call never holds up interpreter exit
        worker = threading.Thread(target=call_analyzer, name="opencontext-analyzer", daemon=True)
        worker.start()
        try:
            ok, value = results.get(timeout=timeout)
        except queue.Empty:
            ok, value = False, TimeoutError(f"Analyzer timed out after {timeout:.2f}s")

        if not ok:
            logger.log_action_failed("suggest_schema", value, mode="analyzer")
            report.errors.append(f"suggest_schema: {str(value) or type(value).__name__}")
            return None

        return SuggestSchema(suggestions=list(value)) if value else None

    def _route(self, candidates: List[ImprovementAction], report: TickReport):
        for index, action in enumerate(candidates):
            if self._expired():
                report.deadline_exceeded = True
                logger.log_tick_deadline("route", len(candidates) - index)
                break

            kind = action.kind
            protections = self.control_plane.list_protections()
            if is_kind_blocked(protections, kind):
                self._skip(report, kind, "pattern_protected")
                continue
            narrowed = narrow_to_unprotected(action, protections)
            if narrowed is None:
                self._skip(report, kind, "all_targets_protected")
                continue

            if self.control_plane.should_auto_execute(narrowed):
                try:
                    execute_improvement(narrowed, self.store, self.observer, self.schema)
                except Exception as e:
                    logger.log_action_failed(kind, e)
                    report.errors.append(f"{kind}: {e}")
                    continue
                report.executed.append({"type": kind, "count": narrowed.count()})
                self.observer.log("write", "self-improvement", context_type=kind)
                logger.log_action_executed(kind, narrowed.count())
            elif any(p.type == kind for p in self.control_plane.list_pending()):
                self._skip(report, kind, "already_pending")
            else:
                pending = self.control_plane.enqueue(
                    narrowed,
                    description=describe_action(narrowed),
                    reasoning=TICK_REASONING,
                    preview=generate_preview(narrowed),
                )
                report.enqueued.append(pending.id)

    def _skip(self, report: TickReport, kind: str, reason: str):
        report.skipped.append({"type": kind, "reason": reason})
        logger.log_action_skipped(kind, reason)


def self_improvement_tick(store, observer: Observer, config: Optional[ImproverConfig] = None,
                          schema=None, analyzer: Optional[Analyzer] = None) -> TickReport:
    """Run one self-improvement tick."""
    return SelfImprovementTick(store, observer, config, schema, analyzer).run()


def approve_and_execute(control_plane: ControlPlane, action_id: str, store, schema=None) -> ApprovalResult:
    """Approve a pending action, then apply it.

    An execution failure is reported in the result; the approval stands.
    Approval and execution run under the observer lock, so they never
    interleave with a running tick.
    """
    with control_plane.observer.lock:
        approval = control_plane.approve(action_id)
        if not approval.executed:
            return approval

        action = approval.action.action
        try:
            count = execute_improvement(action, store, control_plane.observer, schema)
        except Exception as e:
            logger.log_action_failed(action.kind, e, mode="approved")
            return ApprovalResult(True, f"{approval.result} Execution failed: {e}", approval.action)

    logger.log_action_executed(action.kind, count, mode="approved")
    audit_event("pending_action.applied", {"action_id": action_id, "action_type": action.kind, "count": count},
                payload=action.to_dict())
    return ApprovalResult(True, f"{approval.result} Applied to {count} item(s).", approval.action)
