"""
Observer - usage telemetry plus the control plane's persisted state.

Everything lives in one JSON document per store (awareness.json): the event
log and its running summary, self-improvement records, pending actions,
protections and the self-model cache. Every mutation is a read-modify-write
of the whole document, so callers serialise mutators through `lock`.
"""

import json
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from util.logging import logger

MAX_EVENTS = 1000
TRIM_TO = 500
MAX_IMPROVEMENTS = 200
IMPROVEMENTS_TRIM_TO = 100

EVENT_ACTIONS = ("read", "write", "update", "delete", "query_miss")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def as_utc(stamp: datetime) -> datetime:
    """Timezone-aware copy of stamp; naive values are taken to be UTC."""
    if stamp.tzinfo is None:
        return stamp.replace(tzinfo=timezone.utc)
    return stamp


def empty_summary() -> Dict[str, Any]:
    return {
        "total_reads": 0,
        "total_writes": 0,
        "total_misses": 0,
        "missed_queries": [],
        "missed_query_count": {},
        "type_read_frequency": {},
        "type_write_frequency": {},
        "last_activity": _now_iso(),
    }


def empty_document() -> Dict[str, Any]:
    return {
        "events": [],
        "summary": empty_summary(),
        "improvements": [],
        "pending_actions": [],
        "protections": [],
    }


class Observer:
    """File-backed observation log for one store."""

    def __init__(self, path):
        self.path = Path(path)
        self.lock = threading.RLock()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return empty_document()
        try:
            parsed = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Observer document {self.path} unreadable, starting empty: {e}")
            return empty_document()
        if not isinstance(parsed, dict):
            return empty_document()

        # Unknown top-level keys are kept so newer documents round-trip
        document = dict(parsed)
        for key, default in empty_document().items():
            if document.get(key) is None:
                document[key] = default
        return document

    def _persist(self, document: Dict[str, Any]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        tmp_path.replace(self.path)

    def load_raw(self) -> Dict[str, Any]:
        """Read the whole document."""
        with self.lock:
            return self._load()

    def persist_raw(self, document: Dict[str, Any]):
        """Write the whole document. I/O errors propagate."""
        with self.lock:
            self._persist(document)

    def log(self, action: str, tool: str, context_type: Optional[str] = None,
            entry_ids: Optional[List[str]] = None, query: Optional[str] = None,
            agent: Optional[str] = None, useful: Optional[bool] = None):
        """Record one observation event and update the running summary."""
        if action not in EVENT_ACTIONS:
            raise ValueError(f"Invalid observation action: {action}")

        event = {"timestamp": _now_iso(), "action": action, "tool": tool}
        for key, value in (("context_type", context_type), ("entry_ids", entry_ids),
                           ("query", query), ("agent", agent), ("useful", useful)):
            if value is not None:
                event[key] = value

        with self.lock:
            document = self._load()
            document["events"].append(event)

            summary = document["summary"]
            summary["last_activity"] = event["timestamp"]

            if action == "read":
                summary["total_reads"] += 1
                if context_type:
                    freq = summary["type_read_frequency"]
                    freq[context_type] = freq.get(context_type, 0) + 1
            elif action == "write":
                summary["total_writes"] += 1
                if context_type:
                    freq = summary["type_write_frequency"]
                    freq[context_type] = freq.get(context_type, 0) + 1
            elif action == "query_miss":
                summary["total_misses"] += 1
                if query:
                    counts = summary["missed_query_count"]
                    counts[query] = counts.get(query, 0) + 1
                    if query not in summary["missed_queries"]:
                        summary["missed_queries"].append(query)

            if len(document["events"]) > MAX_EVENTS:
                document["events"] = document["events"][-TRIM_TO:]

            self._persist(document)

    def log_self_improvement(self, record: Dict[str, Any]):
        """Append a self-improvement record, keeping the newest ones."""
        with self.lock:
            document = self._load()
            document["improvements"].append(record)
            if len(document["improvements"]) > MAX_IMPROVEMENTS:
                document["improvements"] = document["improvements"][-IMPROVEMENTS_TRIM_TO:]
            self._persist(document)

    def get_summary(self) -> Dict[str, Any]:
        return self.load_raw()["summary"]

    def get_missed_queries(self) -> List[str]:
        return self.get_summary()["missed_queries"]

    def get_type_popularity(self) -> Dict[str, Dict[str, int]]:
        """Reads and writes per context type."""
        summary = self.get_summary()
        reads = summary["type_read_frequency"]
        writes = summary["type_write_frequency"]
        return {
            t: {"reads": reads.get(t, 0), "writes": writes.get(t, 0)}
            for t in sorted(set(reads) | set(writes))
        }

    def rotate_if_needed(self) -> bool:
        """Trim the event log once it grows past MAX_EVENTS."""
        with self.lock:
            document = self._load()
            if len(document["events"]) <= MAX_EVENTS:
                return False
            document["events"] = document["events"][-TRIM_TO:]
            self._persist(document)
            return True

    def get_recent_improvements(self, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Improvement records since a point in time (default: last 24 hours)."""
        if since is None:
            since = datetime.now(timezone.utc) - timedelta(hours=24)
        since = as_utc(since)
        recent = []
        for record in self.load_raw()["improvements"]:
            try:
                stamp = as_utc(datetime.fromisoformat(record["timestamp"]))
            except (KeyError, TypeError, ValueError):
                continue
            if stamp >= since:
                recent.append(record)
        return recent
