"""
Observer document - events, summary, improvements and document durability.
"""

from datetime import datetime, timedelta, timezone

import pytest

from opencontext.core.observer import MAX_EVENTS, TRIM_TO, Observer


class TestLog:
    """Test event logging and the running summary."""

    def test_reads_and_writes_update_frequencies(self, observer):
        observer.log("read", "recall_context", context_type="decision")
        observer.log("read", "recall_context", context_type="decision")
        observer.log("write", "save_context", context_type="note")

        summary = observer.get_summary()
        assert summary["total_reads"] == 2
        assert summary["total_writes"] == 1
        assert summary["type_read_frequency"] == {"decision": 2}
        assert observer.get_type_popularity() == {
            "decision": {"reads": 2, "writes": 0},
            "note": {"reads": 0, "writes": 1},
        }

    def test_query_misses_are_counted(self, observer):
        for _ in range(3):
            observer.log("query_miss", "recall_context", query="budget template")
        observer.log("query_miss", "recall_context", query="tax forms")

        summary = observer.get_summary()
        assert summary["total_misses"] == 4
        assert summary["missed_query_count"] == {"budget template": 3, "tax forms": 1}
        assert observer.get_missed_queries() == ["budget template", "tax forms"]

    def test_invalid_action_rejected(self, observer):
        with pytest.raises(ValueError, match="Invalid observation action"):
            observer.log("explode", "tool")

    def test_event_fields(self, observer):
        observer.log("read", "recall_context", entry_ids=["e1"], agent="cli")

        event = observer.load_raw()["events"][0]
        assert event["entry_ids"] == ["e1"]
        assert event["agent"] == "cli"
        assert "query" not in event


class TestRotation:

    def test_rotate_trims_to_newest(self, observer):
        document = observer.load_raw()
        document["events"] = [{"timestamp": str(i), "action": "read", "tool": "t"} for i in range(MAX_EVENTS + 1)]
        observer.persist_raw(document)

        assert observer.rotate_if_needed() is True

        events = observer.load_raw()["events"]
        assert len(events) == TRIM_TO
        assert events[-1]["timestamp"] == str(MAX_EVENTS)

    def test_rotate_noop_under_limit(self, observer):
        observer.log("read", "t")
        assert observer.rotate_if_needed() is False


class TestImprovements:

    def test_improvement_log_is_trimmed(self, observer):
        document = observer.load_raw()
        document["improvements"] = [{"timestamp": "x", "actions": []}] * 200
        observer.persist_raw(document)

        observer.log_self_improvement({"timestamp": "last", "actions": []})

        improvements = observer.load_raw()["improvements"]
        assert len(improvements) == 100
        assert improvements[-1]["timestamp"] == "last"

    def test_recent_improvements_window(self, observer):
        now = datetime.now(timezone.utc)
        observer.log_self_improvement({"timestamp": (now - timedelta(hours=30)).isoformat(), "actions": []})
        observer.log_self_improvement({"timestamp": (now - timedelta(hours=1)).isoformat(), "actions": [{"type": "auto_tag", "count": 3}]})
        observer.log_self_improvement({"timestamp": "not-a-date", "actions": []})

        recent = observer.get_recent_improvements()
        assert len(recent) == 1
        assert recent[0]["actions"] == [{"type": "auto_tag", "count": 3}]

        assert len(observer.get_recent_improvements(since=now - timedelta(days=2))) == 2

    def test_naive_timestamps_are_utc(self, observer):
        now = datetime.now(timezone.utc)
        naive_recent = (now - timedelta(hours=1)).replace(tzinfo=None)
        naive_old = (now - timedelta(hours=30)).replace(tzinfo=None)
        observer.log_self_improvement({"timestamp": naive_recent.isoformat(), "actions": []})
        observer.log_self_improvement({"timestamp": naive_old.isoformat(), "actions": []})

        recent = observer.get_recent_improvements()
        assert [r["timestamp"] for r in recent] == [naive_recent.isoformat()]

        assert len(observer.get_recent_improvements(since=naive_old - timedelta(hours=1))) == 2


class TestDocument:
    """Test loading and persisting the whole document."""

    def test_missing_file_loads_empty(self, tmp_path):
        document = Observer(tmp_path / "nope" / "awareness.json").load_raw()
        assert document["events"] == []
        assert document["pending_actions"] == []
        assert document["protections"] == []

    def test_corrupt_file_loads_empty(self, tmp_path):
        path = tmp_path / "awareness.json"
        path.write_text("{not json", encoding="utf-8")

        assert Observer(path).load_raw()["improvements"] == []

    def test_unknown_keys_preserved(self, observer):
        document = observer.load_raw()
        document["experimental"] = {"x": 1}
        observer.persist_raw(document)

        observer.log("write", "save_context")

        assert observer.load_raw()["experimental"] == {"x": 1}

    def test_persist_creates_parent_directories(self, tmp_path):
        observer = Observer(tmp_path / "a" / "b" / "awareness.json")
        observer.log("read", "t")
        assert observer.path.exists()

    def test_write_failure_propagates(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory", encoding="utf-8")
        observer = Observer(blocker / "awareness.json")

        with pytest.raises(OSError):
            observer.log("read", "t")
