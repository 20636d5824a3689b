"""
Control plane - pending action queue, approvals, dismissals and protections.
"""

import re
from datetime import datetime, timedelta, timezone

import pytest

from opencontext.core.actions import (
    ArchiveStale, AutoTag, CreateGapStubs, EntryRef, MergeDuplicates, action_from_dict,
)
from opencontext.core.config import ImproverConfig
from opencontext.core.control_plane import ControlPlane, PendingAction
from opencontext.core.observer import Observer
from opencontext.core.protections import Protection


def enqueue_archive(control_plane, *entry_ids, **kwargs):
    action = ArchiveStale(entries=[EntryRef(id=e) for e in entry_ids])
    return control_plane.enqueue(action, "Archive entries", "test", {}, **kwargs)


def raw_pending(action_id, now, expires_at=None, status="pending", action=None):
    """A pending action record as it sits in the observer document."""
    return {
        "id": action_id,
        "created_at": now.isoformat(),
        "expires_at": (expires_at or now + timedelta(days=1)).isoformat(),
        "action": action or {"type": "archive_stale", "entries": [{"id": "e1"}]},
        "risk": "high",
        "description": "Archive entries",
        "reasoning": "",
        "preview": {},
        "status": status,
    }


class TestEnqueue:
    """Test adding actions to the queue."""

    def test_enqueue_assigns_id_and_pending_status(self, control_plane):
        pending = enqueue_archive(control_plane, "e1")

        assert re.fullmatch(r"pa-[0-9a-f]{8}", pending.id)
        assert pending.status == "pending"
        assert pending.risk == "high"
        assert control_plane.list_pending() == [pending]

    def test_default_expiry_uses_configured_ttl(self, tmp_path, observer):
        control_plane = ControlPlane(observer, ImproverConfig(home=tmp_path, pending_ttl_ms=60_000))
        created = datetime(2025, 1, 1, tzinfo=timezone.utc)

        pending = enqueue_archive(control_plane, "e1", created_at=created)

        assert pending.expires_at == created + timedelta(minutes=1)

    def test_explicit_risk_is_kept(self, control_plane):
        pending = control_plane.enqueue(AutoTag(), "desc", "why", risk="medium")
        assert pending.risk == "medium"

    def test_ids_are_unique(self, control_plane):
        ids = {enqueue_archive(control_plane, "e1").id for _ in range(20)}
        assert len(ids) == 20

    def test_list_pending_keeps_store_order(self, control_plane):
        first = enqueue_archive(control_plane, "e1")
        second = control_plane.enqueue(AutoTag(entries=[EntryRef(id="e2")]), "tag", "why")

        assert [a.id for a in control_plane.list_pending()] == [first.id, second.id]

    def test_get_action(self, control_plane):
        pending = enqueue_archive(control_plane, "e1")
        assert control_plane.get_action(pending.id) == pending
        assert control_plane.get_action("pa-missing") is None


class TestApprove:
    """Test approval transitions."""

    def test_approve_pending(self, control_plane):
        pending = enqueue_archive(control_plane, "e1")

        result = control_plane.approve(pending.id)

        assert result.executed is True
        assert result.result == f"Action {pending.id} (archive_stale) approved."
        assert control_plane.get_action(pending.id).status == "approved"
        assert control_plane.list_pending() == []

    def test_approve_unknown_id(self, control_plane):
        result = control_plane.approve("pa-00000000")

        assert result.executed is False
        assert result.result == 'No pending action found with ID "pa-00000000".'

    def test_approve_twice_is_noop(self, control_plane):
        pending = enqueue_archive(control_plane, "e1")
        control_plane.approve(pending.id)

        result = control_plane.approve(pending.id)

        assert result.executed is False
        assert result.result == f"Action {pending.id} is already approved."
        assert control_plane.get_action(pending.id).status == "approved"

    def test_approve_dismissed_is_noop(self, control_plane):
        pending = enqueue_archive(control_plane, "e1")
        control_plane.dismiss(pending.id)

        result = control_plane.approve(pending.id)

        assert result.executed is False
        assert control_plane.get_action(pending.id).status == "dismissed"

    def test_bulk_approve_reports_each_id(self, control_plane):
        a = enqueue_archive(control_plane, "e1")
        b = enqueue_archive(control_plane, "e2")
        control_plane.approve(b.id)

        results = control_plane.bulk_approve([a.id, b.id, "pa-nothere"])

        assert [r["executed"] for r in results] == [True, False, False]
        assert [r["id"] for r in results] == [a.id, b.id, "pa-nothere"]


class TestDismiss:
    """Test dismissals and the protections they create."""

    def test_dismiss_without_reason_adds_no_protection(self, control_plane):
        pending = enqueue_archive(control_plane, "e1")

        assert control_plane.dismiss(pending.id) is True
        assert control_plane.get_action(pending.id).status == "dismissed"
        assert control_plane.get_action(pending.id).dismiss_reason is None
        assert control_plane.list_protections() == []

    def test_dismiss_with_reason_protects_each_entry(self, control_plane):
        pending = enqueue_archive(control_plane, "e1", "e2")

        control_plane.dismiss(pending.id, "still relevant")

        protections = control_plane.list_protections()
        assert [p.entry_id for p in protections] == ["e1", "e2"]
        assert all(p.protected_from == ["archive_stale"] for p in protections)
        assert control_plane.get_action(pending.id).dismiss_reason == "still relevant"
        assert control_plane.is_protected("e1", "archive_stale")
        assert not control_plane.is_protected("e1", "auto_tag")

    def test_dismiss_merge_protects_both_sides(self, control_plane):
        pending = control_plane.enqueue(MergeDuplicates(pairs=[("a", "b")]), "merge", "why")

        control_plane.dismiss(pending.id, "different things")

        assert sorted(p.entry_id for p in control_plane.list_protections()) == ["a", "b"]

    def test_dismiss_with_reason_but_no_entries(self, control_plane):
        pending = control_plane.enqueue(CreateGapStubs(queries=["q"]), "stubs", "why")

        assert control_plane.dismiss(pending.id, "not needed")
        assert control_plane.list_protections() == []

    def test_dismiss_unknown_or_decided(self, control_plane):
        pending = enqueue_archive(control_plane, "e1")
        control_plane.approve(pending.id)

        assert control_plane.dismiss("pa-nothere") is False
        assert control_plane.dismiss(pending.id, "too late") is False
        assert control_plane.get_action(pending.id).status == "approved"

    def test_three_dismissals_learn_one_pattern(self, control_plane):
        for i in range(3):
            pending = enqueue_archive(control_plane, f"e{i}")
            control_plane.dismiss(pending.id, "keep")

        patterns = [p for p in control_plane.list_protections() if p.is_pattern]
        assert len(patterns) == 1
        assert patterns[0].pattern == "archive_stale"
        assert patterns[0].reason == 'Auto-learned: user dismissed 3 "archive_stale" actions'
        assert control_plane.is_kind_blocked("archive_stale")

        pending = enqueue_archive(control_plane, "e9")
        control_plane.dismiss(pending.id, "keep")

        assert len([p for p in control_plane.list_protections() if p.is_pattern]) == 1

    def test_dismissals_without_reason_still_count_once_a_reasoned_one_arrives(self, control_plane):
        for i in range(2):
            control_plane.dismiss(enqueue_archive(control_plane, f"e{i}").id)
        assert control_plane.list_protections() == []

        control_plane.dismiss(enqueue_archive(control_plane, "e2").id, "keep")

        assert control_plane.is_kind_blocked("archive_stale")

    def test_bulk_dismiss(self, control_plane):
        a = enqueue_archive(control_plane, "e1")

        results = control_plane.bulk_dismiss([a.id, "pa-nothere"], "reason")

        assert results == [{"id": a.id, "dismissed": True}, {"id": "pa-nothere", "dismissed": False}]


class TestExpireStale:
    """Test expiry of old pending actions."""

    def test_expire_flips_only_past_due(self, control_plane):
        now = datetime.now(timezone.utc)
        old = enqueue_archive(control_plane, "e1", expires_at=now - timedelta(seconds=1))
        fresh = enqueue_archive(control_plane, "e2", expires_at=now + timedelta(days=1))

        assert control_plane.expire_stale(now) == 1
        assert control_plane.get_action(old.id).status == "expired"
        assert control_plane.get_action(fresh.id).status == "pending"

    def test_expire_is_idempotent(self, control_plane):
        now = datetime.now(timezone.utc)
        enqueue_archive(control_plane, "e1", expires_at=now - timedelta(hours=1))

        assert control_plane.expire_stale(now) == 1
        assert control_plane.expire_stale(now) == 0

    def test_expire_ignores_decided_actions(self, control_plane):
        now = datetime.now(timezone.utc)
        pending = enqueue_archive(control_plane, "e1", expires_at=now - timedelta(hours=1))
        control_plane.approve(pending.id)

        assert control_plane.expire_stale(now) == 0
        assert control_plane.get_action(pending.id).status == "approved"

    def test_naive_expiry_is_utc(self, control_plane, observer):
        now = datetime.now(timezone.utc)
        document = observer.load_raw()
        document["pending_actions"] = [
            raw_pending("pa-00000001", now, expires_at=(now - timedelta(hours=1)).replace(tzinfo=None)),
            raw_pending("pa-00000002", now, expires_at=(now + timedelta(hours=1)).replace(tzinfo=None)),
        ]
        observer.persist_raw(document)

        assert control_plane.expire_stale() == 1
        assert control_plane.get_action("pa-00000001").status == "expired"
        assert control_plane.get_action("pa-00000002").status == "pending"
        assert control_plane.expire_stale(now.replace(tzinfo=None)) == 0


class TestProtectionManagement:

    def test_add_and_remove(self, control_plane):
        control_plane.add_protection(Protection(
            entry_id="e1", protected_from=["archive_stale", "auto_tag"], reason="pinned",
            created_at=datetime.now(timezone.utc),
        ))

        assert control_plane.is_protected("e1", "auto_tag")
        assert control_plane.remove_protection("e1", "auto_tag") == 1
        assert control_plane.list_protections() == []
        assert control_plane.remove_protection("e1", "auto_tag") == 0

    def test_remove_leaves_patterns(self, control_plane):
        control_plane.add_protection(Protection(
            pattern="auto_tag", protected_from=["auto_tag"], reason="",
            created_at=datetime.now(timezone.utc),
        ))

        assert control_plane.remove_protection("e1", "auto_tag") == 0
        assert control_plane.is_kind_blocked("auto_tag")


class TestPersistence:
    """Test that the observer document round-trips queue state."""

    def test_reload_yields_equal_state(self, control_plane, observer, config):
        pending = enqueue_archive(control_plane, "e1", "e2")
        control_plane.dismiss(pending.id, "keep")
        control_plane.enqueue(MergeDuplicates(pairs=[("a", "b")]), "merge", "why", {"note": "x"})

        reloaded = ControlPlane(Observer(config.observer_path), config)

        assert reloaded.list_actions() == control_plane.list_actions()
        assert reloaded.list_protections() == control_plane.list_protections()

    def test_unknown_fields_survive_a_mutation(self, control_plane, observer):
        now = datetime.now(timezone.utc)
        document = observer.load_raw()
        document["pending_actions"] = [{
            "id": "pa-abcdef01",
            "created_at": now.isoformat(),
            "expires_at": (now + timedelta(days=1)).isoformat(),
            "action": {"type": "teleport_entries", "destination": "mars"},
            "risk": "high",
            "description": "from the future",
            "reasoning": "",
            "preview": {},
            "status": "pending",
            "reviewer": "bob",
        }]
        document["future_section"] = {"keep": True}
        observer.persist_raw(document)

        control_plane.approve("pa-abcdef01")

        saved = observer.load_raw()
        assert saved["future_section"] == {"keep": True}
        assert saved["pending_actions"][0]["reviewer"] == "bob"
        assert saved["pending_actions"][0]["action"] == {"type": "teleport_entries", "destination": "mars"}
        assert saved["pending_actions"][0]["status"] == "approved"

    def test_malformed_record_does_not_block_queue(self, control_plane, observer):
        now = datetime.now(timezone.utc)
        legacy = raw_pending("pa-00000001", now, status="dismissed",
                             action={"type": "auto_tag", "entries": [{"entryId": "legacy"}]})
        document = observer.load_raw()
        document["pending_actions"] = [legacy]
        observer.persist_raw(document)

        pending = enqueue_archive(control_plane, "e1")

        assert control_plane.list_pending() == [pending]
        assert control_plane.get_action("pa-00000001").type == "auto_tag"
        assert observer.load_raw()["pending_actions"][0] == legacy

    def test_explicit_nulls_survive_a_mutation(self, control_plane, observer):
        now = datetime.now(timezone.utc)
        record = raw_pending("pa-00000001", now,
                             action={"type": "archive_stale", "entries": [{"id": "e1", "updated_at": None}]})
        record["dismiss_reason"] = None
        document = observer.load_raw()
        document["pending_actions"] = [record]
        observer.persist_raw(document)

        enqueue_archive(control_plane, "e2")

        saved = observer.load_raw()["pending_actions"][0]
        assert saved == record
        assert saved["dismiss_reason"] is None
        assert saved["action"]["entries"][0]["updated_at"] is None

    def test_dismiss_reason_replaces_stored_null(self, control_plane, observer):
        now = datetime.now(timezone.utc)
        record = raw_pending("pa-00000001", now)
        record["dismiss_reason"] = None
        document = observer.load_raw()
        document["pending_actions"] = [record]
        observer.persist_raw(document)

        control_plane.dismiss("pa-00000001", "not needed")

        assert observer.load_raw()["pending_actions"][0]["dismiss_reason"] == "not needed"

    def test_pending_action_round_trip(self):
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        pending = PendingAction(
            id="pa-12345678",
            created_at=now,
            expires_at=now + timedelta(days=7),
            action=AutoTag(entries=[EntryRef(id="e1")]),
            risk="low",
            description="d",
            reasoning="r",
            dismiss_reason="no",
            status="dismissed",
        )

        assert PendingAction.from_dict(pending.to_dict()) == pending
        assert action_from_dict(pending.to_dict()["action"]) == pending.action
