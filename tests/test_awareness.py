"""
Self-model construction, formatting and caching.
"""

from datetime import datetime, timedelta, timezone

from opencontext.core.actions import AutoTag
from opencontext.core.awareness import build_self_model, format_self_model, refresh_cache
from opencontext.core.schema import Schema, SchemaType


def days_ago(n):
    return datetime.now(timezone.utc) - timedelta(days=n)


class TestBuildSelfModel:

    def test_empty_store_is_sparse(self, store):
        model = build_self_model(store)

        assert model.context_count == 0
        assert model.overall_health == "sparse"
        assert model.coverage_score == 1.0
        assert model.freshness_score == 1.0

    def test_identity_and_coverage(self, store):
        schema = Schema(types=[
            SchemaType(name="decision", description="d"),
            SchemaType(name="recipe", description="r"),
        ])
        store.save_context("a", context_type="decision")
        store.save_context("b")
        archived = store.save_context("c", context_type="recipe")
        store.update_context(archived.id, "c", archived=True)
        store.create_bubble("Work")

        model = build_self_model(store, schema)

        assert model.context_count == 2
        assert model.type_breakdown == {"decision": 1}
        assert model.untyped == 1
        assert model.bubble_count == 1
        assert model.types_with_entries == ["decision"]
        assert model.types_empty == ["recipe"]
        assert model.coverage_score == 0.5
        assert any('Type "recipe"' in g.description for g in model.gaps)

    def test_freshness_and_stalest_order(self, store):
        newest_stale = store.save_context("s1", created_at=days_ago(100))
        oldest = store.save_context("s2", created_at=days_ago(400))
        store.save_context("fresh")

        model = build_self_model(store)

        assert model.recently_updated == 1
        assert model.stale == 2
        assert [e.id for e in model.stalest_entries] == [oldest.id, newest_stale.id]
        assert model.freshness_score == 0.33
        assert model.overall_health == "needs-attention"
        assert any("2 entries haven't been updated" in g.description for g in model.gaps)

    def test_stalest_limited_to_five(self, store):
        for i in range(7):
            store.save_context(f"old {i}", created_at=days_ago(100 + i))

        assert len(build_self_model(store).stalest_entries) == 5

    def test_healthy_store(self, store):
        store.save_context("fresh one")
        store.save_context("fresh two")
        assert build_self_model(store).overall_health == "healthy"

    def test_observer_gaps_and_pending(self, store, observer, control_plane):
        for _ in range(3):
            observer.log("query_miss", "recall_context", query="budget template")
        observer.log("query_miss", "recall_context", query="rare")
        control_plane.enqueue(AutoTag(), "d", "r")

        model = build_self_model(store, None, observer)

        missed = [g for g in model.gaps if "searched for" in g.description]
        assert [g.description for g in missed] == ['Agents searched for "budget template" 3 times but found nothing.']
        assert model.pending_actions_count == 1

    def test_naive_improvement_timestamp_listed(self, store, observer):
        stamp = (datetime.now(timezone.utc) - timedelta(hours=2)).replace(tzinfo=None).isoformat()
        observer.log_self_improvement({"timestamp": stamp, "actions": [{"type": "auto_tag", "count": 1}]})

        model = build_self_model(store, None, observer)

        assert model.recent_improvements == [{"timestamp": stamp, "actions": [{"type": "auto_tag", "count": 1}]}]

    def test_contradictions_included(self, store):
        store.save_context("Always write tests first")
        store.save_context("Never write tests first")

        assert len(build_self_model(store).contradictions) == 1


class TestFormatAndCache:

    def test_format_self_model(self, store, observer):
        store.save_context("a", context_type="decision")
        store.save_context("b")

        text = format_self_model(build_self_model(store, None, observer))

        assert text.startswith("I am the context store for this workspace.")
        assert "I have 2 active entries:" in text
        assert "  - decision: 1 entries" in text
        assert "  - (untyped): 1 entries" in text
        assert "Health: healthy (coverage: 100%, freshness: 100%)" in text

    def test_refresh_cache_writes_schema_cache(self, store, observer):
        store.save_context("a")
        document = observer.load_raw()
        document["schema_cache"] = {"other": "kept"}
        observer.persist_raw(document)

        refresh_cache(store, None, observer)

        cache = observer.load_raw()["schema_cache"]
        assert cache["other"] == "kept"
        assert cache["analysis_results"]["self_model"]["identity"]["context_count"] == 1
        assert "last_analysis" in cache
