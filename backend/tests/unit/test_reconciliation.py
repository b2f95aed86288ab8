"""
Unit tests for the reconciliation engine.

Covers planning (URI match, name fallback, ignore list), the applied
transaction (inactive inserts, curated fields untouched, idempotence) and
rollback on a mid-run database failure.
"""
import pytest
from sqlalchemy.exc import OperationalError

from models import Stream, StreamTemp
from reconciliation import (
    IGNORE_FIELD_COLUMNS,
    ReconciliationEngine,
    ReconciliationError,
    resolve_ignore_fields,
)
from tests.fixtures.factories import create_provider, create_staged, create_stream


def streams_for(session, provider):
    return session.query(Stream).filter(Stream.p_id == provider.id).order_by(Stream.id).all()


class TestResolveIgnoreFields:
    def test_maps_names_to_columns(self):
        assert resolve_ignore_fields(["tvg_id", "logo"]) == {"s_tvg_id", "s_tvg_logo"}

    def test_all_names_are_valid(self):
        assert resolve_ignore_fields(IGNORE_FIELD_COLUMNS) == set(IGNORE_FIELD_COLUMNS.values())

    def test_rejects_unknown_names(self):
        with pytest.raises(ValueError, match="Invalid ignore fields: bogus"):
            resolve_ignore_fields(["tvg_id", "bogus"])


class TestReconcileInserts:
    def test_new_streams_are_inactive(self, test_session, settings):
        provider = create_provider(test_session)
        create_staged(test_session, provider, "CNN", "http://h/1.ts", group="News", s_tvg_id="cnn.us")

        result = ReconciliationEngine(test_session, settings).reconcile(provider.u_id, provider.id)

        assert (result.inserted, result.updated, result.unchanged) == (1, 0, 0)
        row = streams_for(test_session, provider)[0]
        assert row.s_active is False
        assert row.s_channel == "0"
        assert row.s_name == "CNN"
        assert row.s_orig_name == "CNN"
        assert row.s_tvg_group == "News"
        assert row.s_tvg_id == "cnn.us"

    def test_staging_is_empty_afterwards(self, test_session, settings):
        provider = create_provider(test_session)
        create_staged(test_session, provider, "CNN", "http://h/1.ts")

        ReconciliationEngine(test_session, settings).reconcile(provider.u_id, provider.id)

        assert test_session.query(StreamTemp).count() == 0

    def test_inserts_span_batches(self, test_session, settings):
        provider = create_provider(test_session)
        for n in range(5):
            create_staged(test_session, provider, f"Channel {n}", f"http://h/{n}.ts")

        result = ReconciliationEngine(test_session, settings).reconcile(provider.u_id, provider.id)

        assert result.inserted == 5
        assert len(streams_for(test_session, provider)) == 5

    def test_vod_rows_are_never_inserted(self, test_session, settings):
        provider = create_provider(test_session)
        create_staged(test_session, provider, "Movie", "http://h/movie/1.mp4", type_id=4)

        result = ReconciliationEngine(test_session, settings).reconcile(provider.u_id, provider.id)

        assert result.inserted == 0
        assert streams_for(test_session, provider) == []

    def test_nothing_staged(self, test_session, settings):
        provider = create_provider(test_session)
        result = ReconciliationEngine(test_session, settings).reconcile(provider.u_id, provider.id)
        assert result.processed == 0


class TestReconcileUpdates:
    def test_changed_metadata_is_updated_and_curation_kept(self, test_session, settings):
        provider = create_provider(test_session)
        existing = create_stream(
            test_session, provider, orig_name="CNN", uri="http://h/1.ts",
            name="CNN (US)", channel="202", active=True, s_tvg_logo="old.png",
        )
        create_staged(test_session, provider, "CNN", "http://h/1.ts", s_tvg_logo="new.png")

        result = ReconciliationEngine(test_session, settings).reconcile(provider.u_id, provider.id)

        assert result.updated == 1
        test_session.refresh(existing)
        assert existing.s_tvg_logo == "new.png"
        assert existing.s_updated is not None
        assert existing.s_name == "CNN (US)"
        assert existing.s_channel == "202"
        assert existing.s_active is True

    def test_ignored_fields_are_preserved(self, test_session, settings):
        provider = create_provider(test_session)
        existing = create_stream(
            test_session, provider, orig_name="CNN", uri="http://h/1.ts",
            s_tvg_logo="curated.png", s_tvg_id="curated.id",
        )
        create_staged(test_session, provider, "CNN", "http://h/1.ts", s_tvg_logo="provider.png", s_tvg_id="provider.id")

        engine = ReconciliationEngine(test_session, settings, resolve_ignore_fields(["logo"]))
        engine.reconcile(provider.u_id, provider.id)

        test_session.refresh(existing)
        assert existing.s_tvg_logo == "curated.png"
        assert existing.s_tvg_id == "provider.id"

    def test_only_ignored_differences_count_as_unchanged(self, test_session, settings):
        provider = create_provider(test_session)
        create_stream(test_session, provider, orig_name="CNN", uri="http://h/1.ts", s_tvg_logo="curated.png")
        create_staged(test_session, provider, "CNN", "http://h/1.ts", s_tvg_logo="provider.png")

        engine = ReconciliationEngine(test_session, settings, {"s_tvg_logo"})
        result = engine.reconcile(provider.u_id, provider.id)

        assert (result.inserted, result.updated, result.unchanged) == (0, 0, 1)

    def test_rotated_uri_matches_by_name(self, test_session, settings):
        provider = create_provider(test_session)
        existing = create_stream(test_session, provider, orig_name="CNN", uri="http://h/old.ts", active=True)
        create_staged(test_session, provider, "cnn", "http://h/new.ts")

        result = ReconciliationEngine(test_session, settings).reconcile(provider.u_id, provider.id)

        assert (result.inserted, result.updated) == (0, 1)
        test_session.refresh(existing)
        assert existing.s_stream_uri == "http://h/new.ts"
        assert existing.s_active is True

    def test_name_fallback_can_be_disabled(self, test_session, settings):
        settings.match_by_name = False
        provider = create_provider(test_session)
        create_stream(test_session, provider, orig_name="CNN", uri="http://h/old.ts")
        create_staged(test_session, provider, "CNN", "http://h/new.ts")

        result = ReconciliationEngine(test_session, settings).reconcile(provider.u_id, provider.id)

        assert (result.inserted, result.updated) == (1, 0)

    def test_uri_match_takes_precedence_over_name(self, test_session, settings):
        provider = create_provider(test_session)
        create_stream(test_session, provider, orig_name="CNN", uri="http://h/1.ts")
        create_stream(test_session, provider, orig_name="CNN", uri="http://h/2.ts")
        create_staged(test_session, provider, "CNN", "http://h/2.ts")
        create_staged(test_session, provider, "CNN", "http://h/1.ts")

        result = ReconciliationEngine(test_session, settings).reconcile(provider.u_id, provider.id)

        assert (result.inserted, result.updated, result.unchanged) == (0, 0, 2)

    def test_null_and_blank_compare_equal(self, test_session, settings):
        provider = create_provider(test_session)
        create_stream(test_session, provider, orig_name="CNN", uri="http://h/1.ts", s_tvg_id="")
        create_staged(test_session, provider, "CNN", "http://h/1.ts", s_tvg_id=None)

        result = ReconciliationEngine(test_session, settings).reconcile(provider.u_id, provider.id)

        assert result.unchanged == 1

    def test_other_providers_untouched(self, test_session, settings):
        mine = create_provider(test_session)
        other = create_provider(test_session)
        theirs = create_stream(test_session, other, orig_name="CNN", uri="http://h/1.ts", s_tvg_logo="x.png")
        create_staged(test_session, mine, "CNN", "http://h/1.ts", s_tvg_logo="y.png")

        result = ReconciliationEngine(test_session, settings).reconcile(mine.u_id, mine.id)

        assert result.inserted == 1
        test_session.refresh(theirs)
        assert theirs.s_tvg_logo == "x.png"


class TestPlan:
    def test_counts_uri_and_name_matches(self, test_session, settings):
        provider = create_provider(test_session)
        create_stream(test_session, provider, orig_name="CNN", uri="http://h/1.ts")
        create_stream(test_session, provider, orig_name="ESPN", uri="http://h/old.ts")
        create_staged(test_session, provider, "CNN", "http://h/1.ts")
        create_staged(test_session, provider, "ESPN", "http://h/new.ts")
        create_staged(test_session, provider, "BBC", "http://h/3.ts")
        engine = ReconciliationEngine(test_session, settings)

        plan = engine.plan(
            engine.load_staged(provider.u_id, provider.id),
            engine.load_existing(provider.u_id, provider.id),
            provider.u_id,
            provider.id,
        )

        assert (plan.uri_matches, plan.name_matches) == (1, 1)
        assert [row["s_orig_name"] for row in plan.inserts] == ["BBC"]
        assert test_session.query(StreamTemp).count() == 3


class TestIdempotence:
    def test_second_run_changes_nothing(self, test_session, settings):
        provider = create_provider(test_session)
        engine = ReconciliationEngine(test_session, settings)

        def stage():
            create_staged(test_session, provider, "CNN", "http://h/1.ts", s_tvg_logo="cnn.png", group="News")
            create_staged(test_session, provider, "ESPN", "http://h/2.ts", group="Sports")

        stage()
        first = engine.reconcile(provider.u_id, provider.id)
        snapshot = [r.to_dict() for r in streams_for(test_session, provider)]

        stage()
        second = engine.reconcile(provider.u_id, provider.id)

        assert first.inserted == 2
        assert (second.inserted, second.updated, second.unchanged) == (0, 0, 2)
        assert [r.to_dict() for r in streams_for(test_session, provider)] == snapshot


class TestAtomicity:
    def test_failure_mid_run_rolls_back_everything(self, test_session, settings, monkeypatch):
        provider = create_provider(test_session)
        existing = create_stream(test_session, provider, orig_name="CNN", uri="http://h/1.ts", s_tvg_logo="old.png")
        create_staged(test_session, provider, "CNN", "http://h/1.ts", s_tvg_logo="new.png")
        create_staged(test_session, provider, "ESPN", "http://h/2.ts")

        engine = ReconciliationEngine(test_session, settings)

        def failing_updates(updates):
            raise OperationalError("UPDATE kptv_streams", {}, Exception("lock wait timeout"))

        monkeypatch.setattr(engine, "_apply_updates", failing_updates)

        with pytest.raises(ReconciliationError) as exc_info:
            engine.reconcile(provider.u_id, provider.id)

        assert exc_info.value.provider_id == provider.id
        test_session.expire_all()
        rows = streams_for(test_session, provider)
        assert [r.id for r in rows] == [existing.id]
        assert rows[0].s_tvg_logo == "old.png"
        # The staging rows survive the rollback; the caller clears them
        assert test_session.query(StreamTemp).count() == 2
