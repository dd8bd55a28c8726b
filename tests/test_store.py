from datetime import timedelta

import pytest

from tripbench.errors import StoreError
from tripbench.models import BenchmarkRun, RunStatus, TelemetryEvent, utcnow
from tripbench.normalizer import build_trip
from tripbench.preferences import normalize_preferences
from tripbench.store import FileStore, MemoryStore


def _run(session, index, provider="gemini"):
    return BenchmarkRun(
        session_id=session.id,
        provider=provider,
        model="gemini-3-pro-preview",
        label=f"{provider}:gemini-3-pro-preview",
        run_index=index,
    )


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_sessions(self, store, session):
        await store.create_session(session)
        assert await store.get_session(session.id) is session
        assert await store.find_session_by_share_token(session.share_token) is session
        assert await store.find_session_by_share_token("abm_missing") is None
        assert await store.list_sessions(limit=10) == [session]
        assert await store.delete_session(session.id) == 1
        assert await store.get_session(session.id) is None

    @pytest.mark.asyncio
    async def test_runs_are_listed_in_stable_order(self, store, session):
        created = [_run(session, 2, "openai"), _run(session, 2), _run(session, 1)]
        moment = utcnow()
        created = [run.model_copy(update={"created_at": moment}) for run in created]
        await store.create_runs(created)
        listed = await store.list_runs(session.id)
        assert [(run.provider, run.run_index) for run in listed] == [("gemini", 1), ("gemini", 2), ("openai", 2)]

    @pytest.mark.asyncio
    async def test_update_run(self, store, session):
        (run,) = await store.create_runs([_run(session, 1)])
        updated = await store.update_run(run.id, {"status": RunStatus.RUNNING})
        assert updated.status is RunStatus.RUNNING
        assert (await store.get_run(run.id)).status is RunStatus.RUNNING
        assert await store.update_run("missing", {"status": RunStatus.FAILED}) is None

    @pytest.mark.asyncio
    async def test_delete_trips_only_touches_the_session(self, store, session, itinerary):
        def trip(session_id):
            return build_trip(
                itinerary, "2026-05-01", provider="gemini", model="m", session_id=session_id, run_id="r"
            )

        await store.save_trip(trip(session.id))
        await store.save_trip(trip(session.id))
        await store.save_trip(trip("another-session"))
        assert await store.delete_trips(session.id) == 2
        assert len(store.trips) == 1

    @pytest.mark.asyncio
    async def test_list_events_filters(self, store):
        now = utcnow()
        samples = [("gemini", "benchmark", 1), ("openai", "create_trip", 2), ("gemini", "benchmark", 50)]
        for provider, source, age in samples:
            await store.append_event(
                TelemetryEvent(
                    source=source,
                    provider=provider,
                    model="m",
                    status="success",
                    created_at=now - timedelta(hours=age),
                )
            )
        rows = await store.list_events(now - timedelta(hours=24))
        assert [row.provider for row in rows] == ["gemini", "openai"]
        assert await store.list_events(now - timedelta(hours=24), source="create_trip", provider="gemini") == []
        assert len(await store.list_events(now - timedelta(days=7), limit=1)) == 1


class TestFileStore:
    @pytest.mark.asyncio
    async def test_survives_reload(self, tmp_path, session, itinerary):
        path = tmp_path / "nested" / "store.json"
        store = FileStore(path)
        await store.create_session(session)
        (run,) = await store.create_runs([_run(session, 1)])
        await store.update_run(run.id, {"status": RunStatus.COMPLETED, "latency_ms": 1_234})
        await store.save_preferences(normalize_preferences(None))

        reloaded = FileStore(path)
        assert (await reloaded.get_session(session.id)).share_token == session.share_token
        restored = await reloaded.get_run(run.id)
        assert restored.status is RunStatus.COMPLETED
        assert restored.latency_ms == 1_234
        assert (await reloaded.get_preferences()).target_ids
        assert not path.with_suffix(".json.tmp").exists()

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("{not json")
        with pytest.raises(StoreError) as caught:
            FileStore(path)
        assert caught.value.code == "STORE_READ_FAILED"

    def test_missing_file_starts_empty(self, tmp_path):
        store = FileStore(tmp_path / "store.json")
        assert store.sessions == {}
        assert isinstance(store, MemoryStore)
