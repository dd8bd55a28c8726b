import io
import json
import uuid
import zipfile

import httpx
import pytest
from conftest import RecordingTransport, ScriptedClient, gemini_payload

from tripbench.client import GenerationClient
from tripbench.errors import NotFoundError, RequestError, StoreError
from tripbench.models import CANCELLED_BY_USER, BenchmarkTarget, RunStatus
from tripbench.service import BenchmarkService, create_share_token, is_uuid, parse_scenario
from tripbench.store import MemoryStore

GEMINI = {"provider": "gemini", "model": "gemini-3-pro-preview"}
SCENARIO = {"prompt": "Two cities in Portugal", "startDate": "2026-05-01"}


@pytest.fixture
def service(store, settings, itinerary):
    return BenchmarkService(store, ScriptedClient(lambda prompt, provider, model: itinerary), settings)


def _body(**overrides):
    return {"scenario": SCENARIO, "targets": [GEMINI], **overrides}


class TestRun:
    @pytest.mark.asyncio
    async def test_end_to_end_with_gemini(self, store, settings, itinerary):
        recording = RecordingTransport([httpx.Response(200, json=gemini_payload(itinerary))])
        async with GenerationClient(settings, transport=recording.transport) as client:
            result = await BenchmarkService(store, client, settings).run(_body())

        assert result["ok"] is True
        assert result["async"] is False
        (run,) = result["runs"]
        assert run["status"] == "completed"
        assert run["schema_valid"] is True
        assert run["trip_id"] in store.trips
        assert run["cost_usd"] == pytest.approx(0.0245)
        assert result["summary"]["completed"] == 1
        assert result["session"]["share_token"].startswith("abm_")
        (event,) = store.events
        assert event.status == "success"
        assert event.provider_model == "gemini-3-pro-preview-001"

    @pytest.mark.parametrize(
        "body, code",
        [
            ("not a dict", "BENCHMARK_INVALID_BODY"),
            ({"targets": [GEMINI]}, "BENCHMARK_INVALID_SCENARIO"),
            ({"scenario": {"prompt": "   "}, "targets": [GEMINI]}, "BENCHMARK_INVALID_SCENARIO"),
            ({"scenario": SCENARIO, "targets": [{"provider": "gemini"}]}, "BENCHMARK_INVALID_TARGETS"),
            (_body(sessionId="not-a-uuid"), "BENCHMARK_INVALID_SESSION_ID"),
        ],
    )
    @pytest.mark.asyncio
    async def test_rejects_bad_requests(self, service, body, code):
        with pytest.raises(RequestError) as caught:
            await service.run(body)
        assert caught.value.code == code
        assert caught.value.status == 400

    @pytest.mark.asyncio
    async def test_unknown_session(self, service):
        with pytest.raises(NotFoundError) as caught:
            await service.run(_body(sessionId=str(uuid.uuid4())))
        assert caught.value.code == "BENCHMARK_SESSION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_run_count_is_clamped(self, service):
        result = await service.run(_body(runCount=10, concurrency=99))
        assert [run["run_index"] for run in result["runs"]] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_run_count_respects_settings(self, store, settings, itinerary):
        settings.max_run_count = 2
        service = BenchmarkService(store, ScriptedClient(lambda *args: itinerary), settings)
        result = await service.run(_body(runCount=3))
        assert len(result["runs"]) == 2

    @pytest.mark.asyncio
    async def test_appends_to_existing_session(self, service):
        first = await service.run(_body(sessionName="Portugal"))
        session_id = first["session"]["id"]
        second = await service.run(_body(sessionId=session_id, runCount=2))

        assert second["session"]["id"] == session_id
        assert second["session"]["name"] == "Portugal"
        assert sorted(run["run_index"] for run in second["runs"]) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_request_scenario_is_snapshotted_per_run(self, service):
        first = await service.run(_body())
        session_id = first["session"]["id"]
        other = {"prompt": "Porto only", "roundTrip": True}
        second = await service.run(_body(sessionId=session_id, scenario=other))

        prompts = [run["request_payload"]["scenario"]["prompt"] for run in second["runs"]]
        assert prompts == ["Two cities in Portugal", "Porto only"]

    @pytest.mark.asyncio
    async def test_background(self, service):
        result = await service.run(_body(runCount=2), background=True)
        assert result["async"] is True
        assert {run["status"] for run in result["runs"]} == {"queued"}

        await service.runner.drain()
        refreshed = await service.get(result["session"]["id"])
        assert {run["status"] for run in refreshed["runs"]} == {"completed"}

    @pytest.mark.asyncio
    async def test_store_write_failure_leaves_every_run_terminal(self, settings, itinerary):
        class RejectFirstStart(MemoryStore):
            rejected = False

            async def update_run(self, run_id, changes):
                if changes.get("status") is RunStatus.RUNNING and not self.rejected:
                    self.rejected = True
                    raise StoreError("disk full", "STORE_WRITE_FAILED")
                return await super().update_run(run_id, changes)

        service = BenchmarkService(RejectFirstStart(), ScriptedClient(lambda *args: itinerary), settings)
        result = await service.run(_body(runCount=2, concurrency=1))

        assert [run["status"] for run in result["runs"]] == ["failed", "completed"]
        assert result["runs"][0]["error_message"] == "Failed to update benchmark run: disk full"
        assert result["summary"]["queued"] == 0
        assert result["summary"]["running"] == 0

    @pytest.mark.asyncio
    async def test_foreground_crash_fails_remaining_runs(self, service, store, monkeypatch):
        async def lookup_failed(run_id):
            raise StoreError("lookup failed", "STORE_READ_FAILED")

        monkeypatch.setattr(service.runner, "_is_cancelled", lookup_failed)
        with pytest.raises(StoreError) as caught:
            await service.run(_body(runCount=2))

        assert caught.value.status == 502
        runs = list(store.runs.values())
        assert len(runs) == 2
        assert {run.status for run in runs} == {RunStatus.FAILED}
        assert {run.error_message for run in runs} == {"lookup failed"}


class TestGet:
    @pytest.mark.asyncio
    async def test_recent_sessions(self, service):
        await service.run(_body())
        await service.run(_body())
        assert len((await service.get())["sessions"]) == 2

    @pytest.mark.asyncio
    async def test_by_id_or_share_token(self, service):
        created = await service.run(_body())
        by_id = await service.get(created["session"]["id"])
        by_token = await service.get(created["session"]["share_token"])
        assert by_id["runs"] == by_token["runs"]
        assert by_id["summary"]["total"] == 1

    @pytest.mark.asyncio
    async def test_not_found(self, service):
        with pytest.raises(NotFoundError):
            await service.get("abm_doesnotexist")


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancels_queued_runs(self, service, store, session):
        await store.create_session(session)
        target = BenchmarkTarget(provider="gemini", model="gemini-3-pro-preview")
        await service.runner.create_runs(session, [target], run_count=2)

        result = await service.cancel({"sessionId": session.id})

        assert result["cancelled"] == 2
        assert {run["error_message"] for run in result["runs"]} == {CANCELLED_BY_USER}
        assert result["summary"]["failed"] == 2
        again = await service.cancel({"sessionId": session.id})
        assert again["cancelled"] == 0

    @pytest.mark.asyncio
    async def test_finished_run_is_left_alone(self, service):
        created = await service.run(_body())
        run_id = created["runs"][0]["id"]
        result = await service.cancel({"runId": run_id})
        assert result["cancelled"] == 0
        assert result["runs"][0]["status"] == "completed"

    @pytest.mark.parametrize(
        "body, code",
        [
            ({}, "BENCHMARK_CANCEL_INVALID_TARGET"),
            ({"runId": "123"}, "BENCHMARK_CANCEL_INVALID_RUN_ID"),
            ({"sessionId": "abc"}, "BENCHMARK_CANCEL_INVALID_SESSION_ID"),
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid(self, service, body, code):
        with pytest.raises(RequestError) as caught:
            await service.cancel(body)
        assert caught.value.code == code

    @pytest.mark.asyncio
    async def test_unknown_run(self, service):
        with pytest.raises(NotFoundError) as caught:
            await service.cancel({"runId": str(uuid.uuid4())})
        assert caught.value.code == "BENCHMARK_RUN_NOT_FOUND"


class TestRate:
    @pytest.mark.asyncio
    async def test_set_and_clear(self, service):
        run_id = (await service.run(_body()))["runs"][0]["id"]

        rated = await service.rate({"runId": run_id, "rating": " Good "})
        assert rated["run"]["satisfaction_rating"] == "good"
        assert rated["run"]["satisfaction_updated_at"] is not None

        cleared = await service.rate({"runId": run_id, "rating": None})
        assert cleared["run"]["satisfaction_rating"] is None
        assert cleared["run"]["satisfaction_updated_at"] is None

    @pytest.mark.parametrize(
        "body, code",
        [
            ({"rating": "good"}, "BENCHMARK_RATE_INVALID_RUN_ID"),
            ({"runId": "b7a3c2a4-4c1e-4f7e-9d2a-0f4a1c2b3d4e"}, "BENCHMARK_RATE_INVALID_RATING"),
            ({"runId": "b7a3c2a4-4c1e-4f7e-9d2a-0f4a1c2b3d4e", "rating": "great"}, "BENCHMARK_RATE_INVALID_RATING"),
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid(self, service, body, code):
        with pytest.raises(RequestError) as caught:
            await service.rate(body)
        assert caught.value.code == code

    @pytest.mark.asyncio
    async def test_unknown_run(self, service):
        with pytest.raises(NotFoundError):
            await service.rate({"runId": str(uuid.uuid4()), "rating": "bad"})


class TestCleanup:
    @pytest.mark.asyncio
    async def test_both(self, service, store):
        created = await service.run(_body(runCount=2))
        session_id = created["session"]["id"]

        result = await service.cleanup({"sessionId": session_id})

        assert result["deleted"] == {"trips": 2, "runs": 2, "sessions": 1}
        assert result["mode"] == "both"
        assert store.trips == {}
        with pytest.raises(NotFoundError):
            await service.get(session_id)

    @pytest.mark.asyncio
    async def test_linked_trips_only(self, service, store):
        session_id = (await service.run(_body()))["session"]["id"]
        result = await service.cleanup({"sessionId": session_id, "mode": "delete-linked-trips"})
        assert result["deleted"] == {"trips": 1, "runs": 0, "sessions": 0}
        assert len(await store.list_runs(session_id)) == 1

    @pytest.mark.asyncio
    async def test_invalid(self, service):
        with pytest.raises(RequestError) as caught:
            await service.cleanup({"sessionId": "nope"})
        assert caught.value.code == "BENCHMARK_CLEANUP_INVALID_SESSION"
        with pytest.raises(RequestError) as caught:
            await service.cleanup({"sessionId": str(uuid.uuid4()), "mode": "everything"})
        assert caught.value.code == "BENCHMARK_CLEANUP_INVALID_MODE"


class TestPreferences:
    @pytest.mark.asyncio
    async def test_defaults_are_persisted_on_first_read(self, service, store):
        assert store.preferences is None
        result = await service.preferences()
        assert result["ok"] is True
        assert store.preferences is not None
        assert (await service.preferences())["preferences"]["updated_at"] == result["preferences"]["updated_at"]

    @pytest.mark.asyncio
    async def test_update(self, service):
        result = await service.preferences({"modelTargets": ["openai:gpt-5-mini", "fake:model"]})
        assert result["preferences"]["modelTargets"] == ["openai:gpt-5-mini"]
        assert (await service.preferences())["preferences"]["modelTargets"] == ["openai:gpt-5-mini"]

    @pytest.mark.asyncio
    async def test_response_uses_request_keys(self, service):
        current = (await service.preferences())["preferences"]
        assert set(current) == {"modelTargets", "presets", "selectedPresetId", "updated_at"}

        chosen = current["presets"][-1]["id"]
        updated = await service.preferences({**current, "selectedPresetId": chosen})
        assert updated["preferences"]["selectedPresetId"] == chosen
        assert updated["preferences"]["modelTargets"] == current["modelTargets"]


class TestTelemetryAndExport:
    @pytest.mark.asyncio
    async def test_telemetry(self, service):
        await service.run(_body(runCount=2))
        report = await service.telemetry({"source": "benchmark", "windowHours": "24"})
        assert report["ok"] is True
        assert report["summary"]["total"] == 2
        assert report["models"][0]["key"] == "gemini:gemini-3-pro-preview"

    @pytest.mark.asyncio
    async def test_export_run(self, service):
        run_id = (await service.run(_body()))["runs"][0]["id"]
        exported = await service.export({"run": run_id})
        assert exported.media_type == "application/json"
        assert json.loads(exported.content)["run"]["id"] == run_id

    @pytest.mark.asyncio
    async def test_export_session_by_share_token(self, service):
        created = await service.run(_body())
        exported = await service.export({"session": created["session"]["share_token"], "includeLogs": "true"})
        assert exported.media_type == "application/zip"
        assert exported.filename.endswith("-exports.zip")
        assert "logs/runs.ndjson" in zipfile.ZipFile(io.BytesIO(exported.content)).namelist()

    @pytest.mark.asyncio
    async def test_export_errors(self, service):
        with pytest.raises(RequestError) as caught:
            await service.export({})
        assert caught.value.code == "BENCHMARK_EXPORT_INVALID"
        with pytest.raises(NotFoundError) as caught:
            await service.export({"run": "missing"})
        assert caught.value.code == "BENCHMARK_RUN_NOT_FOUND"
        with pytest.raises(NotFoundError) as caught:
            await service.export({"session": str(uuid.uuid4())})
        assert caught.value.code == "BENCHMARK_SESSION_NOT_FOUND"


class TestHelpers:
    def test_share_token(self):
        token = create_share_token()
        assert token.startswith("abm_")
        assert len(token) == 24

    def test_is_uuid(self):
        assert is_uuid(str(uuid.uuid4()))
        assert not is_uuid("abm_0123")
        assert not is_uuid(None)

    def test_invalid_start_date_becomes_today(self):
        scenario = parse_scenario({"prompt": "x", "startDate": "next week"})
        assert len(scenario.start_date) == 10
        assert scenario.start_date != "next week"
