from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from tripbench.errors import StoreError
from tripbench.models import (
    BenchmarkPreferences,
    BenchmarkRun,
    BenchmarkSession,
    CanonicalTrip,
    TelemetryEvent,
)

logger = logging.getLogger(__name__)


class BenchmarkStore(Protocol):
    """Persistence consumed by the orchestrator and the request surface.

    Implementations raise StoreError when a write is rejected.
    """

    async def create_session(self, session: BenchmarkSession) -> BenchmarkSession: ...

    async def get_session(self, session_id: str) -> BenchmarkSession | None: ...

    async def find_session_by_share_token(self, token: str) -> BenchmarkSession | None: ...

    async def list_sessions(self, limit: int) -> list[BenchmarkSession]: ...

    async def delete_session(self, session_id: str) -> int: ...

    async def create_runs(self, runs: list[BenchmarkRun]) -> list[BenchmarkRun]: ...

    async def get_run(self, run_id: str) -> BenchmarkRun | None: ...

    async def list_runs(self, session_id: str) -> list[BenchmarkRun]: ...

    async def update_run(self, run_id: str, changes: dict[str, Any]) -> BenchmarkRun | None: ...

    async def delete_runs(self, session_id: str) -> int: ...

    async def save_trip(self, trip: CanonicalTrip) -> str: ...

    async def delete_trips(self, session_id: str) -> int: ...

    async def append_event(self, event: TelemetryEvent) -> None: ...

    async def list_events(
        self,
        since: datetime,
        source: str | None = None,
        provider: str | None = None,
        limit: int = 2_000,
    ) -> list[TelemetryEvent]: ...

    async def get_preferences(self) -> BenchmarkPreferences | None: ...

    async def save_preferences(self, preferences: BenchmarkPreferences) -> BenchmarkPreferences: ...


class MemoryStore:
    def __init__(self) -> None:
        self.sessions: dict[str, BenchmarkSession] = {}
        self.runs: dict[str, BenchmarkRun] = {}
        self.trips: dict[str, CanonicalTrip] = {}
        self.events: list[TelemetryEvent] = []
        self.preferences: BenchmarkPreferences | None = None
        self._lock = asyncio.Lock()

    async def _committed(self) -> None:
        """Hook called after each write while the lock is held."""

    async def create_session(self, session: BenchmarkSession) -> BenchmarkSession:
        async with self._lock:
            self.sessions[session.id] = session
            await self._committed()
        return session

    async def get_session(self, session_id: str) -> BenchmarkSession | None:
        session = self.sessions.get(session_id)
        if session is None or session.deleted_at is not None:
            return None
        return session

    async def find_session_by_share_token(self, token: str) -> BenchmarkSession | None:
        for session in self.sessions.values():
            if session.share_token == token and session.deleted_at is None:
                return session
        return None

    async def list_sessions(self, limit: int) -> list[BenchmarkSession]:
        live = [session for session in self.sessions.values() if session.deleted_at is None]
        live.sort(key=lambda session: session.created_at, reverse=True)
        return live[:limit]

    async def delete_session(self, session_id: str) -> int:
        async with self._lock:
            removed = self.sessions.pop(session_id, None)
            await self._committed()
        return 1 if removed is not None else 0

    async def create_runs(self, runs: list[BenchmarkRun]) -> list[BenchmarkRun]:
        async with self._lock:
            for run in runs:
                self.runs[run.id] = run
            await self._committed()
        return runs

    async def get_run(self, run_id: str) -> BenchmarkRun | None:
        return self.runs.get(run_id)

    async def list_runs(self, session_id: str) -> list[BenchmarkRun]:
        runs = [run for run in self.runs.values() if run.session_id == session_id]
        runs.sort(key=lambda run: (run.created_at, run.provider, run.model, run.run_index))
        return runs

    async def update_run(self, run_id: str, changes: dict[str, Any]) -> BenchmarkRun | None:
        async with self._lock:
            run = self.runs.get(run_id)
            if run is None:
                return None
            updated = run.model_copy(update=changes)
            self.runs[run_id] = updated
            await self._committed()
        return updated

    async def delete_runs(self, session_id: str) -> int:
        async with self._lock:
            doomed = [run_id for run_id, run in self.runs.items() if run.session_id == session_id]
            for run_id in doomed:
                del self.runs[run_id]
            await self._committed()
        return len(doomed)

    async def save_trip(self, trip: CanonicalTrip) -> str:
        async with self._lock:
            self.trips[trip.id] = trip
            await self._committed()
        return trip.id

    async def delete_trips(self, session_id: str) -> int:
        async with self._lock:
            doomed = [
                trip_id
                for trip_id, trip in self.trips.items()
                if trip.source_kind == "ai_benchmark" and trip.source_template_id == session_id
            ]
            for trip_id in doomed:
                del self.trips[trip_id]
            await self._committed()
        return len(doomed)

    async def append_event(self, event: TelemetryEvent) -> None:
        async with self._lock:
            self.events.append(event)
            await self._committed()

    async def list_events(
        self,
        since: datetime,
        source: str | None = None,
        provider: str | None = None,
        limit: int = 2_000,
    ) -> list[TelemetryEvent]:
        rows = [
            event
            for event in self.events
            if event.created_at >= since
            and (source is None or event.source == source)
            and (provider is None or event.provider == provider)
        ]
        rows.sort(key=lambda event: event.created_at, reverse=True)
        return rows[:limit]

    async def get_preferences(self) -> BenchmarkPreferences | None:
        return self.preferences

    async def save_preferences(self, preferences: BenchmarkPreferences) -> BenchmarkPreferences:
        async with self._lock:
            self.preferences = preferences
            await self._committed()
        return preferences


class FileStore(MemoryStore):
    """MemoryStore snapshotted to a JSON file after every write."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path
        if path.exists():
            self._load()

    def _load(self) -> None:
        try:
            raw = json.loads(self.path.read_text())
        except (OSError, ValueError) as exc:
            raise StoreError(f"Could not read store file {self.path}", "STORE_READ_FAILED", details=str(exc)) from exc

        self.sessions = {item["id"]: BenchmarkSession.model_validate(item) for item in raw.get("sessions", [])}
        self.runs = {item["id"]: BenchmarkRun.model_validate(item) for item in raw.get("runs", [])}
        self.trips = {item["id"]: CanonicalTrip.model_validate(item) for item in raw.get("trips", [])}
        self.events = [TelemetryEvent.model_validate(item) for item in raw.get("events", [])]
        if raw.get("preferences"):
            self.preferences = BenchmarkPreferences.model_validate(raw["preferences"])
        logger.debug("Loaded %d sessions and %d runs from %s", len(self.sessions), len(self.runs), self.path)

    async def _committed(self) -> None:
        snapshot = {
            "sessions": [session.model_dump(mode="json") for session in self.sessions.values()],
            "runs": [run.model_dump(mode="json") for run in self.runs.values()],
            "trips": [trip.model_dump(mode="json") for trip in self.trips.values()],
            "events": [event.model_dump(mode="json") for event in self.events],
            "preferences": self.preferences.model_dump(mode="json") if self.preferences else None,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(snapshot, indent=2))
            tmp.replace(self.path)
        except OSError as exc:
            raise StoreError(f"Could not write store file {self.path}", "STORE_WRITE_FAILED", details=str(exc)) from exc
