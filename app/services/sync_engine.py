"""Keeps the local replica in step with every configured upstream source."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Literal, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db_models import StashSource, SyncState
from ..entities import ENTITY_KINDS, SYNC_ORDER
from ..errors import UnknownSourceError
from ..models import EntityPage
from ..utils import slugify, utcnow
from .replica import ReplicaStore
from .stash import SourceConnection

logger = logging.getLogger(__name__)

SyncMode = Literal["auto", "full", "incremental"]
SyncStatus = Literal["ok", "failed", "skipped", "cancelled"]

DEFAULT_SOURCE_ID = "default"
SOURCE_FIELDS = ("name", "url", "api_key", "enabled", "priority")


class CatalogSource(Protocol):
    """The upstream operations a sync pass relies on."""

    async def list_entities(self, kind: str, page: int, per_page: int) -> EntityPage:
        ...

    async def list_updated_since(
        self, kind: str, since: datetime, page: int, per_page: int
    ) -> EntityPage:
        ...

    async def ping(self) -> str | None:
        ...


ClientFactory = Callable[[SourceConnection], CatalogSource]


@dataclass(slots=True)
class SyncOutcome:
    """Result of one pass over a single source and kind."""

    source_id: str
    kind: str
    mode: str
    status: SyncStatus
    count: int = 0
    deleted: int = 0
    duration_ms: int = 0
    error: str | None = None


class SyncEngine:
    """Runs full and incremental passes and owns the cache-ready gate."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        client_factory: ClientFactory,
        *,
        replica: ReplicaStore | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._client_factory = client_factory
        self._replica = replica or ReplicaStore()
        self._page_size = settings.sync_page_size
        self._required_kinds = tuple(settings.required_kinds)
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._sync_jobs: dict[str, asyncio.Task[list[SyncOutcome]]] = {}
        self._refresh_task: asyncio.Task[None] | None = None
        self._ready = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Seed the configured source, evaluate readiness and start syncing."""

        await self.ensure_default_source()
        await self.refresh_ready()
        if self._settings.sync_on_startup:
            await self._probe_sources()
            await self.request_sync_all()
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        """Stop the refresh loop and abandon in-flight passes."""

        if self._refresh_task is not None:
            self._refresh_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._refresh_task
            self._refresh_task = None
        for source_id in list(self._sync_jobs):
            await self.cancel_source(source_id)

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.sync_interval_seconds)
            try:
                await self.request_sync_all()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled sync failed: %s", exc)

    async def _probe_sources(self) -> None:
        for source in await self.list_sources(enabled_only=True):
            client = self._client_factory(self._connection(source))
            try:
                version = await client.ping()
            except Exception as exc:
                logger.warning("Source %s is not reachable: %s", source.id, exc)
                continue
            logger.info("Source %s reachable (version %s)", source.id, version or "unknown")

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def is_ready(self) -> bool:
        return self._ready

    async def refresh_ready(self) -> bool:
        """Open the gate once every enabled source finished a full pass per required kind.

        The gate never closes again once open.
        """

        if self._ready:
            return True
        async with self._session_factory() as session:
            sources = (
                await session.execute(
                    select(StashSource.id).where(StashSource.enabled.is_(True))
                )
            ).scalars().all()
            result = await session.execute(
                select(SyncState.source_id, SyncState.entity_kind).where(
                    SyncState.last_full_sync.is_not(None)
                )
            )
            completed = {(row.source_id, row.entity_kind) for row in result}
        missing = [
            (source_id, kind)
            for source_id in sources
            for kind in self._required_kinds
            if (source_id, kind) not in completed
        ]
        if not missing:
            self._ready = True
            logger.info("Replica cache is ready")
        return self._ready

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def is_running(self, source_id: str, kind: str | None = None) -> bool:
        if kind is not None:
            lock = self._locks.get((source_id, kind))
            return bool(lock and lock.locked())
        return any(
            lock.locked()
            for (lock_source, _), lock in self._locks.items()
            if lock_source == source_id
        )

    async def run_full_sync(self, source_id: str, kind: str) -> SyncOutcome:
        """Mirror every entity of ``kind`` and soft-delete what upstream dropped."""

        return await self._run_pass(source_id, kind, "full")

    async def run_incremental_sync(self, source_id: str, kind: str) -> SyncOutcome:
        """Mirror entities changed since the stored cursor.

        Runs a full pass instead when the pair was never fully synced.
        """

        return await self._run_pass(source_id, kind, "incremental")

    async def sync_source(
        self,
        source_id: str,
        mode: SyncMode = "auto",
        kinds: Iterable[str] | None = None,
    ) -> list[SyncOutcome]:
        """Run one pass per kind for ``source_id`` in dependency order."""

        selected = set(kinds) if kinds is not None else set(ENTITY_KINDS)
        unknown = selected.difference(ENTITY_KINDS)
        if unknown:
            raise ValueError(f"Unknown entity kinds: {', '.join(sorted(unknown))}")
        outcomes: list[SyncOutcome] = []
        for kind in SYNC_ORDER:
            if kind not in selected:
                continue
            if mode == "full":
                outcomes.append(await self.run_full_sync(source_id, kind))
            else:
                outcomes.append(await self.run_incremental_sync(source_id, kind))
        await self.refresh_ready()
        return outcomes

    async def sync_all(self, mode: SyncMode = "auto") -> list[SyncOutcome]:
        """Sync every enabled source; sources run concurrently."""

        sources = await self.list_sources(enabled_only=True)
        results = await asyncio.gather(
            *(self.sync_source(source.id, mode) for source in sources)
        )
        return [outcome for outcomes in results for outcome in outcomes]

    async def _run_pass(self, source_id: str, kind: str, mode: str) -> SyncOutcome:
        if kind not in ENTITY_KINDS:
            raise ValueError(f"Unknown entity kind {kind}")
        lock = self._locks.setdefault((source_id, kind), asyncio.Lock())
        if lock.locked():
            logger.info("Sync of %s/%s already running; skipping", source_id, kind)
            return SyncOutcome(source_id=source_id, kind=kind, mode=mode, status="skipped")

        async with lock:
            source = await self._load_source(source_id)
            if not source.enabled:
                logger.info("Source %s is disabled; skipping %s sync", source_id, kind)
                return SyncOutcome(
                    source_id=source_id, kind=kind, mode=mode, status="skipped"
                )
            client = self._client_factory(self._connection(source))
            started_at = utcnow()
            clock = time.perf_counter()
            count = 0
            deleted = 0
            try:
                state = await self._load_state(source_id, kind)
                if mode == "incremental" and (state is None or state.last_full_sync is None):
                    logger.info(
                        "No full sync recorded for %s/%s; running full pass",
                        source_id,
                        kind,
                    )
                    mode = "full"
                if mode == "full":
                    count, deleted, cursor = await self._full_pass(
                        client, source_id, kind, started_at
                    )
                else:
                    assert state is not None
                    since = state.cursor or started_at
                    count, cursor = await self._incremental_pass(
                        client, source_id, kind, since
                    )
            except asyncio.CancelledError:
                duration_ms = int((time.perf_counter() - clock) * 1000)
                logger.warning("Sync of %s/%s cancelled", source_id, kind)
                await self._record_failure(source_id, kind, "cancelled", count, duration_ms)
                raise
            except Exception as exc:
                duration_ms = int((time.perf_counter() - clock) * 1000)
                logger.exception("Sync of %s/%s (%s) failed: %s", source_id, kind, mode, exc)
                message = f"{exc.__class__.__name__}: {exc}"
                await self._record_failure(source_id, kind, message, count, duration_ms)
                return SyncOutcome(
                    source_id=source_id,
                    kind=kind,
                    mode=mode,
                    status="failed",
                    count=count,
                    duration_ms=duration_ms,
                    error=message,
                )

            duration_ms = int((time.perf_counter() - clock) * 1000)
            await self._record_success(
                source_id, kind, mode, cursor=cursor, count=count, duration_ms=duration_ms
            )
            logger.info(
                "Synced %s %s entities from %s (%s pass, %s soft-deleted, %sms)",
                count,
                kind,
                source_id,
                mode,
                deleted,
                duration_ms,
            )
            return SyncOutcome(
                source_id=source_id,
                kind=kind,
                mode=mode,
                status="ok",
                count=count,
                deleted=deleted,
                duration_ms=duration_ms,
            )

    async def _full_pass(
        self,
        client: CatalogSource,
        source_id: str,
        kind: str,
        started_at: datetime,
    ) -> tuple[int, int, datetime]:
        page = 1
        count = 0
        newest: datetime | None = None
        observed: set[str] = set()
        reported: int | None = None
        while True:
            result = await client.list_entities(kind, page, self._page_size)
            if result.count is not None:
                reported = result.count
            if not result.items:
                break
            observed.update(item.id for item in result.items)
            async with self._session_factory() as session:
                await self._replica.upsert_entities(
                    session, kind, source_id, result.items, synced_at=utcnow()
                )
                await session.commit()
            count += len(result.items)
            newest = _latest(newest, result.max_updated_at())
            if len(result.items) < self._page_size or result.is_last_page(page, self._page_size):
                break
            page += 1

        if reported is not None and len(observed) < reported:
            # Rows shifted between pages; an unseen entity is not a deleted one.
            logger.warning(
                "Saw %s of %s %s entities from %s; keeping unseen rows",
                len(observed),
                reported,
                kind,
                source_id,
            )
            return count, 0, newest or started_at

        async with self._session_factory() as session:
            deleted = await self._replica.mark_missing_deleted(
                session, kind, source_id, started_at
            )
            await session.commit()
        return count, deleted, newest or started_at

    async def _incremental_pass(
        self,
        client: CatalogSource,
        source_id: str,
        kind: str,
        since: datetime,
    ) -> tuple[int, datetime | None]:
        page = 1
        count = 0
        cursor: datetime | None = None
        while True:
            result = await client.list_updated_since(kind, since, page, self._page_size)
            if not result.items:
                break
            cursor = _latest(cursor, result.max_updated_at())
            async with self._session_factory() as session:
                await self._replica.upsert_entities(
                    session, kind, source_id, result.items, synced_at=utcnow()
                )
                state = await self._get_or_create_state(session, source_id, kind)
                # The cursor moves with each committed page so an aborted pass
                # resumes after the last page that landed.
                state.last_incremental_sync = _latest(state.last_incremental_sync, cursor)
                await session.commit()
            count += len(result.items)
            if len(result.items) < self._page_size or result.is_last_page(page, self._page_size):
                break
            page += 1
        return count, cursor

    # ------------------------------------------------------------------
    # Background scheduling
    # ------------------------------------------------------------------

    def request_sync(
        self,
        source_id: str,
        mode: SyncMode = "auto",
        kinds: Sequence[str] | None = None,
    ) -> bool:
        """Schedule a background sync; returns ``False`` when one is already queued."""

        existing = self._sync_jobs.get(source_id)
        if existing and not existing.done():
            logger.info("Sync for %s already in progress; request coalesced", source_id)
            return False

        async def _runner() -> list[SyncOutcome]:
            try:
                return await self.sync_source(source_id, mode, kinds)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Background sync for %s failed: %s", source_id, exc)
                return []
            finally:
                if self._sync_jobs.get(source_id) is task:
                    self._sync_jobs.pop(source_id, None)

        task = asyncio.create_task(_runner())
        self._sync_jobs[source_id] = task
        return True

    async def request_sync_all(self, mode: SyncMode = "auto") -> list[str]:
        """Schedule a background sync for every enabled source by priority."""

        scheduled: list[str] = []
        for source in await self.list_sources(enabled_only=True):
            if self.request_sync(source.id, mode):
                scheduled.append(source.id)
        return scheduled

    async def wait_for_jobs(self) -> None:
        """Wait for every scheduled background sync to settle."""

        jobs = [task for task in self._sync_jobs.values() if not task.done()]
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)

    async def cancel_source(self, source_id: str) -> bool:
        """Abort the background sync of ``source_id``; committed pages stay."""

        task = self._sync_jobs.pop(source_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        logger.info("Cancelled sync for %s", source_id)
        return True

    # ------------------------------------------------------------------
    # Sync state bookkeeping
    # ------------------------------------------------------------------

    async def _load_state(self, source_id: str, kind: str) -> SyncState | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncState).where(
                    SyncState.source_id == source_id, SyncState.entity_kind == kind
                )
            )
            return result.scalar_one_or_none()

    @staticmethod
    async def _get_or_create_state(
        session: AsyncSession, source_id: str, kind: str
    ) -> SyncState:
        result = await session.execute(
            select(SyncState).where(
                SyncState.source_id == source_id, SyncState.entity_kind == kind
            )
        )
        state = result.scalar_one_or_none()
        if state is None:
            state = SyncState(
                source_id=source_id,
                entity_kind=kind,
                last_sync_count=0,
                total_entities=0,
            )
            session.add(state)
            await session.flush()
        return state

    async def _record_success(
        self,
        source_id: str,
        kind: str,
        mode: str,
        *,
        cursor: datetime | None,
        count: int,
        duration_ms: int,
    ) -> None:
        finished_at = utcnow()
        async with self._session_factory() as session:
            state = await self._get_or_create_state(session, source_id, kind)
            if mode == "full":
                state.last_full_sync = cursor
                state.last_full_sync_actual = finished_at
            else:
                state.last_incremental_sync = _latest(state.last_incremental_sync, cursor)
                state.last_incremental_sync_actual = finished_at
            state.last_sync_count = count
            state.last_sync_duration_ms = duration_ms
            state.last_error = None
            state.total_entities = await self._replica.count(
                session, kind, source_id=source_id
            )
            await session.commit()

    async def _record_failure(
        self,
        source_id: str,
        kind: str,
        message: str,
        count: int,
        duration_ms: int,
    ) -> None:
        try:
            async with self._session_factory() as session:
                state = await self._get_or_create_state(session, source_id, kind)
                state.last_error = message[:2000]
                state.last_sync_count = count
                state.last_sync_duration_ms = duration_ms
                await session.commit()
        except Exception:  # pragma: no cover - bookkeeping must not mask the failure
            logger.exception("Could not record sync failure for %s/%s", source_id, kind)

    async def get_sync_states(self, source_id: str | None = None) -> list[SyncState]:
        async with self._session_factory() as session:
            statement = select(SyncState).order_by(SyncState.source_id, SyncState.entity_kind)
            if source_id is not None:
                statement = statement.where(SyncState.source_id == source_id)
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def cache_stats(self) -> dict[str, int]:
        """Return the number of live cached rows per kind."""

        async with self._session_factory() as session:
            return {
                kind: await self._replica.count(session, kind) for kind in ENTITY_KINDS
            }

    async def cache_status(self) -> dict[str, Any]:
        states = await self.get_sync_states()
        refreshed = [
            stamp
            for state in states
            for stamp in (state.last_full_sync_actual, state.last_incremental_sync_actual)
            if stamp is not None
        ]
        return {
            "ready": await self.refresh_ready(),
            "counts": await self.cache_stats(),
            "last_refreshed_at": max(refreshed) if refreshed else None,
            "syncing": sorted({source for source, _ in self._locks if self.is_running(source)}),
        }

    # ------------------------------------------------------------------
    # Source administration
    # ------------------------------------------------------------------

    @staticmethod
    def _connection(source: StashSource) -> SourceConnection:
        return SourceConnection(id=source.id, url=source.url, api_key=source.api_key)

    async def _load_source(self, source_id: str) -> StashSource:
        async with self._session_factory() as session:
            source = await session.get(StashSource, source_id)
        if source is None:
            raise UnknownSourceError(source_id)
        return source

    async def get_source(self, source_id: str) -> StashSource:
        return await self._load_source(source_id)

    async def list_sources(self, *, enabled_only: bool = False) -> list[StashSource]:
        async with self._session_factory() as session:
            statement = select(StashSource).order_by(
                StashSource.priority, StashSource.created_at, StashSource.id
            )
            if enabled_only:
                statement = statement.where(StashSource.enabled.is_(True))
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def add_source(
        self,
        name: str,
        url: str,
        api_key: str | None = None,
        *,
        enabled: bool = True,
        priority: int = 0,
        source_id: str | None = None,
    ) -> StashSource:
        """Register a new upstream source; ids derive from the name when omitted."""

        async with self._session_factory() as session:
            base_id = source_id or slugify(name)
            candidate = base_id
            suffix = 2
            while await session.get(StashSource, candidate) is not None:
                if source_id is not None:
                    raise ValueError(f"Source {source_id} already exists")
                candidate = f"{base_id}-{suffix}"
                suffix += 1
            now = utcnow()
            source = StashSource(
                id=candidate,
                name=name,
                url=url,
                api_key=api_key,
                enabled=enabled,
                priority=priority,
                created_at=now,
                updated_at=now,
            )
            session.add(source)
            await session.commit()
        logger.info("Added source %s (%s)", candidate, url)
        return source

    async def update_source(self, source_id: str, **changes: Any) -> StashSource:
        unknown = set(changes).difference(SOURCE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown source fields: {', '.join(sorted(unknown))}")
        async with self._session_factory() as session:
            source = await session.get(StashSource, source_id)
            if source is None:
                raise UnknownSourceError(source_id)
            for field_name, value in changes.items():
                setattr(source, field_name, value)
            source.updated_at = utcnow()
            await session.commit()
        if changes.get("enabled") is False:
            await self.cancel_source(source_id)
        return source

    async def remove_source(self, source_id: str, *, purge: bool = True) -> dict[str, int]:
        """Delete a source; with ``purge`` its cached rows and edges go too."""

        await self.cancel_source(source_id)
        removed: dict[str, int] = {}
        async with self._session_factory() as session:
            source = await session.get(StashSource, source_id)
            if source is None:
                raise UnknownSourceError(source_id)
            if purge:
                removed = await self._replica.purge_source(session, source_id)
            else:
                states = await session.execute(
                    select(SyncState).where(SyncState.source_id == source_id)
                )
                for state in states.scalars():
                    await session.delete(state)
            await session.delete(source)
            await session.commit()
        self._locks = {
            key: lock for key, lock in self._locks.items() if key[0] != source_id
        }
        logger.info("Removed source %s (purged=%s)", source_id, purge)
        return removed

    async def ensure_default_source(self) -> None:
        """Create or refresh the source configured through ``STASH_URL``."""

        url = self._settings.stash_url
        if url is None:
            return
        async with self._session_factory() as session:
            source = await session.get(StashSource, DEFAULT_SOURCE_ID)
            now = utcnow()
            if source is None:
                session.add(
                    StashSource(
                        id=DEFAULT_SOURCE_ID,
                        name=self._settings.stash_name,
                        url=str(url),
                        api_key=self._settings.stash_api_key,
                        enabled=True,
                        priority=0,
                        created_at=now,
                        updated_at=now,
                    )
                )
            else:
                updated = False
                if source.url != str(url):
                    source.url = str(url)
                    updated = True
                if self._settings.stash_api_key and source.api_key != self._settings.stash_api_key:
                    source.api_key = self._settings.stash_api_key
                    updated = True
                if updated:
                    source.updated_at = now
            await session.commit()


def _latest(current: datetime | None, candidate: datetime | None) -> datetime | None:
    if candidate is None:
        return current
    if current is None:
        return candidate
    return max(current, candidate)
