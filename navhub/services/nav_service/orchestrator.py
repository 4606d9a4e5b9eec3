"""
Sync orchestrator: fetch, persist and recompute NAV data for the scheme universe.

A run walks the registry's scheme codes in batches. Each batch is fetched
concurrently (bounded by a semaphore), persisted in one unit of work and
followed by a fixed delay. Per-scheme failures are collected on the SyncRun;
only a fatal error (store or registry unreachable) aborts the run.
"""
from __future__ import annotations

from datetime import date
from typing import Callable, Awaitable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
import asyncio
import time

from navhub.core.circuit_breaker import CircuitBreaker, CircuitOpenError
from navhub.core.config import settings
from navhub.core.logging_config import log_background_start, log_background_complete, log_background_error
from navhub.services.sync_run import SyncRun, SyncMode, SyncState, SyncOutcome, FailedScheme

from .core import (
    logger,
    bg_logger,
    ErrorKind,
    NavSyncError,
    PersistenceError,
    DataQualityError,
    FatalSyncError,
    SyncAlreadyRunningError,
    async_retry_with_backoff,
    build_source_circuit_breaker,
    error_kind_for,
)
from .fetcher import NavSourceClient
from .models import NavPoint, ReturnsSnapshot
from .parser import parse_bulk_feed, parse_bulk_schemes, parse_scheme_document
from .registry import SchemeRegistry, DatabaseSchemeRegistry
from .returns import compute_returns
from .store import NavStore

TASK_NAME = "NAV Sync"


def _batches(items: Sequence[str], size: int) -> Iterator[Tuple[int, Sequence[str]]]:
    for start in range(0, len(items), size):
        yield start, items[start:start + size]


def _group_by_scheme(points: Iterable[NavPoint]) -> Dict[str, List[NavPoint]]:
    grouped: Dict[str, List[NavPoint]] = {}
    for point in points:
        grouped.setdefault(point.scheme_code, []).append(point)
    return grouped


class SyncOrchestrator:
    """
    Runs NAV sync passes against one store and one registry.

    At most one run is active per orchestrator. The latest run stays
    queryable through current_run / status() after it finishes.
    """

    def __init__(
        self,
        store: NavStore,
        registry: SchemeRegistry,
        client_factory: Callable[[], NavSourceClient] = NavSourceClient,
        batch_size: int | None = None,
        max_concurrency: int | None = None,
        batch_delay_seconds: float | None = None,
        fetch_max_attempts: int | None = None,
        fetch_retry_delay_seconds: float | None = None,
        history_limit: int | None = None,
        breaker: CircuitBreaker | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.registry = registry
        self._client_factory = client_factory

        self.batch_size = settings.sync_batch_size if batch_size is None else batch_size
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")
        self.max_concurrency = settings.sync_max_concurrency if max_concurrency is None else max_concurrency
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {self.max_concurrency}")
        self.batch_delay_seconds = (
            settings.sync_batch_delay_seconds if batch_delay_seconds is None else batch_delay_seconds
        )
        self.fetch_max_attempts = fetch_max_attempts or settings.fetch_max_attempts
        self.fetch_retry_delay_seconds = (
            settings.fetch_retry_delay_seconds if fetch_retry_delay_seconds is None else fetch_retry_delay_seconds
        )
        self.history_limit = history_limit or settings.returns_history_limit
        self.breaker = breaker or build_source_circuit_breaker(clock=clock)

        self._sleep = sleep
        self._clock = clock
        self._current_run: Optional[SyncRun] = None
        self._background_task: Optional[asyncio.Task] = None

    # --- Run control -----------------------------------------------------

    @property
    def current_run(self) -> Optional[SyncRun]:
        return self._current_run

    @property
    def is_running(self) -> bool:
        return self._current_run is not None and not self._current_run.is_finished

    async def run(
        self,
        batch_size: int | None = None,
        mode: SyncMode = SyncMode.PER_SCHEME,
        as_of_date: date | None = None,
    ) -> SyncOutcome:
        """
        Execute one sync pass and wait for it.

        Args:
            batch_size: Override for the configured batch size.
            mode: Per-scheme documents or the single bulk feed.
            as_of_date: Reference date for returns; defaults to today.

        Returns:
            SyncOutcome with success, records_processed, failed_schemes and duration_ms.
        """
        size = self._resolve_batch_size(batch_size)
        run = self._new_run(mode)
        return await self._execute(run, size, as_of_date)

    def start_background(
        self,
        batch_size: int | None = None,
        mode: SyncMode = SyncMode.PER_SCHEME,
        as_of_date: date | None = None,
    ) -> SyncRun:
        """Start a pass as an asyncio task and return its SyncRun immediately."""
        size = self._resolve_batch_size(batch_size)
        run = self._new_run(mode)
        self._background_task = asyncio.create_task(self._execute(run, size, as_of_date))
        return run

    def request_stop(self) -> bool:
        """Ask the active run to stop at the next batch boundary. False when idle."""
        if not self.is_running:
            return False
        self._current_run.request_stop()
        bg_logger.info(f"Stop requested for sync run {self._current_run.run_id}")
        return True

    async def wait_stopped(self, timeout: float | None = None) -> bool:
        """
        Wait for the background run to finish its current batch and end.

        Returns False when it is still running after timeout seconds; the
        task is left alone so the caller decides whether to cancel it.
        """
        task = self._background_task
        if task is None or task.done():
            return True
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def status(self) -> dict:
        return {
            "is_running": self.is_running,
            "run": self._current_run.to_dict() if self._current_run else None,
            "circuit_breaker": self.breaker.get_stats(),
        }

    def _resolve_batch_size(self, batch_size: int | None) -> int:
        if batch_size is None:
            return self.batch_size
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        return batch_size

    def _new_run(self, mode: SyncMode) -> SyncRun:
        if self.is_running:
            raise SyncAlreadyRunningError(f"Sync run {self._current_run.run_id} is still in progress")
        run = SyncRun([], mode=mode, clock=self._clock)
        self._current_run = run
        return run

    # --- Run execution ---------------------------------------------------

    async def _execute(self, run: SyncRun, batch_size: int, as_of_date: date | None) -> SyncOutcome:
        reference_date = as_of_date or date.today()
        log_background_start(TASK_NAME, f"run={run.run_id}, mode={run.mode.value}, batch_size={batch_size}")

        try:
            targets = await self._resolve_targets()
            run.set_targets(targets)
            bg_logger.info(f"Sync run {run.run_id}: {len(targets)} schemes in batches of {batch_size}")

            if run.mode == SyncMode.BULK:
                changed = await self._sync_bulk(run, targets, batch_size)
            else:
                changed = await self._sync_per_scheme(run, targets, batch_size)

            run.transition(SyncState.COMPUTING)
            await self._recompute_returns(run, changed, reference_date)
            run.complete()
        except FatalSyncError as e:
            run.fail(str(e))
            log_background_error(TASK_NAME, str(e))
        except asyncio.CancelledError:
            run.fail("Sync task cancelled")
            log_background_error(TASK_NAME, "task cancelled")
            raise
        except Exception as e:
            bg_logger.error(f"Unexpected error in sync run {run.run_id}: {e}", exc_info=True)
            run.fail(f"{type(e).__name__}: {e}")
            log_background_error(TASK_NAME, str(e))

        outcome = run.outcome()
        summary = (
            f"processed={outcome.records_processed}/{len(run.target_schemes)}, "
            f"failed={len(outcome.failed_schemes)}, points={outcome.nav_points_written}, "
            f"returns={outcome.returns_computed}, {outcome.duration_ms}ms"
        )
        if outcome.success:
            log_background_complete(TASK_NAME, summary)
        else:
            logger.warning(f"[BACKGROUND] {TASK_NAME} finished with failures - {summary}")
        return outcome

    async def _resolve_targets(self) -> List[str]:
        await self.store.ping()
        try:
            codes = await self.registry.get_scheme_codes()
        except FatalSyncError:
            raise
        except Exception as e:
            raise FatalSyncError(f"Scheme registry unavailable: {e}") from e
        # Preserve registry order, drop duplicates
        return list(dict.fromkeys(str(code) for code in codes))

    def _fail_remaining(self, run: SyncRun, codes: Iterable[str], kind: ErrorKind, message: str) -> None:
        codes = list(codes)
        for code in codes:
            run.mark_failed(code, kind, message)
        if codes:
            bg_logger.warning(f"{len(codes)} schemes not synced ({kind.value}): {message}")

    async def _wait_for_breaker(self) -> bool:
        """Pause once for the recovery window if the breaker is open. False if it stays open."""
        if not self.breaker.is_open:
            return True

        wait_time = self.breaker.time_until_half_open or self.breaker.config.recovery_timeout
        bg_logger.warning(f"Circuit breaker open, pausing sync for {wait_time:.1f}s")
        await self._sleep(wait_time)

        if self.breaker.is_open:
            bg_logger.error("Circuit breaker still open after wait, skipping remaining batches")
            return False
        return True

    # --- Per-scheme mode -------------------------------------------------

    async def _sync_per_scheme(self, run: SyncRun, targets: List[str], batch_size: int) -> set[str]:
        changed: set[str] = set()
        semaphore = asyncio.Semaphore(self.max_concurrency)
        batch_count = (len(targets) + batch_size - 1) // batch_size

        async with self._client_factory() as client:
            for index, (start, batch) in enumerate(_batches(targets, batch_size)):
                if run.stop_requested:
                    self._fail_remaining(run, targets[start:], ErrorKind.CANCELLED, "Stop requested")
                    break
                if not await self._wait_for_breaker():
                    self._fail_remaining(run, targets[start:], ErrorKind.RATE_LIMITED, "Circuit breaker open")
                    break

                bg_logger.debug(f"Processing batch {index + 1}/{batch_count}: schemes {start + 1}-{start + len(batch)}")
                run.transition(SyncState.FETCHING)
                results = await asyncio.gather(
                    *(self._fetch_scheme(client, code, semaphore) for code in batch)
                )

                fetched: List[str] = []
                points: List[NavPoint] = []
                for code, (scheme_points, failure) in zip(batch, results):
                    if failure is not None:
                        run.mark_failed(failure.scheme_code, failure.error_kind, failure.message)
                        continue
                    fetched.append(code)
                    points.extend(scheme_points)

                run.transition(SyncState.PERSISTING)
                changed |= await self._persist_batch(run, fetched, points)

                if index + 1 < batch_count:
                    await self._sleep(self.batch_delay_seconds)

        return changed

    async def _fetch_scheme(
        self,
        client: NavSourceClient,
        scheme_code: str,
        semaphore: asyncio.Semaphore,
    ) -> Tuple[List[NavPoint], Optional[FailedScheme]]:
        async with semaphore:
            try:
                document = await async_retry_with_backoff(
                    lambda: client.fetch_scheme_document(scheme_code),
                    breaker=self.breaker,
                    max_attempts=self.fetch_max_attempts,
                    initial_delay=self.fetch_retry_delay_seconds,
                    sleep=self._sleep,
                )
            except (NavSyncError, CircuitOpenError) as e:
                kind = error_kind_for(e)
                bg_logger.warning(f"Fetch failed for scheme {scheme_code} ({kind.value}): {e}")
                return [], FailedScheme(scheme_code, kind.value, str(e))
            except Exception as e:
                bg_logger.error(f"Unexpected error fetching scheme {scheme_code}: {e}", exc_info=True)
                return [], FailedScheme(scheme_code, ErrorKind.FETCH.value, str(e))

        points = list(parse_scheme_document(scheme_code, document))
        if not points:
            if document.get("data"):
                kind, message = ErrorKind.PARSE, "No parseable NAV entries in document"
            else:
                kind, message = ErrorKind.NO_DATA, "Source returned no NAV history"
            bg_logger.warning(f"Scheme {scheme_code}: {message}")
            return [], FailedScheme(scheme_code, kind.value, message)
        return points, None

    # --- Bulk mode -------------------------------------------------------

    async def _sync_bulk(self, run: SyncRun, targets: List[str], batch_size: int) -> set[str]:
        """Fetch the bulk feed once and persist the targets' points in batches."""
        run.transition(SyncState.FETCHING)
        try:
            async with self._client_factory() as client:
                feed = await async_retry_with_backoff(
                    client.fetch_bulk_feed,
                    breaker=self.breaker,
                    max_attempts=self.fetch_max_attempts,
                    initial_delay=self.fetch_retry_delay_seconds,
                    sleep=self._sleep,
                )
        except (NavSyncError, CircuitOpenError) as e:
            self._fail_remaining(run, targets, error_kind_for(e), f"Bulk feed unavailable: {e}")
            return set()

        wanted = set(targets)
        seen: set[str] = set()
        flushed: set[str] = set()
        pending: Dict[str, List[NavPoint]] = {}
        changed: set[str] = set()
        stopped = False
        run.transition(SyncState.PERSISTING)

        # Persist while parsing: a batch is flushed as soon as the next target would overflow it
        for point in parse_bulk_feed(feed):
            code = point.scheme_code
            if code not in wanted:
                continue
            if code not in pending and len(pending) >= batch_size:
                if run.stop_requested:
                    stopped = True
                    break
                changed |= await self._flush_pending(run, pending, flushed)
                pending = {}
            seen.add(code)
            pending.setdefault(code, []).append(point)

        if pending and not stopped:
            if run.stop_requested:
                stopped = True
            else:
                changed |= await self._flush_pending(run, pending, flushed)

        if stopped:
            remaining = [code for code in targets if code not in flushed]
            self._fail_remaining(run, remaining, ErrorKind.CANCELLED, "Stop requested")
        else:
            missing = [code for code in targets if code not in seen]
            self._fail_remaining(run, missing, ErrorKind.NO_DATA, "Scheme not present in bulk feed")
        return changed

    async def _flush_pending(
        self, run: SyncRun, pending: Dict[str, List[NavPoint]], flushed: set[str]
    ) -> set[str]:
        flushed.update(pending)
        points = [point for scheme_points in pending.values() for point in scheme_points]
        return await self._persist_batch(run, list(pending), points)

    # --- Persistence -----------------------------------------------------

    async def _persist_batch(self, run: SyncRun, scheme_codes: Sequence[str], points: List[NavPoint]) -> set[str]:
        if not scheme_codes:
            return set()
        try:
            result = await self.store.upsert_many(points)
        except PersistenceError as e:
            bg_logger.warning(f"Batch persist failed, retrying {len(scheme_codes)} schemes one by one: {e}")
            return await self._persist_individually(run, scheme_codes, points)

        run.mark_processed(scheme_codes)
        run.add_nav_points_written(result.written)
        return set(result.changed_schemes)

    async def _persist_individually(
        self, run: SyncRun, scheme_codes: Sequence[str], points: List[NavPoint]
    ) -> set[str]:
        grouped = _group_by_scheme(points)
        changed: set[str] = set()
        for code in scheme_codes:
            try:
                result = await self.store.upsert_many(grouped.get(code, []))
            except PersistenceError as e:
                bg_logger.warning(f"Persist failed for scheme {code}: {e}")
                run.mark_failed(code, ErrorKind.PERSISTENCE, str(e))
                continue
            run.mark_processed([code])
            run.add_nav_points_written(result.written)
            changed |= result.changed_schemes
        return changed

    # --- Returns ---------------------------------------------------------

    async def _recompute_returns(self, run: SyncRun, scheme_codes: Iterable[str], reference_date: date) -> None:
        for code in sorted(scheme_codes):
            try:
                snapshot = await self.compute_scheme_returns(code, reference_date)
            except (PersistenceError, DataQualityError) as e:
                bg_logger.warning(f"Returns not computed for scheme {code}: {e}")
                run.mark_failed(code, ErrorKind.COMPUTE, str(e))
                continue
            if snapshot is not None:
                run.add_returns_computed(len(snapshot.anomalies))

    async def compute_scheme_returns(
        self, scheme_code: str, reference_date: date | None = None
    ) -> Optional[ReturnsSnapshot]:
        """Recompute and store one scheme's returns snapshot. None when it has no history."""
        latest = await self.store.latest_before(scheme_code, reference_date or date.today())
        if latest is None:
            return None

        history = await self.store.range_descending(scheme_code, self.history_limit)
        inception = await self.store.earliest(scheme_code)
        snapshot = compute_returns(scheme_code, history, latest.date, inception=inception)
        await self.store.save_returns(snapshot)
        return snapshot

    # --- Registry --------------------------------------------------------

    async def refresh_scheme_registry(self) -> int:
        """Load scheme names, AMCs and categories from the bulk feed into the funds table."""
        async with self._client_factory() as client:
            feed = await async_retry_with_backoff(
                client.fetch_bulk_feed,
                breaker=self.breaker,
                max_attempts=self.fetch_max_attempts,
                initial_delay=self.fetch_retry_delay_seconds,
                sleep=self._sleep,
            )
        count = await self.store.upsert_schemes(parse_bulk_schemes(feed))
        logger.info(f"Scheme registry refreshed: {count} schemes")
        return count


def build_default_orchestrator() -> SyncOrchestrator:
    """Orchestrator over the configured database, targeting the schemes in the funds table."""
    store = NavStore()
    return SyncOrchestrator(store=store, registry=DatabaseSchemeRegistry(store))


async def run_nav_sync(batch_size: int | None = None, mode: SyncMode = SyncMode.PER_SCHEME) -> SyncOutcome:
    """Run one sync pass with default wiring and return its outcome."""
    return await build_default_orchestrator().run(batch_size=batch_size, mode=mode)
