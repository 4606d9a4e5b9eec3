"""
Thread-safe state of one NAV sync run.

A SyncRun is owned by the orchestrator that executes it and can be read at
any point while the run is in flight. All state modifications are protected
by an RLock; readers get copies.
"""
import threading
import time
import uuid
from datetime import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional


class SyncState(str, Enum):
    """Lifecycle of a run: PENDING -> FETCHING -> PERSISTING -> COMPUTING -> COMPLETED | FAILED."""
    PENDING = "pending"
    FETCHING = "fetching"
    PERSISTING = "persisting"
    COMPUTING = "computing"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncMode(str, Enum):
    """Where NAV points come from."""
    BULK = "bulk"
    PER_SCHEME = "per_scheme"


TERMINAL_STATES = {SyncState.COMPLETED, SyncState.FAILED}


@dataclass(frozen=True)
class FailedScheme:
    """A scheme that did not complete in a sync run."""
    scheme_code: str
    error_kind: str
    message: str = ""

    def to_dict(self) -> dict:
        return {"scheme_code": self.scheme_code, "error_kind": self.error_kind, "message": self.message}


@dataclass
class SyncOutcome:
    """Result handed back to callers of a sync run."""
    success: bool
    records_processed: int
    failed_schemes: List[FailedScheme]
    duration_ms: int
    nav_points_written: int = 0
    returns_computed: int = 0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "records_processed": self.records_processed,
            "failed_schemes": [f.to_dict() for f in self.failed_schemes],
            "duration_ms": self.duration_ms,
            "nav_points_written": self.nav_points_written,
            "returns_computed": self.returns_computed,
        }


class SyncRun:
    """
    Progress and failures of one orchestration pass.

    processed_count counts schemes whose NAV data was persisted and whose
    returns were recomputed without error; failures are collected per scheme
    with their error kind. A scheme is never both processed and failed.
    A run that ends with any failure, or is aborted by a fatal error, ends in
    FAILED and its outcome reports success=False.
    """

    def __init__(
        self,
        target_schemes: Iterable[str],
        mode: SyncMode = SyncMode.PER_SCHEME,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lock = threading.RLock()
        self._clock = clock

        self.run_id = uuid.uuid4().hex[:12]
        self.mode = mode
        self.target_schemes = tuple(target_schemes)
        self.started_at = datetime.now().isoformat()
        self.completed_at: Optional[str] = None

        self._started_monotonic = clock()
        self._duration_ms: Optional[int] = None
        self._state = SyncState.PENDING
        self._processed: set[str] = set()
        self._failed: List[FailedScheme] = []
        self._nav_points_written = 0
        self._returns_computed = 0
        self._data_quality_issues = 0
        self._error: Optional[str] = None
        self._stop_requested = False

    @property
    def state(self) -> SyncState:
        with self._lock:
            return self._state

    @property
    def is_finished(self) -> bool:
        with self._lock:
            return self._state in TERMINAL_STATES

    @property
    def processed_count(self) -> int:
        with self._lock:
            return len(self._processed)

    @property
    def failed_schemes(self) -> List[FailedScheme]:
        with self._lock:
            return list(self._failed)

    @property
    def stop_requested(self) -> bool:
        with self._lock:
            return self._stop_requested

    @property
    def progress(self) -> float:
        """Fraction of target schemes that have either completed or failed."""
        with self._lock:
            if not self.target_schemes:
                return 1.0 if self._state in TERMINAL_STATES else 0.0
            done = self._processed | {f.scheme_code for f in self._failed}
            return min(1.0, len(done) / len(self.target_schemes))

    def set_targets(self, target_schemes: Iterable[str]) -> None:
        with self._lock:
            self.target_schemes = tuple(target_schemes)

    def transition(self, state: SyncState) -> None:
        with self._lock:
            if self._state in TERMINAL_STATES:
                raise RuntimeError(f"Sync run {self.run_id} already finished ({self._state.value})")
            self._state = state

    def mark_processed(self, scheme_codes: Iterable[str]) -> None:
        with self._lock:
            self._processed.update(scheme_codes)

    def mark_failed(self, scheme_code: str, error_kind: str, message: str = "") -> None:
        with self._lock:
            self._processed.discard(scheme_code)
            kind = error_kind.value if isinstance(error_kind, Enum) else str(error_kind)
            self._failed.append(FailedScheme(scheme_code=scheme_code, error_kind=kind, message=message))

    def add_nav_points_written(self, count: int) -> None:
        with self._lock:
            self._nav_points_written += count

    def add_returns_computed(self, data_quality_issues: int = 0) -> None:
        with self._lock:
            self._returns_computed += 1
            self._data_quality_issues += data_quality_issues

    def request_stop(self) -> None:
        """Ask the run to stop at the next batch boundary."""
        with self._lock:
            self._stop_requested = True

    def complete(self) -> None:
        """Finish the run: COMPLETED when nothing failed, FAILED (partial) otherwise."""
        with self._lock:
            self._finish(SyncState.FAILED if self._failed else SyncState.COMPLETED)

    def fail(self, error: str) -> None:
        """Abort the run after a fatal error."""
        with self._lock:
            self._error = error
            self._finish(SyncState.FAILED)

    def _finish(self, state: SyncState) -> None:
        if self._state in TERMINAL_STATES:
            return
        self._state = state
        self.completed_at = datetime.now().isoformat()
        self._duration_ms = int((self._clock() - self._started_monotonic) * 1000)

    def duration_ms(self) -> int:
        with self._lock:
            if self._duration_ms is not None:
                return self._duration_ms
            return int((self._clock() - self._started_monotonic) * 1000)

    def outcome(self) -> SyncOutcome:
        """The result object handed back to callers of a run."""
        with self._lock:
            return SyncOutcome(
                success=self._state == SyncState.COMPLETED,
                records_processed=len(self._processed),
                failed_schemes=list(self._failed),
                duration_ms=self.duration_ms(),
                nav_points_written=self._nav_points_written,
                returns_computed=self._returns_computed,
            )

    def to_dict(self) -> dict:
        """Complete status as a dictionary for the status endpoint."""
        with self._lock:
            return {
                "run_id": self.run_id,
                "mode": self.mode.value,
                "state": self._state.value,
                "target_count": len(self.target_schemes),
                "processed_count": len(self._processed),
                "failed_schemes": [f.to_dict() for f in self._failed],
                "progress": self.progress,
                "nav_points_written": self._nav_points_written,
                "returns_computed": self._returns_computed,
                "data_quality_issues": self._data_quality_issues,
                "started_at": self.started_at,
                "completed_at": self.completed_at,
                "duration_ms": self.duration_ms(),
                "stop_requested": self._stop_requested,
                "error": self._error,
            }
