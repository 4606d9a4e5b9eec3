"""
NAV sync API endpoints.
"""
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel
from typing import List, Optional

from navhub.services.sync_run import SyncMode
from navhub.services.nav_service import SyncOrchestrator

router = APIRouter(prefix="/sync", tags=["sync"])


class FailedSchemeItem(BaseModel):
    """A scheme that did not complete."""
    scheme_code: str
    error_kind: str
    message: str = ""


class SyncOutcomeResponse(BaseModel):
    """Result of a completed sync pass."""
    success: bool
    records_processed: int
    failed_schemes: List[FailedSchemeItem]
    duration_ms: int
    nav_points_written: int = 0
    returns_computed: int = 0


class SyncRunItem(BaseModel):
    """Progress of the current or last run."""
    run_id: str
    mode: str
    state: str
    target_count: int
    processed_count: int
    failed_schemes: List[FailedSchemeItem]
    progress: float
    nav_points_written: int
    returns_computed: int
    data_quality_issues: int
    started_at: str
    completed_at: Optional[str] = None
    duration_ms: int
    stop_requested: bool
    error: Optional[str] = None


class SyncStatusResponse(BaseModel):
    """Response model for sync status endpoint."""
    is_running: bool
    run: Optional[SyncRunItem] = None
    circuit_breaker: dict


class SyncStartedResponse(BaseModel):
    run_id: str
    mode: str
    state: str


class StopResponse(BaseModel):
    stop_requested: bool


class RegistryRefreshResponse(BaseModel):
    schemes: int


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


def _check_batch_size(batch_size: Optional[int]) -> None:
    if batch_size is not None and batch_size < 1:
        raise HTTPException(status_code=422, detail="batch_size must be at least 1")


@router.post("/nav", response_model=SyncOutcomeResponse)
async def run_nav_sync(
    request: Request,
    batch_size: Optional[int] = Query(None, description="Override for the configured batch size"),
    mode: SyncMode = Query(SyncMode.PER_SCHEME, description="per_scheme or bulk"),
):
    """
    Run one NAV sync pass and wait for it to finish.

    Returns:
        success, records_processed, failed_schemes and duration_ms. 409 while another pass is running.
    """
    _check_batch_size(batch_size)
    outcome = await get_orchestrator(request).run(batch_size=batch_size, mode=mode)
    return SyncOutcomeResponse(**outcome.to_dict())


@router.post("/nav/background", response_model=SyncStartedResponse, status_code=202)
async def start_nav_sync(
    request: Request,
    batch_size: Optional[int] = Query(None),
    mode: SyncMode = Query(SyncMode.PER_SCHEME),
):
    """Start a NAV sync pass in the background; poll /sync/status for progress."""
    _check_batch_size(batch_size)
    run = get_orchestrator(request).start_background(batch_size=batch_size, mode=mode)
    return SyncStartedResponse(run_id=run.run_id, mode=run.mode.value, state=run.state.value)


@router.post("/nav/stop", response_model=StopResponse)
async def stop_nav_sync(request: Request):
    """Ask the active run to stop at the next batch boundary."""
    return StopResponse(stop_requested=get_orchestrator(request).request_stop())


@router.post("/schemes", response_model=RegistryRefreshResponse)
async def refresh_schemes(request: Request):
    """Reload scheme names, AMCs and categories from the bulk feed."""
    count = await get_orchestrator(request).refresh_scheme_registry()
    return RegistryRefreshResponse(schemes=count)


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(request: Request):
    """
    Get the current (or last finished) sync run and circuit breaker state.

    Returns:
        SyncStatusResponse; run is null before the first pass.
    """
    return SyncStatusResponse(**get_orchestrator(request).status())
