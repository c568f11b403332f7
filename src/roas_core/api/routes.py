"""FastAPI routes for dashboard reads, job triggers and the push channel."""
import logging
import sqlite3
from datetime import date
from typing import Any, Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from pydantic import BaseModel, Field

from ..context import IngestionContext, UnknownJobError
from ..metrics.dashboard import fetch_dashboard_data
from ..metrics.engine import compute_metrics
from ..metrics.snapshots import summarize_dashboard_snapshots, summarize_snapshots
from .auth import require_api_key


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["metrics"])
ws_router = APIRouter(tags=["push"])

INTERNAL_ERROR = "Internal server error"


class JobStatusModel(BaseModel):
    """Observable state of one ingestion job."""

    name: str = Field(..., description="Job name")
    state: str = Field(..., description="idle, fetching, normalizing, upserting or failed")
    run_count: int = Field(..., description="Ticks that ran")
    skipped_count: int = Field(..., description="Ticks skipped because a run was in flight")
    error_count: int = Field(..., description="Runs that ended in FAILED")
    last_error: Optional[str] = Field(None, description="Error of the last failed run")
    last_started_at: Optional[str] = Field(None, description="ISO-8601 UTC")
    last_finished_at: Optional[str] = Field(None, description="ISO-8601 UTC")
    last_result: Optional[Any] = Field(None, description="Summary of the last successful run")


class JobTriggerRequest(BaseModel):
    """Optional parameters for a manual job run."""

    date: Optional[str] = Field(
        None, description="YYYY-MM-DD: snapshot day, or last day of a backfill"
    )
    start: Optional[str] = Field(None, description="YYYY-MM-DD: ads range start")
    end: Optional[str] = Field(None, description="YYYY-MM-DD: ads range end")
    backfill: bool = Field(False, description="Snapshots: walk back to the floor date")
    force: bool = Field(False, description="Snapshots: rebuild an archived day")


class JobTriggerResponse(BaseModel):
    """Immediate response for a triggered job."""

    name: str = Field(..., description="Job name")
    status: str = Field(..., description="'queued', or 'already_running' if skipped")


def get_context(request: Request) -> IngestionContext:
    return request.app.state.context


def _parse_date(value: Optional[str], label: str) -> date:
    if not value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{label} date parameter is required",
        )
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{label} must be YYYY-MM-DD, got '{value}'",
        ) from None


def _parse_range(start: Optional[str], end: Optional[str]) -> tuple[date, date]:
    if not start or not end:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Start and end date parameters are required",
        )
    start_date = _parse_date(start, "start")
    end_date = _parse_date(end, "end")
    if end_date < start_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="end must not be before start",
        )
    return start_date, end_date


def _internal_error(what: str, exc: Exception) -> HTTPException:
    logger.error("Failed to %s: %s", what, exc, exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=INTERNAL_ERROR,
    )


@router.get("/orders-by-date", summary="Dashboard aggregate for a date range")
async def orders_by_date(
    start: Optional[str] = Query(None, description="YYYY-MM-DD"),
    end: Optional[str] = Query(None, description="YYYY-MM-DD"),
    context: IngestionContext = Depends(get_context),
) -> dict:
    start_date, end_date = _parse_range(start, end)
    conn = context.connect()
    try:
        return fetch_dashboard_data(conn, start_date, end_date)
    except sqlite3.Error as exc:
        raise _internal_error("fetch dashboard data", exc)
    finally:
        conn.close()


@router.get("/todays-orders", summary="Cached dashboard aggregate for today")
async def todays_orders(context: IngestionContext = Depends(get_context)) -> dict:
    if context.cache is not None:
        return context.cache["dashboardData"]

    today = context.today()
    conn = context.connect()
    try:
        return fetch_dashboard_data(conn, today, today)
    except sqlite3.Error as exc:
        raise _internal_error("fetch today's orders", exc)
    finally:
        conn.close()


@router.get("/ad-metrics", summary="Attributed ad metrics for a date range")
async def ad_metrics(
    start_date: Optional[str] = Query(None, alias="startDate", description="YYYY-MM-DD"),
    end_date: Optional[str] = Query(None, alias="endDate", description="YYYY-MM-DD"),
    context: IngestionContext = Depends(get_context),
) -> dict:
    start, end = _parse_range(start_date, end_date)
    conn = context.connect()
    try:
        return compute_metrics(conn, start, end).to_dict()
    except sqlite3.Error as exc:
        raise _internal_error("compute ad metrics", exc)
    finally:
        conn.close()


@router.get("/summary", summary="Archived entity metrics re-aggregated over a range")
async def summary(
    start_date: Optional[str] = Query(None, alias="startDate", description="YYYY-MM-DD"),
    end_date: Optional[str] = Query(None, alias="endDate", description="YYYY-MM-DD"),
    context: IngestionContext = Depends(get_context),
) -> dict:
    start, end = _parse_range(start_date, end_date)
    conn = context.connect()
    try:
        return summarize_snapshots(conn, start, end).to_dict()
    except sqlite3.Error as exc:
        raise _internal_error("summarize snapshots", exc)
    finally:
        conn.close()


@router.get("/dashboard-summary", summary="Archived dashboard aggregates merged over a range")
async def dashboard_summary(
    start_date: Optional[str] = Query(None, alias="startDate", description="YYYY-MM-DD"),
    end_date: Optional[str] = Query(None, alias="endDate", description="YYYY-MM-DD"),
    context: IngestionContext = Depends(get_context),
) -> dict:
    start, end = _parse_range(start_date, end_date)
    conn = context.connect()
    try:
        return summarize_dashboard_snapshots(conn, start, end)
    except sqlite3.Error as exc:
        raise _internal_error("summarize dashboard snapshots", exc)
    finally:
        conn.close()


@router.get("/jobs", response_model=list[JobStatusModel], summary="Ingestion job states")
async def list_jobs(context: IngestionContext = Depends(get_context)) -> list[dict]:
    return [job.status.to_dict() for job in context.jobs.values()]


def _job_kwargs(name: str, payload: JobTriggerRequest) -> dict:
    if name == "snapshots":
        kwargs: dict = {"backfill": payload.backfill, "force": payload.force}
        if payload.date:
            kwargs["day"] = _parse_date(payload.date, "date")
        return kwargs

    if name == "ads" and (payload.start or payload.end):
        since, until = _parse_range(payload.start, payload.end)
        return {"since": since, "until": until}

    return {}


@router.post(
    "/jobs/{name}",
    response_model=JobTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_api_key)],
    summary="Trigger an ingestion job",
    description=(
        "Run one job (orders, ads, catalog, line-items, snapshots) in the "
        "background. Returns immediately (202 Accepted)."
    ),
)
async def trigger_job(
    name: str,
    background_tasks: BackgroundTasks,
    payload: Optional[JobTriggerRequest] = None,
    context: IngestionContext = Depends(get_context),
) -> JobTriggerResponse:
    try:
        job = context.get_job(name)
    except UnknownJobError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown or unconfigured job '{name}'",
        ) from None

    kwargs = _job_kwargs(name, payload or JobTriggerRequest())

    if job.is_running:
        return JobTriggerResponse(name=name, status="already_running")

    background_tasks.add_task(job.tick, **kwargs)
    logger.info("Queued job %s %s", name, kwargs)
    return JobTriggerResponse(name=name, status="queued")


@ws_router.websocket("/ws")
async def push_channel(websocket: WebSocket) -> None:
    """Send the cached payload on connect, then whatever refresh_cache broadcasts."""
    context: IngestionContext = websocket.app.state.context
    manager = context.broadcaster

    conn_info = await manager.connect(websocket)
    try:
        event, data = context.current_message()
        await manager.send(conn_info, event, data)
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(conn_info)
