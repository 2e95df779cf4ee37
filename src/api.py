"""
api.py

REST API layer for the Construction Schedule & Resource Allocation Engine.

Framework : FastAPI
Actors    : Edits carry a free-form `actor` string that is written to the
            audit trail; authentication is left to the deployment.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /projects                           - project CRUD and external events
  │   ├── /{project_id}/schedule          - snapshots, state, layout, shift, diff, template
  │   ├── /{project_id}/anchor-rules      - milestone anchor configuration
  │   ├── /{project_id}/milestones        - financial milestone due dates
  │   ├── /{project_id}/audit             - per-phase shift audit trail
  │   └── /{project_id}/notices           - human-readable change notices
  ├── /resources                          - crews, blackouts, utilization heatmap
  └── /dashboard/phase-states             - current phase for many projects

Error handling
--------------
  NotFoundError       → 404
  ConcurrentEditError → 409
  ApplicationError    → 422
  ValueError          → 422
  PersistenceError    → 503
  Unhandled           → 500 (FastAPI default)

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>" }

Running
-------
  uvicorn main:app --reload
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from datetime import date
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Path, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, Field, field_validator

import config
from application import (
    # Exceptions
    ApplicationError,
    ConcurrentEditError,
    NotFoundError,
    PersistenceError,
    # Use-case commands
    AddBlackoutCommand,
    BulkShiftCommand,
    CreateProjectCommand,
    CreateResourceCommand,
    PhaseDraft,
    RecordExternalEventCommand,
    SaveScheduleCommand,
    ScheduleFromTemplateCommand,
    SetAnchorRulesCommand,
    # Use-case classes
    AbstractUnitOfWork,
    BulkShiftUseCase,
    CreateProjectUseCase,
    SaveScheduleUseCase,
)
from infrastructure import InMemoryUnitOfWork
from model import AnchorKind, AnchorRule
from service import TemplateItem, parse_shift_days

logger = logging.getLogger("schedule_engine.api")


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Construction Schedule & Resource Allocation Engine",
    version="1.0.0",
    description=(
        "REST API for residential construction schedules: phase state and "
        "progress, bulk date shifts with dependency cascade, financial draw "
        "milestones, crew capacity heatmaps and schedule change notices."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConcurrentEditError)
async def concurrent_edit_handler(request, exc: ConcurrentEditError):
    logger.info("Rejected stale edit on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request, exc: PersistenceError):
    logger.error("Storage failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_uow() -> AbstractUnitOfWork:
    """Returns the in-memory Unit of Work (no database required)."""
    return InMemoryUnitOfWork()


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item
                for item in data
            ]
        }
    return {"data": data}


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

# ---------------------------------------------------------------------------
# Project schemas
# ---------------------------------------------------------------------------

class CreateProjectRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    external_events: Dict[str, date] = Field(
        default_factory=dict,
        description="Dates outside the schedule, e.g. {\"permit_approved_at\": \"2024-02-01\"}.",
    )


class RecordExternalEventRequest(BaseModel):
    event_key: str = Field(..., min_length=1, max_length=100)
    event_date: date


# ---------------------------------------------------------------------------
# Schedule schemas
# ---------------------------------------------------------------------------

class PhaseRequest(BaseModel):
    id: Optional[uuid.UUID] = Field(
        default=None, description="Keep an existing phase's id; omit to create a new phase."
    )
    name: str = Field(..., min_length=1, max_length=200)
    sort_order: int = Field(default=0)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    dependency_id: Optional[uuid.UUID] = Field(
        default=None, description="Id of the phase (in this same list) this one depends on."
    )
    resource_id: Optional[uuid.UUID] = None


class SaveScheduleRequest(BaseModel):
    phases: List[PhaseRequest]
    expected_version: Optional[int] = Field(
        default=None, ge=0, description="Reject the save if the schedule has moved past this version."
    )


class TemplateItemRequest(BaseModel):
    key: str = Field(..., min_length=1, max_length=100, description="Identifier used by predecessor_key.")
    name: str = Field(..., min_length=1, max_length=200)
    duration_days: int = Field(default=0, ge=0, le=3650, description="Length in workdays.")
    predecessor_key: Optional[str] = Field(
        default=None, description="Key of the item this one follows (finish-to-start)."
    )
    lag_days: int = Field(default=0, ge=0, le=3650, description="Workdays to wait after the predecessor ends.")
    sort_order: int = Field(default=0)


class ScheduleFromTemplateRequest(BaseModel):
    start_date: date
    items: List[TemplateItemRequest] = Field(..., min_length=1)
    holidays: Optional[List[date]] = Field(
        default=None, description="Non-working days to skip; omit to use the standard holiday list."
    )
    expected_version: Optional[int] = Field(default=None, ge=0)


class BulkShiftRequest(BaseModel):
    phase_ids: Optional[List[uuid.UUID]] = Field(
        default=None, description="Phases to move; omit to move every scheduled phase."
    )
    delta_days: Union[int, str] = Field(
        ..., description="Whole days to move by; negative moves earlier. Integer strings are accepted."
    )
    cascade: bool = False
    actor: str = Field(default="system", min_length=1, max_length=200)
    expected_version: Optional[int] = Field(default=None, ge=0)

    @field_validator("delta_days", mode="before")
    @classmethod
    def validate_delta_days(cls, v: Any) -> int:
        return parse_shift_days(v)


# ---------------------------------------------------------------------------
# Milestone schemas
# ---------------------------------------------------------------------------

class AnchorRuleRequest(BaseModel):
    milestone_key: str = Field(..., min_length=1, max_length=100)
    anchor_kind: str = Field(
        ...,
        description="One of: phase_end, phase_start_minus_n, project_final_end, external_event",
    )
    phase_match: str = Field(default="")
    offset_days: int = Field(default=0)
    event_key: str = Field(default="permit_approved_at")
    label: str = Field(default="")

    @field_validator("anchor_kind")
    @classmethod
    def validate_anchor_kind(cls, v: str) -> str:
        valid = {k.value for k in AnchorKind}
        if v not in valid:
            raise ValueError(f"anchor_kind must be one of: {sorted(valid)}")
        return v


class SetAnchorRulesRequest(BaseModel):
    rules: List[AnchorRuleRequest]


# ---------------------------------------------------------------------------
# Resource schemas
# ---------------------------------------------------------------------------

class CreateResourceRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    capacity_per_day: float = Field(default=1.0, ge=0.0)
    active: bool = True


class AddBlackoutRequest(BaseModel):
    start_date: date
    end_date: date
    reason: str = Field(default="", max_length=500)


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

project_router = APIRouter(prefix="/projects", tags=["Projects"])


@project_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create a new construction project",
)
def create_project(
    body: CreateProjectRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = CreateProjectCommand(name=body.name, external_events=dict(body.external_events))
    result = CreateProjectUseCase().execute(cmd, uow)
    return _ok(result)


@project_router.get(
    "",
    summary="List all projects",
)
def list_projects(
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ListProjectsUseCase
    result = ListProjectsUseCase().execute(uow)
    return _ok(result)


@project_router.get(
    "/{project_id}",
    summary="Get a project by ID",
)
def get_project(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetProjectUseCase
    result = GetProjectUseCase().execute(project_id, uow)
    return _ok(result)


@project_router.post(
    "/{project_id}/events",
    summary="Record an external event date (e.g. permit approval)",
)
def record_external_event(
    body: RecordExternalEventRequest,
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Stores the date on the project and recomputes milestones, since rules of
    kind external_event may be anchored to it.
    """
    from application import RecordExternalEventUseCase
    cmd = RecordExternalEventCommand(
        project_id=project_id, event_key=body.event_key, event_date=body.event_date
    )
    result = RecordExternalEventUseCase().execute(cmd, uow)
    return _ok(result)


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------

schedule_router = APIRouter(
    prefix="/projects/{project_id}/schedule",
    tags=["Schedule"],
)


@schedule_router.put(
    "",
    summary="Save a full phase list as a new schedule snapshot",
)
def save_schedule(
    body: SaveScheduleRequest,
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    The submitted list replaces the current schedule.  Dependencies must
    reference phases in the same list and may not form a cycle; every phase
    must end on or after its start.  Milestones and notices are refreshed
    afterwards.
    """
    cmd = SaveScheduleCommand(
        project_id=project_id,
        phases=[
            PhaseDraft(
                id=p.id,
                name=p.name,
                sort_order=p.sort_order,
                start_date=p.start_date,
                end_date=p.end_date,
                dependency_id=p.dependency_id,
                resource_id=p.resource_id,
            )
            for p in body.phases
        ],
        expected_version=body.expected_version,
    )
    result = SaveScheduleUseCase().execute(cmd, uow)
    return _ok(result)


@schedule_router.post(
    "/from-template",
    status_code=status.HTTP_201_CREATED,
    summary="Build and save a schedule from a phase template",
)
def schedule_from_template(
    body: ScheduleFromTemplateRequest,
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Items are chained finish-to-start from `start_date`, skipping weekends
    and holidays.  Each predecessor link is stored as a phase dependency.
    """
    from application import ScheduleFromTemplateUseCase
    cmd = ScheduleFromTemplateCommand(
        project_id=project_id,
        start_date=body.start_date,
        items=[
            TemplateItem(
                key=item.key,
                name=item.name,
                duration_days=item.duration_days,
                predecessor_key=item.predecessor_key,
                lag_days=item.lag_days,
                sort_order=item.sort_order,
            )
            for item in body.items
        ],
        holidays=body.holidays,
        expected_version=body.expected_version,
    )
    result = ScheduleFromTemplateUseCase().execute(cmd, uow)
    return _ok(result)


@schedule_router.get(
    "",
    summary="Get the latest schedule snapshot (or a specific one)",
)
def get_schedule(
    project_id: uuid.UUID = Path(...),
    snapshot_id: Optional[uuid.UUID] = Query(default=None),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetScheduleUseCase
    result = GetScheduleUseCase().execute(project_id, uow, snapshot_id=snapshot_id)
    return _ok(result)


@schedule_router.get(
    "/snapshots",
    summary="List schedule versions, newest first",
)
def list_snapshots(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ListSnapshotsUseCase
    result = ListSnapshotsUseCase().execute(project_id, uow)
    return _ok(result)


@schedule_router.get(
    "/state",
    summary="Current phase, progress and per-phase status on a given day",
)
def get_phase_state(
    project_id: uuid.UUID = Path(...),
    as_of: Optional[date] = Query(default=None, description="Defaults to today."),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetPhaseStateUseCase
    result = GetPhaseStateUseCase().execute(project_id, uow, as_of=as_of)
    return _ok(result)


@schedule_router.get(
    "/layout",
    summary="Gantt window and per-phase bar positions",
)
def get_timeline_layout(
    project_id: uuid.UUID = Path(...),
    today: Optional[date] = Query(default=None, description="Defaults to today."),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetTimelineLayoutUseCase
    result = GetTimelineLayoutUseCase().execute(project_id, uow, today=today)
    return _ok(result)


@schedule_router.post(
    "/shift",
    summary="Shift phases by N days, optionally cascading to dependents",
)
def bulk_shift(
    body: BulkShiftRequest,
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    All checks run before anything is written: an unknown or undated phase,
    a non-integer shift or (with cascade) a dependency cycle rejects the
    whole request.  One audit entry is written per phase moved.
    """
    cmd = BulkShiftCommand(
        project_id=project_id,
        phase_ids=body.phase_ids,
        delta_days=body.delta_days,
        cascade=body.cascade,
        actor=body.actor,
        expected_version=body.expected_version,
    )
    result = BulkShiftUseCase().execute(cmd, uow)
    return _ok(result)


@schedule_router.get(
    "/diff",
    summary="Describe the changes between two snapshots",
)
def diff_snapshots(
    project_id: uuid.UUID = Path(...),
    from_snapshot_id: Optional[uuid.UUID] = Query(default=None),
    to_snapshot_id: Optional[uuid.UUID] = Query(default=None),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import DiffSnapshotsUseCase
    result = DiffSnapshotsUseCase().execute(
        project_id, uow, from_snapshot_id=from_snapshot_id, to_snapshot_id=to_snapshot_id
    )
    return _ok(result)


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------

milestone_router = APIRouter(
    prefix="/projects/{project_id}",
    tags=["Milestones"],
)


@milestone_router.get(
    "/anchor-rules",
    summary="List the project's milestone anchor rules",
)
def list_anchor_rules(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ListAnchorRulesUseCase
    result = ListAnchorRulesUseCase().execute(project_id, uow)
    return _ok(result)


@milestone_router.put(
    "/anchor-rules",
    summary="Replace the project's milestone anchor rules",
)
def set_anchor_rules(
    body: SetAnchorRulesRequest,
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import SetAnchorRulesUseCase
    cmd = SetAnchorRulesCommand(
        project_id=project_id,
        rules=[
            AnchorRule(
                milestone_key=r.milestone_key,
                anchor_kind=AnchorKind(r.anchor_kind),
                phase_match=r.phase_match,
                offset_days=r.offset_days,
                event_key=r.event_key,
                label=r.label,
            )
            for r in body.rules
        ],
    )
    result = SetAnchorRulesUseCase().execute(cmd, uow)
    return _ok(result)


@milestone_router.get(
    "/milestones",
    summary="List stored milestone due dates",
)
def list_milestones(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ListMilestonesUseCase
    result = ListMilestonesUseCase().execute(project_id, uow)
    return _ok(result)


@milestone_router.post(
    "/milestones/recompute",
    summary="Recompute milestone due dates from the latest schedule",
)
def recompute_milestones(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Each rule is evaluated on its own; rules that cannot be resolved or that
    fail are listed in the response and the others are still saved.
    """
    from application import RecomputeMilestonesUseCase
    result = RecomputeMilestonesUseCase().execute(project_id, uow)
    return _ok(result)


# ---------------------------------------------------------------------------
# Audit Trail & Notices
# ---------------------------------------------------------------------------

audit_router = APIRouter(
    prefix="/projects/{project_id}/audit",
    tags=["Audit Trail"],
)


@audit_router.get(
    "",
    summary="View the shift audit trail for a project",
)
def get_audit_trail(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    One entry per phase moved by a bulk shift, in sequence order, with old
    and new dates and whether the phase moved through the cascade.
    """
    from application import GetAuditTrailUseCase
    result = GetAuditTrailUseCase().execute(project_id, uow)
    return _ok(result)


notice_router = APIRouter(
    prefix="/projects/{project_id}/notices",
    tags=["Notices"],
)


@notice_router.get(
    "",
    summary="List schedule change notices for a project",
)
def get_notices(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetNoticesUseCase
    result = GetNoticesUseCase().execute(project_id, uow)
    return _ok(result)


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------

resource_router = APIRouter(prefix="/resources", tags=["Resources"])


@resource_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Register a crew or piece of equipment",
)
def create_resource(
    body: CreateResourceRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import CreateResourceUseCase
    cmd = CreateResourceCommand(
        name=body.name, capacity_per_day=body.capacity_per_day, active=body.active
    )
    result = CreateResourceUseCase().execute(cmd, uow)
    return _ok(result)


@resource_router.get(
    "",
    summary="List resources",
)
def list_resources(
    include_inactive: bool = Query(default=False),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ListResourcesUseCase
    result = ListResourcesUseCase().execute(uow, include_inactive=include_inactive)
    return _ok(result)


@resource_router.get(
    "/utilization",
    summary="Weekly capacity / allocation heatmap",
)
def get_utilization(
    week_of: Optional[date] = Query(default=None, description="Any day in the first week; defaults to today."),
    horizon_weeks: Optional[int] = Query(default=None, ge=1, le=104),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetResourceUtilizationUseCase
    result = GetResourceUtilizationUseCase().execute(
        uow, week_of=week_of, horizon_weeks=horizon_weeks
    )
    return _ok(result)


@resource_router.get(
    "/blackouts",
    summary="List blackout periods",
)
def list_blackouts(
    resource_id: Optional[uuid.UUID] = Query(default=None),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ListBlackoutsUseCase
    result = ListBlackoutsUseCase().execute(uow, resource_id=resource_id)
    return _ok(result)


@resource_router.post(
    "/{resource_id}/blackouts",
    status_code=status.HTTP_201_CREATED,
    summary="Add a blackout period (vacation, repair, weather) for a resource",
)
def add_blackout(
    body: AddBlackoutRequest,
    resource_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import AddBlackoutUseCase
    cmd = AddBlackoutCommand(
        resource_id=resource_id,
        start_date=body.start_date,
        end_date=body.end_date,
        reason=body.reason,
    )
    result = AddBlackoutUseCase().execute(cmd, uow)
    return _ok(result)


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------

dashboard_router = APIRouter(prefix="/dashboard", tags=["Dashboard"])


@dashboard_router.get(
    "/phase-states",
    summary="Current phase and progress for many projects on one day",
)
def get_batch_phase_states(
    project_ids: Optional[List[uuid.UUID]] = Query(default=None, description="Defaults to every project."),
    as_of: Optional[date] = Query(default=None),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetBatchPhaseStatesUseCase
    result = GetBatchPhaseStatesUseCase().execute(uow, project_ids=project_ids, as_of=as_of)
    return _ok(result)


# ===========================================================================
# REGISTER ROUTERS
# ===========================================================================

api_v1.include_router(project_router)
api_v1.include_router(schedule_router)
api_v1.include_router(milestone_router)
api_v1.include_router(audit_router)
api_v1.include_router(notice_router)
api_v1.include_router(resource_router)
api_v1.include_router(dashboard_router)

app.include_router(api_v1)

# ---------------------------------------------------------------------------
# MCP Server - exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount()


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok"}


# ===========================================================================
# OPENAPI CUSTOMISATION - tag order and descriptions
# ===========================================================================

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness check.",
    },
    {
        "name": "Projects",
        "description": (
            "Construction jobs.  External event dates such as permit approval "
            "live on the project and can anchor financial milestones."
        ),
    },
    {
        "name": "Schedule",
        "description": (
            "Immutable schedule snapshots.  Every save or shift produces a new "
            "version; the previous one is kept for diffing.  Includes derived "
            "phase state, Gantt layout and bulk shifts with dependency cascade."
        ),
    },
    {
        "name": "Milestones",
        "description": (
            "Draw / progress-payment due dates derived from the schedule via "
            "anchor rules.  Projects without rules use the standard draw schedule."
        ),
    },
    {
        "name": "Audit Trail",
        "description": "Append-only record of every phase moved by a bulk shift.",
    },
    {
        "name": "Notices",
        "description": "Human-readable descriptions of each schedule change.",
    },
    {
        "name": "Resources",
        "description": (
            "Crews and equipment with daily capacity, blackout periods and a "
            "weekly utilization heatmap that flags overbooked weeks."
        ),
    },
    {
        "name": "Dashboard",
        "description": "Current phase and progress across many projects at once.",
    },
]

app.openapi_tags = tags_metadata
