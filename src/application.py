"""
application.py

Application layer for the Construction Schedule & Resource Allocation Engine.

Overview
--------
The application layer sits between the presentation layer (API) and the
pure service layer.  It is responsible for:

  1. Defining input/output DTOs (dataclasses) that carry only the data the
     presentation layer needs; no raw domain objects are leaked upward.
  2. Declaring abstract Repository interfaces so that the application layer
     remains persistence-agnostic (implementations live in infrastructure.py).
  3. Declaring the UnitOfWork abstraction so that the snapshot write and its
     audit entries land in one atomic transaction.
  4. Serialising edits per project (ProjectLockRegistry) and caching derived
     phase state per (project, snapshot, day) (PhaseStateCache).
  5. Implementing Use Case handlers, one class per user-facing operation,
     that orchestrate service calls, repository reads/writes and follow-up
     work (milestone recompute, change notices) in the correct order.

Structure
---------
DTOs
    ProjectDTO, PhaseDTO, ScheduleDTO, SnapshotSummaryDTO
    PhaseStateDTO, ProjectStateDTO, TimelineLayoutDTO, PhaseBarDTO
    AuditEntryDTO, NoticeDTO, ShiftResultDTO, ScheduleSaveResultDTO
    AnchorRuleDTO, MilestoneDTO, MilestoneRecomputeDTO
    ResourceDTO, BlackoutDTO, WeeklyUtilizationDTO, UtilizationReportDTO

Repository interfaces
    AbstractProjectRepository
    AbstractSnapshotRepository
    AbstractResourceRepository
    AbstractBlackoutRepository
    AbstractAllocationRepository
    AbstractAuditTrailRepository
    AbstractAnchorRuleRepository
    AbstractMilestoneRepository
    AbstractNoticeRepository

Unit of Work
    AbstractUnitOfWork

Use Cases
    --- Projects ---
    CreateProjectUseCase, GetProjectUseCase, ListProjectsUseCase
    RecordExternalEventUseCase

    --- Schedule ---
    SaveScheduleUseCase, ScheduleFromTemplateUseCase
    GetScheduleUseCase, ListSnapshotsUseCase
    BulkShiftUseCase, DiffSnapshotsUseCase, GetTimelineLayoutUseCase

    --- Phase state ---
    GetPhaseStateUseCase, GetBatchPhaseStatesUseCase

    --- Milestones ---
    SetAnchorRulesUseCase, ListAnchorRulesUseCase
    RecomputeMilestonesUseCase, ListMilestonesUseCase

    --- Resources ---
    CreateResourceUseCase, ListResourcesUseCase
    AddBlackoutUseCase, ListBlackoutsUseCase
    GetResourceUtilizationUseCase

    --- Audit & notices ---
    GetAuditTrailUseCase, GetNoticesUseCase

Design notes
------------
- A schedule edit is two steps.  Step one writes the new snapshot and its
  audit entries in a single commit and either fully succeeds or leaves the
  latest snapshot untouched.  Step two (milestones, notices) runs only after
  step one committed; its failures are logged and reported on the result
  but never undo the edit.
- Service-layer ValueErrors are re-raised as ApplicationError so the API can
  map them to 422 in one place.
"""

from __future__ import annotations

import abc
import logging
import threading
import uuid
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Hashable, Iterator, List, Optional, Sequence, Tuple

import config
from model import (
    Allocation,
    AnchorKind,
    AnchorRule,
    AuditEntry,
    Blackout,
    FinancialMilestone,
    Phase,
    Project,
    Resource,
    ScheduleNotice,
    ScheduleSnapshot,
)
from service import (
    DEFAULT_DRAW_RULES,
    ChangeNotifier,
    MilestoneAnchorEngine,
    PhaseStateResolver,
    ResolvedSchedule,
    ResourceCapacityLedger,
    ScheduleMutator,
    ScheduleTemplateBuilder,
    TemplateItem,
    TimelineLayout,
    default_holidays,
    week_start_for,
)

logger = logging.getLogger("schedule_engine.application")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""


class ConcurrentEditError(ApplicationError):
    """Raised when an edit was based on a snapshot that is no longer the latest."""


class PersistenceError(ApplicationError):
    """Raised when the store could not commit; nothing from the transaction was kept."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


def _opt_id(value: Optional[uuid.UUID]) -> Optional[str]:
    return str(value) if value else None


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

# ---------------------------------------------------------------------------
# Project DTOs
# ---------------------------------------------------------------------------

@dataclass
class ProjectDTO:
    id: str
    name: str
    external_events: Dict[str, str]
    created_at: str
    updated_at: str


# ---------------------------------------------------------------------------
# Schedule DTOs
# ---------------------------------------------------------------------------

@dataclass
class PhaseDTO:
    id: str
    name: str
    sort_order: int
    start_date: Optional[str]
    end_date: Optional[str]
    dependency_id: Optional[str]
    resource_id: Optional[str]
    duration_days: Optional[int]
    workdays: Optional[int]


@dataclass
class ScheduleDTO:
    snapshot_id: str
    project_id: str
    version: int
    previous_snapshot_id: Optional[str]
    captured_at: str
    phases: List[PhaseDTO]


@dataclass
class SnapshotSummaryDTO:
    snapshot_id: str
    version: int
    previous_snapshot_id: Optional[str]
    captured_at: str
    phase_count: int


@dataclass
class PhaseStateDTO:
    phase_id: str
    name: str
    sort_order: int
    start_date: Optional[str]
    end_date: Optional[str]
    status: str
    progress: int
    is_active: bool
    is_completed: bool
    is_upcoming: bool


@dataclass
class ProjectStateDTO:
    project_id: str
    snapshot_id: Optional[str]
    as_of: str
    current_phase_name: str
    current_progress_percent: int
    phases: List[PhaseStateDTO]


@dataclass
class PhaseBarDTO:
    phase_id: str
    name: str
    offset: float
    width: float


@dataclass
class TimelineLayoutDTO:
    """Gantt window with each scheduled phase as fractions of the window."""
    project_id: str
    window_start: str
    window_end: str
    total_days: int
    today_offset: float
    bars: List[PhaseBarDTO]


# ---------------------------------------------------------------------------
# Audit & notice DTOs
# ---------------------------------------------------------------------------

@dataclass
class AuditEntryDTO:
    id: str
    sequence_number: int
    snapshot_id: str
    phase_id: str
    phase_name: str
    delta_days: int
    cascade: bool
    cascaded: bool
    old_start_date: Optional[str]
    old_end_date: Optional[str]
    new_start_date: Optional[str]
    new_end_date: Optional[str]
    actor: str
    occurred_at: str


@dataclass
class NoticeDTO:
    id: str
    project_id: str
    snapshot_id: str
    message: str
    created_at: str


# ---------------------------------------------------------------------------
# Milestone DTOs
# ---------------------------------------------------------------------------

@dataclass
class AnchorRuleDTO:
    milestone_key: str
    anchor_kind: str
    phase_match: str
    offset_days: int
    event_key: str
    label: str


@dataclass
class MilestoneDTO:
    id: str
    project_id: str
    milestone_key: str
    label: str
    due_date: Optional[str]
    updated_at: str


@dataclass
class MilestoneRecomputeDTO:
    project_id: str
    milestones: List[MilestoneDTO]
    unresolved: Dict[str, str]
    failures: Dict[str, str]


# ---------------------------------------------------------------------------
# Edit result DTOs
# ---------------------------------------------------------------------------

@dataclass
class ShiftResultDTO:
    schedule: ScheduleDTO
    changed: bool
    audit_entries: List[AuditEntryDTO]
    milestones: Optional[MilestoneRecomputeDTO]
    notices: List[str]
    follow_up_errors: List[str]


@dataclass
class ScheduleSaveResultDTO:
    schedule: ScheduleDTO
    milestones: Optional[MilestoneRecomputeDTO]
    notices: List[str]
    follow_up_errors: List[str]


# ---------------------------------------------------------------------------
# Resource DTOs
# ---------------------------------------------------------------------------

@dataclass
class ResourceDTO:
    id: str
    name: str
    capacity_per_day: float
    active: bool
    created_at: str


@dataclass
class BlackoutDTO:
    id: str
    resource_id: str
    start_date: str
    end_date: str
    reason: str


@dataclass
class WeeklyUtilizationDTO:
    resource_id: str
    resource_name: str
    week_start: str
    week_end: str
    total_capacity: float
    allocated_capacity: int
    utilization_percent: float
    is_overbooked: bool
    blackout_days: int


@dataclass
class UtilizationReportDTO:
    weeks: List[str]
    cells: List[WeeklyUtilizationDTO]
    overbooked: List[WeeklyUtilizationDTO]


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def project(p: Project) -> ProjectDTO:
        return ProjectDTO(
            id=str(p.id),
            name=p.name,
            external_events={k: v.isoformat() for k, v in sorted(p.external_events.items())},
            created_at=_fmt(p.created_at),
            updated_at=_fmt(p.updated_at),
        )

    @staticmethod
    def phase(ph: Phase) -> PhaseDTO:
        return PhaseDTO(
            id=str(ph.id),
            name=ph.name,
            sort_order=ph.sort_order,
            start_date=_fmt_date(ph.start_date),
            end_date=_fmt_date(ph.end_date),
            dependency_id=_opt_id(ph.dependency_ref),
            resource_id=_opt_id(ph.resource_ref),
            duration_days=ph.duration_days,
            workdays=ph.workdays,
        )

    @staticmethod
    def schedule(s: ScheduleSnapshot) -> ScheduleDTO:
        return ScheduleDTO(
            snapshot_id=str(s.id),
            project_id=str(s.project_id),
            version=s.version,
            previous_snapshot_id=_opt_id(s.previous_snapshot_id),
            captured_at=_fmt(s.captured_at),
            phases=[_Assembler.phase(ph) for ph in s.phases],
        )

    @staticmethod
    def snapshot_summary(s: ScheduleSnapshot) -> SnapshotSummaryDTO:
        return SnapshotSummaryDTO(
            snapshot_id=str(s.id),
            version=s.version,
            previous_snapshot_id=_opt_id(s.previous_snapshot_id),
            captured_at=_fmt(s.captured_at),
            phase_count=len(s.phases),
        )

    @staticmethod
    def project_state(
        project_id: uuid.UUID,
        snapshot: Optional[ScheduleSnapshot],
        as_of: date,
        resolved: ResolvedSchedule,
    ) -> ProjectStateDTO:
        return ProjectStateDTO(
            project_id=str(project_id),
            snapshot_id=str(snapshot.id) if snapshot else None,
            as_of=as_of.isoformat(),
            current_phase_name=resolved.current_phase_name,
            current_progress_percent=resolved.current_progress_percent,
            phases=[
                PhaseStateDTO(
                    phase_id=str(s.phase_id),
                    name=s.name,
                    sort_order=s.sort_order,
                    start_date=s.start_date,
                    end_date=s.end_date,
                    status=s.status.value,
                    progress=s.progress,
                    is_active=s.is_active,
                    is_completed=s.is_completed,
                    is_upcoming=s.is_upcoming,
                )
                for s in resolved.phase_states
            ],
        )

    @staticmethod
    def audit_entry(e: AuditEntry) -> AuditEntryDTO:
        return AuditEntryDTO(
            id=str(e.id),
            sequence_number=e.sequence_number,
            snapshot_id=str(e.snapshot_id),
            phase_id=str(e.phase_id),
            phase_name=e.phase_name,
            delta_days=e.delta_days,
            cascade=e.cascade,
            cascaded=e.cascaded,
            old_start_date=_fmt_date(e.old_start_date),
            old_end_date=_fmt_date(e.old_end_date),
            new_start_date=_fmt_date(e.new_start_date),
            new_end_date=_fmt_date(e.new_end_date),
            actor=e.actor,
            occurred_at=_fmt(e.occurred_at),
        )

    @staticmethod
    def notice(n: ScheduleNotice) -> NoticeDTO:
        return NoticeDTO(
            id=str(n.id),
            project_id=str(n.project_id),
            snapshot_id=str(n.snapshot_id),
            message=n.message,
            created_at=_fmt(n.created_at),
        )

    @staticmethod
    def anchor_rule(r: AnchorRule) -> AnchorRuleDTO:
        return AnchorRuleDTO(
            milestone_key=r.milestone_key,
            anchor_kind=AnchorKind(r.anchor_kind).value,
            phase_match=r.phase_match,
            offset_days=r.offset_days,
            event_key=r.event_key,
            label=r.label,
        )

    @staticmethod
    def milestone(m: FinancialMilestone) -> MilestoneDTO:
        return MilestoneDTO(
            id=str(m.id),
            project_id=str(m.project_id),
            milestone_key=m.milestone_key,
            label=m.label,
            due_date=_fmt_date(m.due_date),
            updated_at=_fmt(m.updated_at),
        )

    @staticmethod
    def resource(r: Resource) -> ResourceDTO:
        return ResourceDTO(
            id=str(r.id),
            name=r.name,
            capacity_per_day=r.capacity_per_day,
            active=r.active,
            created_at=_fmt(r.created_at),
        )

    @staticmethod
    def blackout(b: Blackout) -> BlackoutDTO:
        return BlackoutDTO(
            id=str(b.id),
            resource_id=str(b.resource_ref),
            start_date=b.start_date.isoformat(),
            end_date=b.end_date.isoformat(),
            reason=b.reason,
        )

    @staticmethod
    def weekly_utilization(w) -> WeeklyUtilizationDTO:
        return WeeklyUtilizationDTO(
            resource_id=str(w.resource_id),
            resource_name=w.resource_name,
            week_start=w.week_start.isoformat(),
            week_end=w.week_end.isoformat(),
            total_capacity=w.total_capacity,
            allocated_capacity=w.allocated_capacity,
            utilization_percent=round(w.utilization_percent, 2),
            is_overbooked=w.is_overbooked,
            blackout_days=w.blackout_days,
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractProjectRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, project_id: uuid.UUID) -> Optional[Project]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Project]: ...
    @abc.abstractmethod
    def save(self, project: Project) -> None: ...


class AbstractSnapshotRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, snapshot_id: uuid.UUID) -> Optional[ScheduleSnapshot]: ...
    @abc.abstractmethod
    def latest_for_project(self, project_id: uuid.UUID) -> Optional[ScheduleSnapshot]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[ScheduleSnapshot]:
        """All snapshots of a project, newest version first."""
    @abc.abstractmethod
    def save(self, snapshot: ScheduleSnapshot) -> None: ...


class AbstractResourceRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, resource_id: uuid.UUID) -> Optional[Resource]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Resource]: ...
    @abc.abstractmethod
    def save(self, resource: Resource) -> None: ...


class AbstractBlackoutRepository(abc.ABC):
    @abc.abstractmethod
    def list_all(self) -> List[Blackout]: ...
    @abc.abstractmethod
    def list_for_resource(self, resource_id: uuid.UUID) -> List[Blackout]: ...
    @abc.abstractmethod
    def save(self, blackout: Blackout) -> None: ...


class AbstractAllocationRepository(abc.ABC):
    """Read-only view of resource bookings over a date window."""

    @abc.abstractmethod
    def list_in_window(
        self, start: date, end: date, resource_id: Optional[uuid.UUID] = None
    ) -> List[Allocation]: ...


class AbstractAuditTrailRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[AuditEntry]: ...
    @abc.abstractmethod
    def save(self, entry: AuditEntry) -> None: ...


class AbstractAnchorRuleRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[AnchorRule]: ...
    @abc.abstractmethod
    def replace_for_project(self, project_id: uuid.UUID, rules: List[AnchorRule]) -> None: ...


class AbstractMilestoneRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[FinancialMilestone]: ...
    @abc.abstractmethod
    def save(self, milestone: FinancialMilestone) -> None: ...


class AbstractNoticeRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[ScheduleNotice]: ...
    @abc.abstractmethod
    def save(self, notice: ScheduleNotice) -> None: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories under a single transactional boundary.
    Use as a context manager:

        with uow:
            uow.snapshots.save(snapshot)
            uow.commit()
    """
    projects: AbstractProjectRepository
    snapshots: AbstractSnapshotRepository
    resources: AbstractResourceRepository
    blackouts: AbstractBlackoutRepository
    allocations: AbstractAllocationRepository
    audit_trail: AbstractAuditTrailRepository
    anchor_rules: AbstractAnchorRuleRepository
    milestones: AbstractMilestoneRepository
    notices: AbstractNoticeRepository

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# CONCURRENCY & CACHING
# ===========================================================================

class ProjectLockRegistry:
    """One lock per project; edits to different projects never wait on each other."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[uuid.UUID, threading.Lock] = {}

    def lock_for(self, project_id: uuid.UUID) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = self._locks[project_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, project_id: uuid.UUID) -> Iterator[None]:
        with self.lock_for(project_id):
            yield


class PhaseStateCache:
    """
    Bounded LRU of resolved phase state keyed by (project, snapshot, day).

    Snapshots are immutable, so an entry never goes stale: an edit creates
    a new snapshot id and therefore a new key.
    """

    def __init__(self, max_entries: int = 1024):
        self.max_entries = max_entries
        self._entries: "OrderedDict[Tuple[Hashable, ...], ResolvedSchedule]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Tuple[Hashable, ...]) -> Optional[ResolvedSchedule]:
        with self._lock:
            value = self._entries.get(key)
            if value is not None:
                self._entries.move_to_end(key)
            return value

    def put(self, key: Tuple[Hashable, ...], value: ResolvedSchedule) -> None:
        if self.max_entries <= 0:
            return
        with self._lock:
            self._entries[key] = value
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# ===========================================================================
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

_resolver_svc = PhaseStateResolver()
_mutator_svc = ScheduleMutator()
_anchor_svc = MilestoneAnchorEngine()
_ledger_svc = ResourceCapacityLedger()
_notifier_svc = ChangeNotifier()
_layout_svc = TimelineLayout(
    padding_days=config.LAYOUT_PADDING_DAYS,
    empty_window_days=config.LAYOUT_EMPTY_WINDOW_DAYS,
)

project_locks = ProjectLockRegistry()
phase_state_cache = PhaseStateCache(config.PHASE_STATE_CACHE_SIZE)


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_project_or_raise(uow: AbstractUnitOfWork, project_id: uuid.UUID) -> Project:
    project = uow.projects.get(project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found.")
    return project


def _get_latest_or_raise(uow: AbstractUnitOfWork, project_id: uuid.UUID) -> ScheduleSnapshot:
    snapshot = uow.snapshots.latest_for_project(project_id)
    if snapshot is None:
        raise NotFoundError(f"Project {project_id} has no schedule yet.")
    return snapshot


def _get_snapshot_or_raise(
    uow: AbstractUnitOfWork, project_id: uuid.UUID, snapshot_id: uuid.UUID
) -> ScheduleSnapshot:
    snapshot = uow.snapshots.get(snapshot_id)
    if snapshot is None or snapshot.project_id != project_id:
        raise NotFoundError(f"Snapshot {snapshot_id} not found for project {project_id}.")
    return snapshot


def _check_expected_version(
    latest: Optional[ScheduleSnapshot], expected_version: Optional[int]
) -> None:
    if expected_version is None:
        return
    current = latest.version if latest else 0
    if current != expected_version:
        raise ConcurrentEditError(
            f"Schedule is at version {current}, edit was based on version {expected_version}."
        )


def _resolve_cached(
    project_id: uuid.UUID, snapshot: Optional[ScheduleSnapshot], as_of: date
) -> ResolvedSchedule:
    key = (project_id, snapshot.id if snapshot else None, as_of.isoformat())
    resolved = phase_state_cache.get(key)
    if resolved is None:
        resolved = _resolver_svc.resolve(snapshot.phases if snapshot else (), as_of)
        phase_state_cache.put(key, resolved)
    return resolved


def _recompute_milestones(
    uow: AbstractUnitOfWork,
    project: Project,
    snapshot: Optional[ScheduleSnapshot],
) -> MilestoneRecomputeDTO:
    """
    Evaluate the project's anchor rules and upsert the resulting due dates.

    Each milestone is written in its own transaction so one failed write
    does not block the others.  Milestones whose date did not change are
    left untouched; unresolved rules keep whatever date was stored before.
    """
    with uow:
        rules = uow.anchor_rules.list_for_project(project.id)
        existing = {m.milestone_key: m for m in uow.milestones.list_for_project(project.id)}
    if not rules and config.USE_DEFAULT_ANCHOR_RULES:
        rules = list(DEFAULT_DRAW_RULES)

    outcome = _anchor_svc.recompute(
        snapshot.phases if snapshot else (), rules, project.external_events
    )
    labels = {r.milestone_key: r.label for r in rules}
    failures = dict(outcome.failures)
    milestones: List[FinancialMilestone] = []

    for key, due in outcome.due_dates.items():
        current = existing.get(key)
        if current is not None and current.due_date == due:
            milestones.append(current)
            continue
        label = labels.get(key) or (current.label if current else key)
        if current is None:
            milestone = FinancialMilestone(
                project_id=project.id, milestone_key=key, label=label, due_date=due
            )
        else:
            milestone = replace(
                current, label=label, due_date=due, updated_at=datetime.now(timezone.utc)
            )
        try:
            with uow:
                uow.milestones.save(milestone)
                uow.commit()
        except PersistenceError as exc:
            logger.warning("Milestone %s of project %s was not saved: %s", key, project.id, exc)
            failures[key] = str(exc)
            continue
        milestones.append(milestone)

    if failures:
        logger.warning("Milestone recompute for project %s had %d failure(s)", project.id, len(failures))
    return MilestoneRecomputeDTO(
        project_id=str(project.id),
        milestones=[_Assembler.milestone(m) for m in sorted(milestones, key=lambda m: m.milestone_key)],
        unresolved=dict(outcome.unresolved),
        failures=failures,
    )


def _record_notices(
    uow: AbstractUnitOfWork,
    previous: Optional[ScheduleSnapshot],
    current: ScheduleSnapshot,
) -> List[str]:
    messages = _notifier_svc.diff(previous, current)
    with uow:
        for message in messages:
            uow.notices.save(
                ScheduleNotice(project_id=current.project_id, snapshot_id=current.id, message=message)
            )
        uow.commit()
    return messages


def _run_follow_ups(
    uow: AbstractUnitOfWork,
    project: Project,
    previous: Optional[ScheduleSnapshot],
    current: ScheduleSnapshot,
) -> Tuple[Optional[MilestoneRecomputeDTO], List[str], List[str]]:
    """Milestones then notices, after the edit itself has committed."""
    errors: List[str] = []
    milestones = None
    notices: List[str] = []
    try:
        milestones = _recompute_milestones(uow, project, current)
    except (ApplicationError, ValueError) as exc:
        logger.error("Milestone recompute failed for project %s: %s", project.id, exc)
        errors.append(f"milestones: {exc}")
    try:
        notices = _record_notices(uow, previous, current)
    except (ApplicationError, ValueError) as exc:
        logger.error("Change notices failed for project %s: %s", project.id, exc)
        errors.append(f"notices: {exc}")
    return milestones, notices, errors


# ===========================================================================
# USE CASES - PROJECTS
# ===========================================================================

@dataclass
class CreateProjectCommand:
    name: str
    external_events: Dict[str, date] = field(default_factory=dict)


class CreateProjectUseCase:
    def execute(self, cmd: CreateProjectCommand, uow: AbstractUnitOfWork) -> ProjectDTO:
        name = cmd.name.strip()
        if not name:
            raise ApplicationError("Project name must not be empty.")
        with uow:
            project = Project(name=name, external_events=dict(cmd.external_events))
            uow.projects.save(project)
            uow.commit()
        logger.info("Created project %s (%s)", project.id, project.name)
        return _Assembler.project(project)


class GetProjectUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            return _Assembler.project(_get_project_or_raise(uow, project_id))


class ListProjectsUseCase:
    def execute(self, uow: AbstractUnitOfWork) -> List[ProjectDTO]:
        with uow:
            projects = sorted(uow.projects.list_all(), key=lambda p: p.created_at)
            return [_Assembler.project(p) for p in projects]


@dataclass
class RecordExternalEventCommand:
    project_id: uuid.UUID
    event_key: str
    event_date: date


class RecordExternalEventUseCase:
    """
    Store a date that lives outside the schedule (e.g. permit approval)
    and recompute milestones that may be anchored to it.
    """

    def execute(self, cmd: RecordExternalEventCommand, uow: AbstractUnitOfWork) -> MilestoneRecomputeDTO:
        key = cmd.event_key.strip()
        if not key:
            raise ApplicationError("Event key must not be empty.")
        with project_locks.hold(cmd.project_id):
            with uow:
                project = _get_project_or_raise(uow, cmd.project_id)
                events = dict(project.external_events)
                events[key] = cmd.event_date
                project = replace(
                    project, external_events=events, updated_at=datetime.now(timezone.utc)
                )
                uow.projects.save(project)
                snapshot = uow.snapshots.latest_for_project(cmd.project_id)
                uow.commit()
            return _recompute_milestones(uow, project, snapshot)


# ===========================================================================
# USE CASES - SCHEDULE
# ===========================================================================

@dataclass
class PhaseDraft:
    """Client-side description of one phase in a full schedule save."""
    name: str
    sort_order: int = 0
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    id: Optional[uuid.UUID] = None
    dependency_id: Optional[uuid.UUID] = None
    resource_id: Optional[uuid.UUID] = None


@dataclass
class SaveScheduleCommand:
    project_id: uuid.UUID
    phases: List[PhaseDraft]
    expected_version: Optional[int] = None


class SaveScheduleUseCase:
    """
    Replace a project's phase list with a manually edited one.

    The new list becomes a new snapshot; the previous one is kept so the
    change can be diffed and explained.
    """

    def execute(self, cmd: SaveScheduleCommand, uow: AbstractUnitOfWork) -> ScheduleSaveResultDTO:
        with project_locks.hold(cmd.project_id):
            with uow:
                project = _get_project_or_raise(uow, cmd.project_id)
                previous = uow.snapshots.latest_for_project(cmd.project_id)
                _check_expected_version(previous, cmd.expected_version)

                phases = []
                for draft in cmd.phases:
                    if draft.resource_id is not None and uow.resources.get(draft.resource_id) is None:
                        raise NotFoundError(f"Resource {draft.resource_id} not found.")
                    phases.append(
                        Phase(
                            id=draft.id or uuid.uuid4(),
                            name=draft.name.strip(),
                            sort_order=draft.sort_order,
                            start_date=draft.start_date,
                            end_date=draft.end_date,
                            dependency_ref=draft.dependency_id,
                            resource_ref=draft.resource_id,
                        )
                    )
                if any(not p.name for p in phases):
                    raise ApplicationError("Every phase needs a name.")
                try:
                    snapshot = _mutator_svc.apply_edit(cmd.project_id, phases, previous)
                except ValueError as exc:
                    raise ApplicationError(str(exc)) from exc
                uow.snapshots.save(snapshot)
                uow.commit()

            logger.info(
                "Saved schedule v%d for project %s (%d phases)",
                snapshot.version, cmd.project_id, len(snapshot.phases),
            )
            milestones, notices, errors = _run_follow_ups(uow, project, previous, snapshot)
            return ScheduleSaveResultDTO(
                schedule=_Assembler.schedule(snapshot),
                milestones=milestones,
                notices=notices,
                follow_up_errors=errors,
            )


@dataclass
class ScheduleFromTemplateCommand:
    project_id: uuid.UUID
    start_date: date
    items: List[TemplateItem]
    holidays: Optional[List[date]] = None   # None → standard holidays (see config)
    expected_version: Optional[int] = None


class ScheduleFromTemplateUseCase:
    """
    Lay a phase template out from a start date and save it as the project's
    new schedule.  Predecessor links become phase dependencies, so later
    cascading shifts follow the template's chain.
    """

    def execute(self, cmd: ScheduleFromTemplateCommand, uow: AbstractUnitOfWork) -> ScheduleSaveResultDTO:
        if cmd.holidays is not None:
            holidays = cmd.holidays
        elif config.USE_DEFAULT_HOLIDAYS:
            first = cmd.start_date.year
            holidays = default_holidays(range(first, first + max(config.TEMPLATE_HOLIDAY_YEARS, 1)))
        else:
            holidays = ()
        builder = ScheduleTemplateBuilder(holidays)

        with project_locks.hold(cmd.project_id):
            with uow:
                project = _get_project_or_raise(uow, cmd.project_id)
                previous = uow.snapshots.latest_for_project(cmd.project_id)
                _check_expected_version(previous, cmd.expected_version)
                try:
                    phases = builder.build(cmd.items, cmd.start_date)
                    snapshot = _mutator_svc.apply_edit(cmd.project_id, phases, previous)
                except ValueError as exc:
                    raise ApplicationError(str(exc)) from exc
                uow.snapshots.save(snapshot)
                uow.commit()

            logger.info(
                "Built schedule v%d for project %s from a %d-item template starting %s",
                snapshot.version, cmd.project_id, len(cmd.items), cmd.start_date,
            )
            milestones, notices, errors = _run_follow_ups(uow, project, previous, snapshot)
            return ScheduleSaveResultDTO(
                schedule=_Assembler.schedule(snapshot),
                milestones=milestones,
                notices=notices,
                follow_up_errors=errors,
            )


class GetScheduleUseCase:
    def execute(
        self,
        project_id: uuid.UUID,
        uow: AbstractUnitOfWork,
        snapshot_id: Optional[uuid.UUID] = None,
    ) -> ScheduleDTO:
        with uow:
            _get_project_or_raise(uow, project_id)
            if snapshot_id is None:
                snapshot = _get_latest_or_raise(uow, project_id)
            else:
                snapshot = _get_snapshot_or_raise(uow, project_id, snapshot_id)
            return _Assembler.schedule(snapshot)


class ListSnapshotsUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[SnapshotSummaryDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            snapshots = uow.snapshots.list_for_project(project_id)
            return [_Assembler.snapshot_summary(s) for s in snapshots]


@dataclass
class BulkShiftCommand:
    project_id: uuid.UUID
    delta_days: Any
    phase_ids: Optional[List[uuid.UUID]] = None   # None → every scheduled phase
    cascade: bool = False
    actor: str = "system"
    expected_version: Optional[int] = None


class BulkShiftUseCase:
    """
    Shift selected phases by N days, optionally dragging their dependents.

    Runs under the project's lock so concurrent shifts are serialised.  The
    new snapshot and its audit entries commit together; milestone recompute
    and change notices follow and report failures without undoing the shift.
    """

    def execute(self, cmd: BulkShiftCommand, uow: AbstractUnitOfWork) -> ShiftResultDTO:
        with project_locks.hold(cmd.project_id):
            with uow:
                project = _get_project_or_raise(uow, cmd.project_id)
                previous = _get_latest_or_raise(uow, cmd.project_id)
                _check_expected_version(previous, cmd.expected_version)

                phase_ids = cmd.phase_ids
                if phase_ids is None:
                    phase_ids = _mutator_svc.scheduled_phase_ids(previous)
                existing_entries = uow.audit_trail.list_for_project(cmd.project_id)
                next_sequence = max((e.sequence_number for e in existing_entries), default=0) + 1
                try:
                    result = _mutator_svc.bulk_shift(
                        previous,
                        phase_ids,
                        cmd.delta_days,
                        cascade=cmd.cascade,
                        actor=cmd.actor,
                        first_sequence_number=next_sequence,
                    )
                except ValueError as exc:
                    raise ApplicationError(str(exc)) from exc

                if not result.changed:
                    return ShiftResultDTO(
                        schedule=_Assembler.schedule(previous),
                        changed=False,
                        audit_entries=[],
                        milestones=None,
                        notices=[],
                        follow_up_errors=[],
                    )

                uow.snapshots.save(result.snapshot)
                for entry in result.audit_entries:
                    uow.audit_trail.save(entry)
                uow.commit()

            logger.info(
                "Project %s: %d phase(s) shifted by %s day(s) by %s, now v%d",
                cmd.project_id, len(result.audit_entries), cmd.delta_days,
                cmd.actor, result.snapshot.version,
            )
            milestones, notices, errors = _run_follow_ups(uow, project, previous, result.snapshot)
            return ShiftResultDTO(
                schedule=_Assembler.schedule(result.snapshot),
                changed=True,
                audit_entries=[_Assembler.audit_entry(e) for e in result.audit_entries],
                milestones=milestones,
                notices=notices,
                follow_up_errors=errors,
            )


class DiffSnapshotsUseCase:
    """Notices describing the change between two snapshots (default: latest vs. its predecessor)."""

    def execute(
        self,
        project_id: uuid.UUID,
        uow: AbstractUnitOfWork,
        from_snapshot_id: Optional[uuid.UUID] = None,
        to_snapshot_id: Optional[uuid.UUID] = None,
    ) -> List[str]:
        with uow:
            _get_project_or_raise(uow, project_id)
            if to_snapshot_id is None:
                current = _get_latest_or_raise(uow, project_id)
            else:
                current = _get_snapshot_or_raise(uow, project_id, to_snapshot_id)
            if from_snapshot_id is not None:
                previous = _get_snapshot_or_raise(uow, project_id, from_snapshot_id)
            elif current.previous_snapshot_id is not None:
                previous = uow.snapshots.get(current.previous_snapshot_id)
            else:
                previous = None
            try:
                return _notifier_svc.diff(previous, current)
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc


class GetTimelineLayoutUseCase:
    def execute(
        self,
        project_id: uuid.UUID,
        uow: AbstractUnitOfWork,
        today: Optional[date] = None,
    ) -> TimelineLayoutDTO:
        today = today or date.today()
        with uow:
            _get_project_or_raise(uow, project_id)
            snapshot = uow.snapshots.latest_for_project(project_id)
        phases = snapshot.phases if snapshot else ()
        try:
            window = _layout_svc.layout(phases, today)
        except ValueError as exc:
            raise ApplicationError(str(exc)) from exc
        return TimelineLayoutDTO(
            project_id=str(project_id),
            window_start=window.start.isoformat(),
            window_end=window.end.isoformat(),
            total_days=window.total_days,
            today_offset=window.position_of(today),
            bars=[
                PhaseBarDTO(phase_id=str(b.phase_id), name=b.name, offset=b.offset, width=b.width)
                for b in window.bars
            ],
        )


# ===========================================================================
# USE CASES - PHASE STATE
# ===========================================================================

class GetPhaseStateUseCase:
    def execute(
        self,
        project_id: uuid.UUID,
        uow: AbstractUnitOfWork,
        as_of: Optional[date] = None,
    ) -> ProjectStateDTO:
        as_of = as_of or date.today()
        with uow:
            _get_project_or_raise(uow, project_id)
            snapshot = uow.snapshots.latest_for_project(project_id)
        try:
            resolved = _resolve_cached(project_id, snapshot, as_of)
        except ValueError as exc:
            raise ApplicationError(str(exc)) from exc
        return _Assembler.project_state(project_id, snapshot, as_of, resolved)


class GetBatchPhaseStatesUseCase:
    """Current phase and progress for many projects at once (dashboard view)."""

    def execute(
        self,
        uow: AbstractUnitOfWork,
        project_ids: Optional[Sequence[uuid.UUID]] = None,
        as_of: Optional[date] = None,
    ) -> List[ProjectStateDTO]:
        as_of = as_of or date.today()
        with uow:
            if project_ids is None:
                projects = sorted(uow.projects.list_all(), key=lambda p: p.created_at)
            else:
                projects = [_get_project_or_raise(uow, pid) for pid in project_ids]
            latest = {p.id: uow.snapshots.latest_for_project(p.id) for p in projects}

        results = []
        for project in projects:
            snapshot = latest[project.id]
            try:
                resolved = _resolve_cached(project.id, snapshot, as_of)
            except ValueError as exc:
                raise ApplicationError(f"Project {project.id}: {exc}") from exc
            results.append(_Assembler.project_state(project.id, snapshot, as_of, resolved))
        return results


# ===========================================================================
# USE CASES - MILESTONES
# ===========================================================================

@dataclass
class SetAnchorRulesCommand:
    project_id: uuid.UUID
    rules: List[AnchorRule]


class SetAnchorRulesUseCase:
    def execute(self, cmd: SetAnchorRulesCommand, uow: AbstractUnitOfWork) -> List[AnchorRuleDTO]:
        keys = [r.milestone_key for r in cmd.rules]
        if len(keys) != len(set(keys)):
            raise ApplicationError("Each milestone key may appear in only one anchor rule.")
        with uow:
            _get_project_or_raise(uow, cmd.project_id)
            uow.anchor_rules.replace_for_project(cmd.project_id, list(cmd.rules))
            uow.commit()
        return [_Assembler.anchor_rule(r) for r in cmd.rules]


class ListAnchorRulesUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[AnchorRuleDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            rules = uow.anchor_rules.list_for_project(project_id)
        if not rules and config.USE_DEFAULT_ANCHOR_RULES:
            rules = list(DEFAULT_DRAW_RULES)
        return [_Assembler.anchor_rule(r) for r in rules]


class RecomputeMilestonesUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> MilestoneRecomputeDTO:
        with project_locks.hold(project_id):
            with uow:
                project = _get_project_or_raise(uow, project_id)
                snapshot = uow.snapshots.latest_for_project(project_id)
            return _recompute_milestones(uow, project, snapshot)


class ListMilestonesUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[MilestoneDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            milestones = uow.milestones.list_for_project(project_id)
            return [_Assembler.milestone(m) for m in sorted(milestones, key=lambda m: m.milestone_key)]


# ===========================================================================
# USE CASES - RESOURCES
# ===========================================================================

@dataclass
class CreateResourceCommand:
    name: str
    capacity_per_day: float = 1.0
    active: bool = True


class CreateResourceUseCase:
    def execute(self, cmd: CreateResourceCommand, uow: AbstractUnitOfWork) -> ResourceDTO:
        name = cmd.name.strip()
        if not name:
            raise ApplicationError("Resource name must not be empty.")
        if cmd.capacity_per_day < 0:
            raise ApplicationError("capacity_per_day must not be negative.")
        with uow:
            resource = Resource(name=name, capacity_per_day=cmd.capacity_per_day, active=cmd.active)
            uow.resources.save(resource)
            uow.commit()
        return _Assembler.resource(resource)


class ListResourcesUseCase:
    def execute(self, uow: AbstractUnitOfWork, include_inactive: bool = False) -> List[ResourceDTO]:
        with uow:
            resources = uow.resources.list_all()
        if not include_inactive:
            resources = [r for r in resources if r.active]
        return [_Assembler.resource(r) for r in sorted(resources, key=lambda r: r.name)]


@dataclass
class AddBlackoutCommand:
    resource_id: uuid.UUID
    start_date: date
    end_date: date
    reason: str = ""


class AddBlackoutUseCase:
    def execute(self, cmd: AddBlackoutCommand, uow: AbstractUnitOfWork) -> BlackoutDTO:
        if cmd.end_date < cmd.start_date:
            raise ApplicationError("Blackout end_date must not be before start_date.")
        with uow:
            if uow.resources.get(cmd.resource_id) is None:
                raise NotFoundError(f"Resource {cmd.resource_id} not found.")
            blackout = Blackout(
                resource_ref=cmd.resource_id,
                start_date=cmd.start_date,
                end_date=cmd.end_date,
                reason=cmd.reason,
            )
            uow.blackouts.save(blackout)
            uow.commit()
        return _Assembler.blackout(blackout)


class ListBlackoutsUseCase:
    def execute(
        self, uow: AbstractUnitOfWork, resource_id: Optional[uuid.UUID] = None
    ) -> List[BlackoutDTO]:
        with uow:
            if resource_id is None:
                blackouts = uow.blackouts.list_all()
            else:
                if uow.resources.get(resource_id) is None:
                    raise NotFoundError(f"Resource {resource_id} not found.")
                blackouts = uow.blackouts.list_for_resource(resource_id)
        return [_Assembler.blackout(b) for b in sorted(blackouts, key=lambda b: b.start_date)]


class GetResourceUtilizationUseCase:
    """
    Weekly heatmap over active resources, starting at the week that
    contains `week_of` (today by default).
    """

    def execute(
        self,
        uow: AbstractUnitOfWork,
        week_of: Optional[date] = None,
        horizon_weeks: Optional[int] = None,
    ) -> UtilizationReportDTO:
        reference = week_start_for(week_of or date.today(), config.WEEK_START_WEEKDAY)
        horizon = horizon_weeks if horizon_weeks is not None else config.UTILIZATION_HORIZON_WEEKS
        window_end = reference + timedelta(days=7 * max(horizon, 1) - 1)
        with uow:
            resources = [r for r in uow.resources.list_all() if r.active]
            blackouts = uow.blackouts.list_all()
            allocations = uow.allocations.list_in_window(reference, window_end)
        try:
            report = _ledger_svc.compute_utilization(
                resources, blackouts, allocations, reference, horizon_weeks=horizon
            )
        except ValueError as exc:
            raise ApplicationError(str(exc)) from exc
        return UtilizationReportDTO(
            weeks=[w.isoformat() for w in report.weeks],
            cells=[_Assembler.weekly_utilization(w) for w in report.grid],
            overbooked=[_Assembler.weekly_utilization(w) for w in report.overbooked],
        )


# ===========================================================================
# USE CASES - AUDIT TRAIL & NOTICES
# ===========================================================================

class GetAuditTrailUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[AuditEntryDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            entries = uow.audit_trail.list_for_project(project_id)
            return [_Assembler.audit_entry(e) for e in sorted(entries, key=lambda e: e.sequence_number)]


class GetNoticesUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[NoticeDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            notices = uow.notices.list_for_project(project_id)
            return [_Assembler.notice(n) for n in sorted(notices, key=lambda n: n.created_at)]
