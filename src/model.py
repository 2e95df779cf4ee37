"""
model.py

Domain models for the Construction Schedule & Resource Allocation Engine.

Entities
--------
- Project
- Phase
- ScheduleSnapshot
- Resource
- Blackout
- Allocation
- AnchorRule
- FinancialMilestone
- AuditEntry
- ScheduleNotice

All models use Python dataclasses for clean, framework-agnostic definitions.
Schedule values (Phase, ScheduleSnapshot, AuditEntry) are frozen: an edit
always produces new values and the previous snapshot is kept for diffing.
UUID primary keys are used throughout for portability.
Timestamps are always stored in UTC; schedule dates are plain calendar dates.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Tuple


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class PhaseStatus(str, Enum):
    """Classification of a phase relative to a given calendar day."""
    ACTIVE = "active"
    COMPLETED = "completed"
    UPCOMING = "upcoming"
    UNSCHEDULED = "unscheduled"   # start or end date missing


class AnchorKind(str, Enum):
    """
    How a financial milestone's due date is derived from the schedule.

    PHASE_END            – end date of the first phase matching the rule.
    PHASE_START_MINUS_N  – start date of the matched phase minus offset_days.
    PROJECT_FINAL_END    – latest end date across the whole timeline.
    EXTERNAL_EVENT       – a date supplied by the caller (e.g. permit approval),
                           not derived from any phase.
    """
    PHASE_END = "phase_end"
    PHASE_START_MINUS_N = "phase_start_minus_n"
    PROJECT_FINAL_END = "project_final_end"
    EXTERNAL_EVENT = "external_event"


# ---------------------------------------------------------------------------
# Project
# ---------------------------------------------------------------------------


@dataclass
class Project:
    """
    Top-level container for a construction job.

    `external_events` carries dates that live outside the schedule but can
    anchor milestones, keyed by event name (e.g. "permit_approved_at").
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    external_events: Dict[str, date] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Schedule Entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Phase:
    """
    A named, date-ranged segment of a project's construction schedule.

    `name` is the key used to match phases across snapshots and by anchor
    rules. `dependency_ref` points at another phase id in the same snapshot;
    it is resolved to an array index once per snapshot (see service.PhaseGraph).
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    sort_order: int = 0
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    dependency_ref: Optional[uuid.UUID] = None     # FK → Phase.id (same snapshot)
    resource_ref: Optional[uuid.UUID] = None       # FK → Resource.id

    @property
    def is_scheduled(self) -> bool:
        return self.start_date is not None and self.end_date is not None

    @property
    def duration_days(self) -> Optional[int]:
        """Day count end - start, or None while unscheduled."""
        if not self.is_scheduled:
            return None
        return (self.end_date - self.start_date).days

    @property
    def workdays(self) -> Optional[int]:
        """Mon–Fri days between start and end, both inclusive."""
        if not self.is_scheduled or self.end_date < self.start_date:
            return None
        full_weeks, remainder = divmod((self.end_date - self.start_date).days + 1, 7)
        count = full_weeks * 5
        weekday = self.start_date.weekday()
        for offset in range(remainder):
            if (weekday + offset) % 7 < 5:
                count += 1
        return count

    def shifted(self, delta_days: int) -> "Phase":
        """Return a copy moved by delta_days (both dates must be set)."""
        delta = timedelta(days=delta_days)
        return replace(
            self,
            start_date=self.start_date + delta,
            end_date=self.end_date + delta,
        )


@dataclass(frozen=True)
class ScheduleSnapshot:
    """
    One immutable, timestamped version of a project's full phase list.

    `version` increases by one with every edit of the same project and is
    used for optimistic concurrency checks. Only the latest snapshot of a
    project is authoritative for derived state.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → Project.id
    phases: Tuple[Phase, ...] = ()
    version: int = 1
    previous_snapshot_id: Optional[uuid.UUID] = None             # FK → ScheduleSnapshot.id
    captured_at: datetime = field(default_factory=_utcnow)

    def evolve(self, phases: Tuple[Phase, ...]) -> "ScheduleSnapshot":
        """Produce the successor snapshot carrying a new phase list."""
        return ScheduleSnapshot(
            project_id=self.project_id,
            phases=tuple(phases),
            version=self.version + 1,
            previous_snapshot_id=self.id,
            captured_at=_utcnow(),
        )


# ---------------------------------------------------------------------------
# Resource Entities
# ---------------------------------------------------------------------------


@dataclass
class Resource:
    """A crew or piece of equipment with a daily capacity in abstract units."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    capacity_per_day: float = 1.0
    active: bool = True
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Blackout:
    """A capacity-reducing interval for a resource (vacation, repair, weather)."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    resource_ref: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → Resource.id
    start_date: date = field(default_factory=date.today)
    end_date: date = field(default_factory=date.today)
    reason: str = ""


@dataclass(frozen=True)
class Allocation:
    """
    Booking of a resource over a date range.

    Allocations are not stored on their own: they are read off the latest
    snapshot of each project (phases carrying a resource_ref).
    """
    resource_ref: uuid.UUID
    start_date: date
    end_date: date
    project_id: Optional[uuid.UUID] = None
    phase_name: str = ""


# ---------------------------------------------------------------------------
# Financial Milestone Entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AnchorRule:
    """
    Configured mapping from a financial milestone to a schedule-derived date.

    `phase_match` is a case-insensitive substring matched against phase names.
    `offset_days` is only read for PHASE_START_MINUS_N and `event_key` only
    for EXTERNAL_EVENT.
    """
    milestone_key: str
    anchor_kind: AnchorKind
    phase_match: str = ""
    offset_days: int = 0
    event_key: str = "permit_approved_at"
    label: str = ""


@dataclass
class FinancialMilestone:
    """The persisted due date of a draw / progress payment for a project."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → Project.id
    milestone_key: str = ""
    label: str = ""
    due_date: Optional[date] = None
    updated_at: datetime = field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Audit & Notice Entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditEntry:
    """
    Immutable record of one phase moved by a bulk shift.

    One entry is written per phase actually shifted, so consumers can explain
    why a date changed. `cascade` echoes the request flag; `cascaded` is True
    when this phase moved because a phase it depends on moved.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)
    snapshot_id: uuid.UUID = field(default_factory=uuid.uuid4)   # resulting snapshot
    sequence_number: int = 0                                     # monotonically increasing per project

    phase_id: uuid.UUID = field(default_factory=uuid.uuid4)
    phase_name: str = ""
    delta_days: int = 0
    cascade: bool = False
    cascaded: bool = False

    old_start_date: Optional[date] = None
    old_end_date: Optional[date] = None
    new_start_date: Optional[date] = None
    new_end_date: Optional[date] = None

    actor: str = ""
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass
class ScheduleNotice:
    """A human-readable description of one schedule change, kept per project."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)
    snapshot_id: uuid.UUID = field(default_factory=uuid.uuid4)   # snapshot that introduced it
    message: str = ""
    created_at: datetime = field(default_factory=_utcnow)
