"""
service.py

Service layer for the Construction Schedule & Resource Allocation Engine.

Responsibilities
----------------
Each service class encapsulates the business logic for one schedule concern.
Services receive domain model instances (from model.py) plus explicit inputs
such as "today" or a reference week, and return new values.  Nothing here
performs I/O or keeps state between calls: callers load inputs through the
repository layer and hand results back to it.

Services
--------
- PhaseGraph              – Arena of phases with dependency refs resolved to indices
- PhaseStateResolver      – Per-phase status plus current phase and progress
- ScheduleMutator         – Manual edits and bulk date shifts with optional cascade
- MilestoneAnchorEngine   – Financial milestone due dates from anchor rules
- ResourceCapacityLedger  – Weekly capacity / allocation / overbooking grid
- ChangeNotifier          – Human-readable diff between two snapshots
- TimelineLayout          – Fraction-of-window bar positions for Gantt rendering
- ScheduleTemplateBuilder – Workday-aware finish-to-start layout of a phase template

Design notes
------------
- Schedule dates are compared as normalised "YYYY-MM-DD" calendar keys, never
  as instants, so time zones cannot move a phase by a day.
- Rejected input raises ScheduleValidationError; stored data that breaks an
  invariant (end before start, dangling dependency) raises DataIntegrityError.
  Both subclass ValueError.
- ScheduleMutator is all-or-nothing: every check runs before a new snapshot is
  built.  MilestoneAnchorEngine is the opposite: each rule is evaluated in
  isolation and a broken rule is reported without stopping the others.
"""

from __future__ import annotations

import heapq
import logging
import re
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import (
    Any,
    Dict,
    FrozenSet,
    Hashable,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from model import (
    Allocation,
    AnchorKind,
    AnchorRule,
    AuditEntry,
    Blackout,
    Phase,
    PhaseStatus,
    Resource,
    ScheduleSnapshot,
)

logger = logging.getLogger("schedule_engine.service")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ScheduleValidationError(ValueError):
    """Raised when a request is rejected before any state is changed."""


class DependencyCycleError(ScheduleValidationError):
    """Raised when the phase dependency graph contains a cycle."""

    def __init__(self, phase_names: List[str]):
        self.phase_names = phase_names
        super().__init__(
            "Dependency cycle detected: " + " -> ".join(phase_names)
        )


class DataIntegrityError(ValueError):
    """Raised when schedule data violates an invariant (e.g. end before start)."""


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


DateLike = Union[date, datetime, str]

# "YYYY-MM-DD", optionally followed by a time part after "T" or a space
_CALENDAR_TEXT = re.compile(r"(\d{4}-\d{2}-\d{2})(?:[T ].*)?")


def calendar_key(value: Optional[DateLike]) -> Optional[str]:
    """
    Normalise a date-like value to a "YYYY-MM-DD" string.

    datetimes contribute their own calendar date as-is (no time zone
    conversion); strings may carry a time part, only the date is read.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        match = _CALENDAR_TEXT.fullmatch(value.strip())
        if match is None:
            raise DataIntegrityError(f"'{value}' is not a calendar date.")
        try:
            return date.fromisoformat(match.group(1)).isoformat()
        except ValueError as exc:
            raise DataIntegrityError(f"'{value}' is not a calendar date.") from exc
    raise DataIntegrityError(f"{value!r} is not a calendar date.")


def to_date(value: Optional[DateLike]) -> Optional[date]:
    key = calendar_key(value)
    return date.fromisoformat(key) if key else None


def check_phase_dates(phases: Iterable[Phase]) -> None:
    """Raise DataIntegrityError for any phase that ends before it starts."""
    for phase in phases:
        _check_phase(phase)


def _check_phase(phase: Phase) -> None:
    start = calendar_key(phase.start_date)
    end = calendar_key(phase.end_date)
    if start and end and end < start:
        raise DataIntegrityError(
            f"Phase '{phase.name}' ends ({end}) before it starts ({start})."
        )


def _overlap_days(start: date, end: date, window_start: date, window_end: date) -> int:
    """Inclusive count of calendar days shared by two date ranges."""
    lo = max(start, window_start)
    hi = min(end, window_end)
    if lo > hi:
        return 0
    return (hi - lo).days + 1


def _phases_of(timeline: Union[ScheduleSnapshot, Sequence[Phase], None]) -> Tuple[Phase, ...]:
    if timeline is None:
        return ()
    if isinstance(timeline, ScheduleSnapshot):
        return timeline.phases
    return tuple(timeline)


# ---------------------------------------------------------------------------
# PhaseGraph
# ---------------------------------------------------------------------------

_WHITE, _GREY, _BLACK = 0, 1, 2


class PhaseGraph:
    """
    Phases held in an indexed array with dependency refs resolved once.

    `parents[i]` is the index of the phase that phase i depends on, or None.
    Name matching is never used here; ids are resolved at construction and
    a reference to a phase outside the list is a DataIntegrityError.
    """

    def __init__(self, phases: Sequence[Phase]):
        self.phases: Tuple[Phase, ...] = tuple(phases)
        self._index: Dict[uuid.UUID, int] = {}
        for i, phase in enumerate(self.phases):
            if phase.id in self._index:
                raise DataIntegrityError(f"Phase id {phase.id} appears more than once.")
            self._index[phase.id] = i

        self.parents: List[Optional[int]] = []
        self._children: Dict[int, List[int]] = {}
        for i, phase in enumerate(self.phases):
            if phase.dependency_ref is None:
                self.parents.append(None)
                continue
            parent = self._index.get(phase.dependency_ref)
            if parent is None:
                raise DataIntegrityError(
                    f"Phase '{phase.name}' depends on unknown phase {phase.dependency_ref}."
                )
            self.parents.append(parent)
            self._children.setdefault(parent, []).append(i)

    def __len__(self) -> int:
        return len(self.phases)

    def index_of(self, phase_id: uuid.UUID) -> Optional[int]:
        return self._index.get(phase_id)

    def dependents_of(self, index: int) -> List[int]:
        """Indices of phases that directly depend on phase `index`."""
        return self._children.get(index, [])

    def names(self, indices: Iterable[int]) -> List[str]:
        return [self.phases[i].name for i in indices]

    def find_cycle(self) -> Optional[List[int]]:
        """
        Depth-first walk with visited / in-progress marking.

        Returns the indices forming the first cycle found (first index
        repeated at the end), or None when the graph is acyclic.
        """
        state = [_WHITE] * len(self.phases)
        for root in range(len(self.phases)):
            if state[root] != _WHITE:
                continue
            state[root] = _GREY
            path = [root]
            stack = [iter(self.dependents_of(root))]
            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    state[path.pop()] = _BLACK
                    stack.pop()
                    continue
                if state[nxt] == _GREY:
                    return path[path.index(nxt):] + [nxt]
                if state[nxt] == _WHITE:
                    state[nxt] = _GREY
                    path.append(nxt)
                    stack.append(iter(self.dependents_of(nxt)))
        return None

    def ensure_acyclic(self) -> None:
        cycle = self.find_cycle()
        if cycle is not None:
            raise DependencyCycleError(self.names(cycle))


# ---------------------------------------------------------------------------
# PhaseStateResolver
# ---------------------------------------------------------------------------

# Ordered: canonical construction sequence → overall progress percentage.
PHASE_PROGRESS_MAP: Dict[str, int] = {
    "Planning & Permits": 0,
    "Pre Construction": 5,
    "Preconstruction": 5,
    "Framing Crew": 10,
    "Plumbing Underground": 15,
    "Concrete Crew": 20,
    "Interior Framing": 25,
    "Plumbing Rough In": 30,
    "HVAC Rough In": 35,
    "Electric Rough In": 40,
    "Insulation": 45,
    "Drywall": 55,
    "Paint": 65,
    "Flooring": 75,
    "Doors and Trim": 80,
    "Garage Doors and Gutters": 85,
    "Garage Finish": 87,
    "Plumbing Final": 90,
    "HVAC Final": 92,
    "Electric Final": 94,
    "Kitchen Install": 96,
    "Interior Finishes": 98,
    "Final": 100,
    "Completed": 100,
}

PLANNING_PHASE_NAME = "Planning & Permits"
PRECONSTRUCTION_PHASE_NAME = "Preconstruction"
PRECONSTRUCTION_PROGRESS = 10


@dataclass(frozen=True)
class PhaseState:
    """Derived status of one phase on a given day."""
    phase_id: uuid.UUID
    name: str
    sort_order: int
    start_date: Optional[str]
    end_date: Optional[str]
    progress: int
    is_active: bool
    is_completed: bool
    is_upcoming: bool

    @property
    def status(self) -> PhaseStatus:
        if self.is_active:
            return PhaseStatus.ACTIVE
        if self.is_completed:
            return PhaseStatus.COMPLETED
        if self.is_upcoming:
            return PhaseStatus.UPCOMING
        return PhaseStatus.UNSCHEDULED


@dataclass(frozen=True)
class ResolvedSchedule:
    current_phase_name: str
    current_progress_percent: int
    phase_states: Tuple[PhaseState, ...]


class PhaseStateResolver:
    """
    Derives each phase's status and the project's single current phase.

    Stateless: safe to share between threads and to call for many projects
    and many days.  Results depend only on (phases, today).
    """

    def __init__(self, progress_map: Optional[Mapping[str, int]] = None):
        self._progress = dict(PHASE_PROGRESS_MAP if progress_map is None else progress_map)

    def progress_for(self, phase_name: str) -> int:
        """Progress percentage of a canonical phase name; unknown names map to 0."""
        return self._progress.get(phase_name.strip(), 0)

    def resolve(self, phases: Sequence[Phase], today: DateLike) -> ResolvedSchedule:
        today_key = calendar_key(today)
        if today_key is None:
            raise ScheduleValidationError("A calendar day is required to resolve phase state.")

        states: List[PhaseState] = []
        for phase in phases:
            _check_phase(phase)
            start = calendar_key(phase.start_date)
            end = calendar_key(phase.end_date)
            if start is None or end is None:
                active = completed = upcoming = False
            else:
                active = start <= today_key <= end
                completed = today_key > end
                upcoming = today_key < start
            states.append(
                PhaseState(
                    phase_id=phase.id,
                    name=phase.name,
                    sort_order=phase.sort_order,
                    start_date=start,
                    end_date=end,
                    progress=self.progress_for(phase.name),
                    is_active=active,
                    is_completed=completed,
                    is_upcoming=upcoming,
                )
            )

        name, progress = self._select_current(states)
        return ResolvedSchedule(
            current_phase_name=name,
            current_progress_percent=progress,
            phase_states=tuple(states),
        )

    def resolve_many(
        self,
        timelines: Mapping[Hashable, Sequence[Phase]],
        today: DateLike,
    ) -> Dict[Hashable, ResolvedSchedule]:
        """Resolve several projects for the same day (batch dashboards)."""
        return {key: self.resolve(phases, today) for key, phases in timelines.items()}

    @staticmethod
    def _select_current(states: List[PhaseState]) -> Tuple[str, int]:
        active = [s for s in states if s.is_active]
        if active:
            # Overlapping phases: the first one holding the largest sort_order wins.
            chosen = active[0]
            for state in active[1:]:
                if state.sort_order > chosen.sort_order:
                    chosen = state
            return chosen.name, chosen.progress

        completed = [s for s in states if s.is_completed]
        if completed:
            # Latest end date; on a tie the later list position wins.
            chosen = completed[0]
            for state in completed[1:]:
                if state.end_date >= chosen.end_date:
                    chosen = state
            return chosen.name, chosen.progress

        if any(s.is_upcoming for s in states):
            return PRECONSTRUCTION_PHASE_NAME, PRECONSTRUCTION_PROGRESS

        return PLANNING_PHASE_NAME, 0


# ---------------------------------------------------------------------------
# ScheduleMutator
# ---------------------------------------------------------------------------

_SHIFT_PATTERN = re.compile(r"[+-]?\d+")


def parse_shift_days(value: Any) -> int:
    """
    Accept an int or an integer string ("5", "+5", "-3").

    bool, float and anything unparsable are rejected: the model is day
    granular and a fractional shift has no meaning.
    """
    if isinstance(value, bool):
        raise ScheduleValidationError("Shift amount must be a whole number of days, got a boolean.")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _SHIFT_PATTERN.fullmatch(value.strip()):
        return int(value.strip())
    raise ScheduleValidationError(
        f"Shift amount must be a whole number of days, got {value!r}."
    )


@dataclass(frozen=True)
class ShiftResult:
    snapshot: ScheduleSnapshot
    audit_entries: Tuple[AuditEntry, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.audit_entries)


class ScheduleMutator:
    """
    Produces new snapshots from manual edits and bulk shifts.

    Nothing is persisted here; the application layer writes the returned
    snapshot and audit entries in a single unit of work.
    """

    def apply_edit(
        self,
        project_id: uuid.UUID,
        phases: Sequence[Phase],
        previous: Optional[ScheduleSnapshot] = None,
    ) -> ScheduleSnapshot:
        """
        Validate a full replacement phase list and wrap it in a new snapshot.

        Raises DataIntegrityError for end-before-start dates or dangling
        dependency refs and DependencyCycleError for cyclic dependencies.
        """
        check_phase_dates(phases)
        PhaseGraph(phases).ensure_acyclic()
        if previous is None:
            return ScheduleSnapshot(project_id=project_id, phases=tuple(phases))
        if previous.project_id != project_id:
            raise ScheduleValidationError(
                f"Snapshot {previous.id} does not belong to project {project_id}."
            )
        return previous.evolve(tuple(phases))

    def bulk_shift(
        self,
        snapshot: ScheduleSnapshot,
        selected_phase_ids: Sequence[uuid.UUID],
        delta_days: Any,
        cascade: bool = False,
        actor: str = "system",
        first_sequence_number: int = 1,
    ) -> ShiftResult:
        """
        Move the selected phases by delta_days, optionally cascading to dependents.

        Every check happens before any new value is built:
        - delta_days must be an integer (zero returns the snapshot unchanged);
        - each selected id must exist and carry both dates;
        - with cascade, the dependency graph must be acyclic.
        Dependents reached by the cascade that lack dates stay where they are
        and get no audit entry; the walk still continues through them.
        """
        delta = parse_shift_days(delta_days)
        if delta == 0:
            return ShiftResult(snapshot=snapshot)

        check_phase_dates(snapshot.phases)
        graph = PhaseGraph(snapshot.phases)

        direct: List[int] = []
        for phase_id in selected_phase_ids:
            index = graph.index_of(phase_id)
            if index is None:
                raise ScheduleValidationError(
                    f"Phase {phase_id} is not part of snapshot {snapshot.id}."
                )
            phase = graph.phases[index]
            if not phase.is_scheduled:
                raise ScheduleValidationError(
                    f"Phase '{phase.name}' has no start or end date and cannot be shifted."
                )
            if index not in direct:
                direct.append(index)
        if not direct:
            raise ScheduleValidationError("Select at least one phase to shift.")

        cascaded: set = set()
        if cascade:
            graph.ensure_acyclic()
            visited = set(direct)
            queue = deque(direct)
            while queue:
                for child in graph.dependents_of(queue.popleft()):
                    if child in visited:
                        continue
                    visited.add(child)
                    queue.append(child)
                    if graph.phases[child].is_scheduled:
                        cascaded.add(child)

        moved = set(direct) | cascaded
        built: List[Phase] = []
        for i, phase in enumerate(graph.phases):
            if i not in moved:
                built.append(phase)
                continue
            try:
                built.append(phase.shifted(delta))
            except OverflowError as exc:
                raise ScheduleValidationError(
                    f"Shift of {delta} day(s) moves '{phase.name}' outside the supported date range."
                ) from exc
        new_phases = tuple(built)
        new_snapshot = snapshot.evolve(new_phases)

        now = _utcnow()
        entries: List[AuditEntry] = []
        sequence = first_sequence_number
        for i in sorted(moved):
            old, new = graph.phases[i], new_phases[i]
            entries.append(
                AuditEntry(
                    project_id=snapshot.project_id,
                    snapshot_id=new_snapshot.id,
                    sequence_number=sequence,
                    phase_id=old.id,
                    phase_name=old.name,
                    delta_days=delta,
                    cascade=cascade,
                    cascaded=i in cascaded,
                    old_start_date=old.start_date,
                    old_end_date=old.end_date,
                    new_start_date=new.start_date,
                    new_end_date=new.end_date,
                    actor=actor,
                    occurred_at=now,
                )
            )
            sequence += 1

        logger.debug(
            "Shifted %d phase(s) of project %s by %+d day(s) (%d via cascade)",
            len(moved), snapshot.project_id, delta, len(cascaded),
        )
        return ShiftResult(snapshot=new_snapshot, audit_entries=tuple(entries))

    @staticmethod
    def scheduled_phase_ids(snapshot: ScheduleSnapshot) -> List[uuid.UUID]:
        """Ids of every phase with both dates set, for whole-project shifts."""
        return [p.id for p in snapshot.phases if p.is_scheduled]


# ---------------------------------------------------------------------------
# MilestoneAnchorEngine
# ---------------------------------------------------------------------------

# Standard draw schedule used when a project has no rules of its own.
DEFAULT_DRAW_RULES: Tuple[AnchorRule, ...] = (
    AnchorRule(
        milestone_key="draw_1",
        anchor_kind=AnchorKind.EXTERNAL_EVENT,
        event_key="permit_approved_at",
        label="Draw 1 - Permit Approved",
    ),
    AnchorRule(
        milestone_key="draw_4",
        anchor_kind=AnchorKind.PHASE_END,
        phase_match="framing crew",
        label="Draw 4 - Dried-In",
    ),
    AnchorRule(
        milestone_key="draw_5",
        anchor_kind=AnchorKind.PHASE_START_MINUS_N,
        phase_match="insulation",
        offset_days=1,
        label="Draw 5 - Rough-Ins Complete",
    ),
    AnchorRule(
        milestone_key="draw_6",
        anchor_kind=AnchorKind.PHASE_END,
        phase_match="drywall",
        label="Draw 6 - Drywall Installed",
    ),
    AnchorRule(
        milestone_key="draw_7",
        anchor_kind=AnchorKind.PROJECT_FINAL_END,
        label="Draw 7 - Project Completion",
    ),
)


@dataclass(frozen=True)
class AnchorOutcome:
    """
    Result of evaluating a rule set.

    due_dates   – milestone key → resolved date
    unresolved  – milestone key → why no date could be derived (not an error)
    failures    – milestone key → error raised while evaluating that rule
    """
    due_dates: Dict[str, date] = field(default_factory=dict)
    unresolved: Dict[str, str] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)


class MilestoneAnchorEngine:
    """
    Recomputes financial milestone due dates from the current timeline.

    Each rule is evaluated on its own: a malformed rule or a malformed
    matched phase lands in `failures` and the remaining rules still run.
    Output depends only on (phases, rules, external_events).
    """

    def recompute(
        self,
        timeline: Union[ScheduleSnapshot, Sequence[Phase]],
        rules: Sequence[AnchorRule],
        external_events: Optional[Mapping[str, DateLike]] = None,
    ) -> AnchorOutcome:
        phases = _phases_of(timeline)
        events = dict(external_events or {})
        outcome = AnchorOutcome()
        for rule in rules:
            key = rule.milestone_key
            if key in outcome.due_dates or key in outcome.unresolved or key in outcome.failures:
                outcome.failures[key] = f"Duplicate anchor rule for milestone '{key}'."
                outcome.due_dates.pop(key, None)
                outcome.unresolved.pop(key, None)
                continue
            try:
                due, reason = self.evaluate(rule, phases, events)
            except (ValueError, TypeError) as exc:
                logger.warning("Anchor rule for milestone %s failed: %s", key, exc)
                outcome.failures[key] = str(exc)
                continue
            if due is None:
                outcome.unresolved[key] = reason
            else:
                outcome.due_dates[key] = due
        return outcome

    def evaluate(
        self,
        rule: AnchorRule,
        phases: Sequence[Phase],
        external_events: Mapping[str, DateLike],
    ) -> Tuple[Optional[date], str]:
        """Return (due_date, "") or (None, reason) for a single rule."""
        if not isinstance(rule.milestone_key, str) or not rule.milestone_key.strip():
            raise ValueError("Anchor rule has no milestone key.")
        kind = AnchorKind(rule.anchor_kind)

        if kind == AnchorKind.EXTERNAL_EVENT:
            value = external_events.get(rule.event_key)
            if value is None:
                return None, f"External event '{rule.event_key}' has not been recorded."
            return to_date(value), ""

        if kind == AnchorKind.PROJECT_FINAL_END:
            ends = []
            for phase in phases:
                if phase.end_date is not None:
                    _check_phase(phase)
                    ends.append(to_date(phase.end_date))
            if not ends:
                return None, "No phase has an end date."
            return max(ends), ""

        phase = self.match_phase(rule.phase_match, phases)
        if phase is None:
            return None, f"No phase matches '{rule.phase_match}'."
        _check_phase(phase)

        if kind == AnchorKind.PHASE_END:
            if phase.end_date is None:
                return None, f"Phase '{phase.name}' has no end date."
            return to_date(phase.end_date), ""

        # PHASE_START_MINUS_N
        offset = rule.offset_days
        if isinstance(offset, bool) or not isinstance(offset, int):
            raise TypeError(f"offset_days must be an integer, got {offset!r}.")
        if phase.start_date is None:
            return None, f"Phase '{phase.name}' has no start date."
        return to_date(phase.start_date) - timedelta(days=offset), ""

    @staticmethod
    def match_phase(phase_match: str, phases: Sequence[Phase]) -> Optional[Phase]:
        """First phase (list order) whose name contains phase_match, ignoring case."""
        if not isinstance(phase_match, str) or not phase_match.strip():
            raise ValueError("Anchor rule needs a non-empty phase_match.")
        needle = phase_match.strip().lower()
        for phase in phases:
            if needle in phase.name.lower():
                return phase
        return None


# ---------------------------------------------------------------------------
# ResourceCapacityLedger
# ---------------------------------------------------------------------------

WORKING_DAYS_PER_WEEK = 5


def week_start_for(day: date, week_start_weekday: int = 6) -> date:
    """First day of the week containing `day` (weekday numbering as date.weekday())."""
    return day - timedelta(days=(day.weekday() - week_start_weekday) % 7)


@dataclass(frozen=True)
class WeeklyUtilization:
    resource_id: uuid.UUID
    resource_name: str
    week_start: date
    week_end: date
    total_capacity: float
    allocated_capacity: int
    utilization_percent: float
    is_overbooked: bool
    blackout_days: int


@dataclass(frozen=True)
class UtilizationReport:
    weeks: Tuple[date, ...]
    grid: Tuple[WeeklyUtilization, ...]
    overbooked: Tuple[WeeklyUtilization, ...]

    def cell(self, resource_id: uuid.UUID, week_start: date) -> Optional[WeeklyUtilization]:
        for row in self.grid:
            if row.resource_id == resource_id and row.week_start == week_start:
                return row
        return None


class ResourceCapacityLedger:
    """
    Weekly capacity versus allocation for every resource over a horizon.

    Recomputed from scratch on every call; nothing is carried over between
    calls.  Each week is seven calendar days holding five working days.
    """

    def compute_utilization(
        self,
        resources: Sequence[Resource],
        blackouts: Sequence[Blackout],
        allocations: Sequence[Allocation],
        reference_week_start: date,
        horizon_weeks: int = 12,
    ) -> UtilizationReport:
        if isinstance(horizon_weeks, bool) or not isinstance(horizon_weeks, int) or horizon_weeks < 1:
            raise ScheduleValidationError("horizon_weeks must be a positive integer.")

        for resource in resources:
            if resource.capacity_per_day < 0:
                raise DataIntegrityError(
                    f"Resource '{resource.name}' has a negative capacity_per_day."
                )

        blackouts_by_resource: Dict[uuid.UUID, List[Blackout]] = {}
        for blackout in blackouts:
            if blackout.end_date < blackout.start_date:
                raise DataIntegrityError(
                    f"Blackout {blackout.id} ends before it starts."
                )
            blackouts_by_resource.setdefault(blackout.resource_ref, []).append(blackout)

        allocations_by_resource: Dict[uuid.UUID, List[Allocation]] = {}
        for allocation in allocations:
            if allocation.end_date < allocation.start_date:
                raise DataIntegrityError(
                    f"Allocation '{allocation.phase_name}' ends before it starts."
                )
            allocations_by_resource.setdefault(allocation.resource_ref, []).append(allocation)

        weeks = tuple(
            reference_week_start + timedelta(weeks=i) for i in range(horizon_weeks)
        )
        ordered = sorted(resources, key=lambda r: (r.name, str(r.id)))

        grid: List[WeeklyUtilization] = []
        for week_start in weeks:
            week_end = week_start + timedelta(days=6)
            for resource in ordered:
                blackout_days = sum(
                    min(_overlap_days(b.start_date, b.end_date, week_start, week_end), WORKING_DAYS_PER_WEEK)
                    for b in blackouts_by_resource.get(resource.id, [])
                )
                allocated = sum(
                    min(_overlap_days(a.start_date, a.end_date, week_start, week_end), WORKING_DAYS_PER_WEEK)
                    for a in allocations_by_resource.get(resource.id, [])
                )
                total = max(resource.capacity_per_day * WORKING_DAYS_PER_WEEK - blackout_days, 0)
                grid.append(
                    WeeklyUtilization(
                        resource_id=resource.id,
                        resource_name=resource.name,
                        week_start=week_start,
                        week_end=week_end,
                        total_capacity=total,
                        allocated_capacity=allocated,
                        utilization_percent=(allocated / total * 100) if total > 0 else 0.0,
                        is_overbooked=allocated > total,
                        blackout_days=blackout_days,
                    )
                )

        overbooked = sorted(
            (row for row in grid if row.is_overbooked),
            key=lambda row: (row.week_start, row.resource_name),
        )
        return UtilizationReport(weeks=weeks, grid=tuple(grid), overbooked=tuple(overbooked))


# ---------------------------------------------------------------------------
# ChangeNotifier
# ---------------------------------------------------------------------------

GENERIC_CHANGE_NOTICE = "Schedule was updated"


class ChangeNotifier:
    """Describes what changed between two snapshots, phase by phase."""

    def diff(
        self,
        previous: Union[ScheduleSnapshot, Sequence[Phase], None],
        current: Union[ScheduleSnapshot, Sequence[Phase]],
    ) -> List[str]:
        """
        Phases are matched by name.  The result is never empty: with no
        previous snapshot, or no detectable change, a single generic notice
        is returned so the change event is not lost.
        """
        current_phases = _phases_of(current)
        check_phase_dates(current_phases)
        if previous is None:
            return [GENERIC_CHANGE_NOTICE]
        previous_phases = _phases_of(previous)
        check_phase_dates(previous_phases)

        old_by_name: Dict[str, Phase] = {}
        for phase in previous_phases:
            old_by_name.setdefault(phase.name, phase)
        new_names = {phase.name for phase in current_phases}

        notices: List[str] = []
        seen: set = set()
        for phase in current_phases:
            if phase.name in seen:
                continue
            seen.add(phase.name)
            old = old_by_name.get(phase.name)
            if old is None:
                notices.append(f"{phase.name} was added to the schedule")
                continue
            notice = self._describe_change(old, phase)
            if notice:
                notices.append(notice)

        removed: set = set()
        for phase in previous_phases:
            if phase.name not in new_names and phase.name not in removed:
                removed.add(phase.name)
                notices.append(f"{phase.name} was removed from the schedule")

        return notices or [GENERIC_CHANGE_NOTICE]

    @staticmethod
    def _describe_change(old: Phase, new: Phase) -> Optional[str]:
        if not (old.is_scheduled and new.is_scheduled):
            return None
        duration_delta = new.duration_days - old.duration_days
        if duration_delta != 0:
            verb = "extended" if duration_delta > 0 else "shortened"
            return f"{new.name} was {verb} by {abs(duration_delta)} day(s)"
        start_delta = (new.start_date - old.start_date).days
        if start_delta != 0:
            direction = "later" if start_delta > 0 else "earlier"
            return f"{new.name} was moved {direction} by {abs(start_delta)} day(s)"
        return None


# ---------------------------------------------------------------------------
# TimelineLayout
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PhaseBar:
    phase_id: uuid.UUID
    name: str
    offset: float   # fraction of the window before the bar starts
    width: float    # fraction of the window covered by the bar


@dataclass(frozen=True)
class LayoutWindow:
    start: date
    end: date
    total_days: int
    bars: Tuple[PhaseBar, ...]

    def position_of(self, day: date) -> float:
        """Fractional x-position of a day inside the window (e.g. a 'today' marker)."""
        return (day - self.start).days / self.total_days


class TimelineLayout:
    """
    Bounded window around all relevant dates, padded on both sides, with
    each scheduled phase expressed as an {offset, width} pair of fractions.
    """

    def __init__(self, padding_days: int = 30, empty_window_days: int = 365):
        self.padding_days = padding_days
        self.empty_window_days = empty_window_days

    def layout(
        self,
        phases: Sequence[Phase],
        today: date,
        extra_dates: Iterable[date] = (),
    ) -> LayoutWindow:
        check_phase_dates(phases)
        dates: List[date] = [d for d in extra_dates if d is not None]
        for phase in phases:
            if phase.start_date is not None:
                dates.append(phase.start_date)
            if phase.end_date is not None:
                dates.append(phase.end_date)

        if not dates:
            end = today + timedelta(days=self.empty_window_days)
            return LayoutWindow(start=today, end=end, total_days=self.empty_window_days, bars=())

        padding = timedelta(days=self.padding_days)
        start = min(dates) - padding
        end = max(dates) + padding
        total_days = max((end - start).days, 1)

        bars = tuple(
            PhaseBar(
                phase_id=phase.id,
                name=phase.name,
                offset=(phase.start_date - start).days / total_days,
                width=(phase.duration_days + 1) / total_days,
            )
            for phase in phases
            if phase.is_scheduled
        )
        return LayoutWindow(start=start, end=end, total_days=total_days, bars=bars)


# ---------------------------------------------------------------------------
# ScheduleTemplateBuilder
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TemplateItem:
    """
    One line of a phase template.

    `duration_days` counts workdays, `lag_days` counts workdays left free
    between the predecessor's end and this item's start.
    """
    key: str
    name: str
    duration_days: int = 0
    predecessor_key: Optional[str] = None
    lag_days: int = 0
    sort_order: int = 0


def default_holidays(years: Iterable[int]) -> FrozenSet[date]:
    """Standard US construction holidays for the given years."""
    days = set()
    for year in years:
        memorial = date(year, 5, 31)
        memorial -= timedelta(days=memorial.weekday())
        labor = date(year, 9, 1)
        labor += timedelta(days=(0 - labor.weekday()) % 7)
        thanksgiving = date(year, 11, 1)
        thanksgiving += timedelta(days=(3 - thanksgiving.weekday()) % 7 + 21)
        days.update({
            date(year, 1, 1),
            memorial,
            date(year, 7, 4),
            labor,
            thanksgiving,
            thanksgiving + timedelta(days=1),
            date(year, 12, 24),
            date(year, 12, 25),
            date(year, 12, 26),
        })
    return frozenset(days)


class ScheduleTemplateBuilder:
    """
    Lays a phase template out on the calendar, finish-to-start.

    Items are placed in sort order, except that an item always waits for its
    predecessor.  An item with a predecessor starts on the first workday
    after the predecessor ends, plus `lag_days` further workdays; an item
    without one starts on the first workday after the previously placed
    item.  Weekends and the configured holidays are never start or end days.
    """

    def __init__(self, holidays: Iterable[date] = ()):
        self.holidays = frozenset(holidays)

    def is_workday(self, day: date) -> bool:
        return day.weekday() < WORKING_DAYS_PER_WEEK and day not in self.holidays

    def next_workday(self, day: date) -> date:
        """`day` itself when it is a workday, else the next one."""
        while not self.is_workday(day):
            day += timedelta(days=1)
        return day

    def add_workdays(self, start: date, workdays: int) -> date:
        """Last day of a run of `workdays` workdays beginning on workday `start`."""
        day = start
        counted = 1
        while counted < workdays:
            day += timedelta(days=1)
            if self.is_workday(day):
                counted += 1
        return day

    def start_after(self, predecessor_end: date, lag_days: int) -> date:
        day = self.next_workday(predecessor_end + timedelta(days=1))
        for _ in range(lag_days):
            day = self.next_workday(day + timedelta(days=1))
        return day

    def build(self, items: Sequence[TemplateItem], start_date: date) -> List[Phase]:
        """
        Return one dated Phase per template item, in sort order, with
        `dependency_ref` set from each item's predecessor.

        Raises ScheduleValidationError for an empty template, duplicate or
        unknown keys, blank names and negative or non-integer durations and
        lags; DependencyCycleError when predecessors form a cycle.
        """
        if not items:
            raise ScheduleValidationError("A template needs at least one item.")
        keys = set()
        for item in items:
            if item.key in keys:
                raise ScheduleValidationError(f"Template key '{item.key}' appears more than once.")
            keys.add(item.key)
            if not item.name.strip():
                raise ScheduleValidationError(f"Template item '{item.key}' has no name.")
            for label, value in (("duration_days", item.duration_days), ("lag_days", item.lag_days)):
                if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                    raise ScheduleValidationError(
                        f"Template item '{item.key}': {label} must be a non-negative whole number."
                    )
        for item in items:
            if item.predecessor_key is not None and item.predecessor_key not in keys:
                raise ScheduleValidationError(
                    f"Template item '{item.key}' follows unknown item '{item.predecessor_key}'."
                )

        ordered = sorted(items, key=lambda it: it.sort_order)
        ids = {item.key: uuid.uuid4() for item in ordered}
        placeholders = [
            Phase(
                id=ids[item.key],
                name=item.name.strip(),
                sort_order=item.sort_order,
                dependency_ref=ids[item.predecessor_key] if item.predecessor_key is not None else None,
            )
            for item in ordered
        ]
        graph = PhaseGraph(placeholders)
        graph.ensure_acyclic()

        ends: Dict[int, date] = {}
        starts: Dict[int, date] = {}
        ready = [i for i, parent in enumerate(graph.parents) if parent is None]
        heapq.heapify(ready)
        cursor = start_date
        try:
            while ready:
                i = heapq.heappop(ready)
                item = ordered[i]
                parent = graph.parents[i]
                if parent is None:
                    start = self.next_workday(cursor)
                else:
                    start = self.start_after(ends[parent], item.lag_days)
                end = self.add_workdays(start, item.duration_days) if item.duration_days > 0 else start
                starts[i], ends[i] = start, end
                cursor = end + timedelta(days=1)
                for child in graph.dependents_of(i):
                    heapq.heappush(ready, child)
        except OverflowError as exc:
            raise ScheduleValidationError(
                f"Template starting {start_date.isoformat()} runs past the supported date range."
            ) from exc

        logger.debug(
            "Built %d phase(s) from template starting %s, finishing %s",
            len(ordered), start_date, max(ends.values()),
        )
        return [
            replace(phase, start_date=starts[i], end_date=ends[i])
            for i, phase in enumerate(placeholders)
        ]
