import threading
import uuid

import pytest

from conftest import d
from application import (
    AddBlackoutCommand,
    AddBlackoutUseCase,
    ApplicationError,
    BulkShiftCommand,
    BulkShiftUseCase,
    ConcurrentEditError,
    CreateProjectCommand,
    CreateProjectUseCase,
    CreateResourceCommand,
    CreateResourceUseCase,
    DiffSnapshotsUseCase,
    GetAuditTrailUseCase,
    GetBatchPhaseStatesUseCase,
    GetNoticesUseCase,
    GetPhaseStateUseCase,
    GetResourceUtilizationUseCase,
    GetScheduleUseCase,
    GetTimelineLayoutUseCase,
    ListAnchorRulesUseCase,
    ListMilestonesUseCase,
    ListSnapshotsUseCase,
    NotFoundError,
    PersistenceError,
    PhaseDraft,
    PhaseStateCache,
    ProjectLockRegistry,
    RecordExternalEventCommand,
    RecordExternalEventUseCase,
    SaveScheduleCommand,
    SaveScheduleUseCase,
    ScheduleFromTemplateCommand,
    ScheduleFromTemplateUseCase,
    SetAnchorRulesCommand,
    SetAnchorRulesUseCase,
)
from infrastructure import InMemoryUnitOfWork
from model import AnchorKind, AnchorRule
from service import TemplateItem


def _create_project(uow, name="Maple Street Build", **events):
    return uuid.UUID(CreateProjectUseCase().execute(CreateProjectCommand(name=name, external_events=events), uow).id)


def _chain_drafts(resource_id=None):
    framing_id, insulation_id, drywall_id = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    return [
        PhaseDraft(
            id=framing_id, name="Framing Crew", sort_order=1,
            start_date=d("2024-02-01"), end_date=d("2024-02-14"), resource_id=resource_id,
        ),
        PhaseDraft(
            id=insulation_id, name="Insulation", sort_order=2,
            start_date=d("2024-03-01"), end_date=d("2024-03-10"), dependency_id=framing_id,
        ),
        PhaseDraft(
            id=drywall_id, name="Drywall", sort_order=3,
            start_date=d("2024-03-11"), end_date=d("2024-03-20"), dependency_id=insulation_id,
        ),
    ]


@pytest.fixture
def project_id(uow):
    pid = _create_project(uow)
    SaveScheduleUseCase().execute(SaveScheduleCommand(project_id=pid, phases=_chain_drafts()), uow)
    return pid


def _framing_id(uow, project_id):
    schedule = GetScheduleUseCase().execute(project_id, uow)
    return uuid.UUID(schedule.phases[0].id)


# ---------------------------------------------------------------------------
# Projects and schedule saves
# ---------------------------------------------------------------------------

def test_create_project_rejects_blank_name(uow):
    with pytest.raises(ApplicationError):
        CreateProjectUseCase().execute(CreateProjectCommand(name="   "), uow)


def test_save_schedule_creates_first_version(uow, project_id):
    schedule = GetScheduleUseCase().execute(project_id, uow)
    assert schedule.version == 1
    assert schedule.previous_snapshot_id is None
    assert [p.name for p in schedule.phases] == ["Framing Crew", "Insulation", "Drywall"]
    assert schedule.phases[0].duration_days == 13


def test_save_schedule_reports_notices_and_milestones(uow):
    pid = _create_project(uow)
    result = SaveScheduleUseCase().execute(SaveScheduleCommand(project_id=pid, phases=_chain_drafts()), uow)
    assert result.notices == ["Schedule was updated"]
    assert result.follow_up_errors == []
    due = {m.milestone_key: m.due_date for m in result.milestones.milestones}
    assert due["draw_5"] == "2024-02-29"
    assert due["draw_7"] == "2024-03-20"
    assert "draw_1" in result.milestones.unresolved


def test_save_schedule_with_cycle_is_rejected(uow):
    pid = _create_project(uow)
    a, b = uuid.uuid4(), uuid.uuid4()
    drafts = [
        PhaseDraft(id=a, name="Paint", dependency_id=b),
        PhaseDraft(id=b, name="Flooring", dependency_id=a),
    ]
    with pytest.raises(ApplicationError, match="cycle"):
        SaveScheduleUseCase().execute(SaveScheduleCommand(project_id=pid, phases=drafts), uow)
    assert ListSnapshotsUseCase().execute(pid, uow) == []


def test_save_schedule_with_unknown_resource_is_not_found(uow):
    pid = _create_project(uow)
    drafts = [PhaseDraft(name="Paint", resource_id=uuid.uuid4())]
    with pytest.raises(NotFoundError):
        SaveScheduleUseCase().execute(SaveScheduleCommand(project_id=pid, phases=drafts), uow)


def test_save_schedule_checks_expected_version(uow, project_id):
    cmd = SaveScheduleCommand(project_id=project_id, phases=_chain_drafts(), expected_version=0)
    with pytest.raises(ConcurrentEditError):
        SaveScheduleUseCase().execute(cmd, uow)
    cmd.expected_version = 1
    assert SaveScheduleUseCase().execute(cmd, uow).schedule.version == 2


def test_snapshots_are_listed_newest_first(uow, project_id):
    SaveScheduleUseCase().execute(SaveScheduleCommand(project_id=project_id, phases=_chain_drafts()), uow)
    assert [s.version for s in ListSnapshotsUseCase().execute(project_id, uow)] == [2, 1]


def test_unknown_project_is_not_found(uow):
    with pytest.raises(NotFoundError):
        GetScheduleUseCase().execute(uuid.uuid4(), uow)


# ---------------------------------------------------------------------------
# Bulk shift
# ---------------------------------------------------------------------------

def test_cascade_shift_writes_audit_milestones_and_notices(uow, project_id):
    cmd = BulkShiftCommand(
        project_id=project_id,
        phase_ids=[_framing_id(uow, project_id)],
        delta_days=5,
        cascade=True,
        actor="pm@example.com",
    )
    result = BulkShiftUseCase().execute(cmd, uow)

    assert result.changed
    assert result.schedule.version == 2
    assert [e.sequence_number for e in result.audit_entries] == [1, 2, 3]
    assert [e.cascaded for e in result.audit_entries] == [False, True, True]
    assert result.audit_entries[1].new_start_date == "2024-03-06"

    due = {m.milestone_key: m.due_date for m in result.milestones.milestones}
    assert due["draw_4"] == "2024-02-19"
    assert due["draw_5"] == "2024-03-05"
    assert due["draw_7"] == "2024-03-25"
    assert result.notices == [
        "Framing Crew was moved later by 5 day(s)",
        "Insulation was moved later by 5 day(s)",
        "Drywall was moved later by 5 day(s)",
    ]
    assert result.follow_up_errors == []

    trail = GetAuditTrailUseCase().execute(project_id, uow)
    assert [e.phase_name for e in trail] == ["Framing Crew", "Insulation", "Drywall"]
    stored = {m.milestone_key: m.due_date for m in ListMilestonesUseCase().execute(project_id, uow)}
    assert stored["draw_5"] == "2024-03-05"


def test_audit_sequence_continues_across_shifts(uow, project_id):
    framing = _framing_id(uow, project_id)
    BulkShiftUseCase().execute(BulkShiftCommand(project_id=project_id, phase_ids=[framing], delta_days=1), uow)
    second = BulkShiftUseCase().execute(
        BulkShiftCommand(project_id=project_id, phase_ids=[framing], delta_days="-1"), uow
    )
    assert [e.sequence_number for e in second.audit_entries] == [2]
    assert second.schedule.phases[0].start_date == "2024-02-01"


def test_shift_without_phase_ids_moves_every_scheduled_phase(uow, project_id):
    result = BulkShiftUseCase().execute(BulkShiftCommand(project_id=project_id, delta_days=2), uow)
    assert len(result.audit_entries) == 3
    assert not any(e.cascaded for e in result.audit_entries)


def test_zero_shift_changes_nothing(uow, project_id):
    result = BulkShiftUseCase().execute(
        BulkShiftCommand(project_id=project_id, phase_ids=[_framing_id(uow, project_id)], delta_days=0), uow
    )
    assert not result.changed
    assert result.schedule.version == 1
    assert GetAuditTrailUseCase().execute(project_id, uow) == []


def test_invalid_shift_is_an_application_error(uow, project_id):
    with pytest.raises(ApplicationError):
        BulkShiftUseCase().execute(BulkShiftCommand(project_id=project_id, delta_days=1.5), uow)
    with pytest.raises(ApplicationError):
        BulkShiftUseCase().execute(
            BulkShiftCommand(project_id=project_id, phase_ids=[uuid.uuid4()], delta_days=1), uow
        )


def test_shift_out_of_calendar_range_is_an_application_error(uow, project_id):
    with pytest.raises(ApplicationError, match="supported date range"):
        BulkShiftUseCase().execute(BulkShiftCommand(project_id=project_id, delta_days=3_000_000), uow)
    assert GetScheduleUseCase().execute(project_id, uow).version == 1


def test_stale_expected_version_is_rejected(uow, project_id):
    cmd = BulkShiftCommand(project_id=project_id, delta_days=1, expected_version=7)
    with pytest.raises(ConcurrentEditError):
        BulkShiftUseCase().execute(cmd, uow)


def test_failed_commit_leaves_schedule_and_audit_untouched(db, uow, project_id):
    def fail_on_snapshots(writes):
        if any(name == "snapshots" for name, _ in writes):
            raise RuntimeError("disk full")

    db.before_commit = fail_on_snapshots
    with pytest.raises(PersistenceError):
        BulkShiftUseCase().execute(
            BulkShiftCommand(project_id=project_id, delta_days=3, cascade=True), uow
        )
    db.before_commit = None

    assert GetScheduleUseCase().execute(project_id, uow).version == 1
    assert GetAuditTrailUseCase().execute(project_id, uow) == []


def test_failed_notices_do_not_undo_the_shift(db, uow, project_id):
    def fail_on_notices(writes):
        if any(name == "notices" for name, _ in writes):
            raise RuntimeError("notice store offline")

    db.before_commit = fail_on_notices
    result = BulkShiftUseCase().execute(BulkShiftCommand(project_id=project_id, delta_days=3), uow)
    db.before_commit = None

    assert result.changed
    assert result.notices == []
    assert len(result.follow_up_errors) == 1
    assert result.follow_up_errors[0].startswith("notices:")
    assert GetScheduleUseCase().execute(project_id, uow).version == 2
    assert len(GetAuditTrailUseCase().execute(project_id, uow)) == 3


def test_failed_milestone_writes_are_reported_per_milestone(db, uow, project_id):
    def fail_on_milestones(writes):
        if any(name == "milestones" for name, _ in writes):
            raise RuntimeError("ledger locked")

    db.before_commit = fail_on_milestones
    result = BulkShiftUseCase().execute(BulkShiftCommand(project_id=project_id, delta_days=3), uow)
    db.before_commit = None

    assert result.changed
    assert {"draw_4", "draw_5", "draw_6", "draw_7"} <= set(result.milestones.failures)
    assert GetScheduleUseCase().execute(project_id, uow).version == 2


def test_concurrent_shifts_are_serialised(db, project_id):
    workers = 8
    errors = []

    def shift():
        try:
            BulkShiftUseCase().execute(
                BulkShiftCommand(project_id=project_id, delta_days=1), InMemoryUnitOfWork(db)
            )
        except Exception as exc:  # surfaced through the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=shift) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    uow = InMemoryUnitOfWork(db)
    assert errors == []
    schedule = GetScheduleUseCase().execute(project_id, uow)
    assert schedule.version == 1 + workers
    assert schedule.phases[0].start_date == "2024-02-09"
    sequence = [e.sequence_number for e in GetAuditTrailUseCase().execute(project_id, uow)]
    assert sequence == list(range(1, 3 * workers + 1))


def test_shift_of_undated_phase_is_rejected(uow):
    pid = _create_project(uow)
    SaveScheduleUseCase().execute(
        SaveScheduleCommand(project_id=pid, phases=[PhaseDraft(name="Paint")]), uow
    )
    schedule = GetScheduleUseCase().execute(pid, uow)
    with pytest.raises(ApplicationError):
        BulkShiftUseCase().execute(
            BulkShiftCommand(project_id=pid, phase_ids=[uuid.UUID(schedule.phases[0].id)], delta_days=1),
            uow,
        )
    assert GetScheduleUseCase().execute(pid, uow).version == 1


# ---------------------------------------------------------------------------
# Derived views
# ---------------------------------------------------------------------------

def test_phase_state_for_a_day(uow, project_id):
    state = GetPhaseStateUseCase().execute(project_id, uow, as_of=d("2024-03-05"))
    assert state.current_phase_name == "Insulation"
    assert state.current_progress_percent == 45
    assert [p.status for p in state.phases] == ["completed", "active", "upcoming"]


def test_phase_state_without_schedule_is_planning(uow):
    pid = _create_project(uow)
    state = GetPhaseStateUseCase().execute(pid, uow, as_of=d("2024-01-01"))
    assert state.current_phase_name == "Planning & Permits"
    assert state.snapshot_id is None


def test_batch_phase_states(uow, project_id):
    other = _create_project(uow, name="Oak Avenue Remodel")
    states = GetBatchPhaseStatesUseCase().execute(uow, as_of=d("2024-02-05"))
    by_project = {s.project_id: s for s in states}
    assert by_project[str(project_id)].current_phase_name == "Framing Crew"
    assert by_project[str(other)].current_progress_percent == 0

    only = GetBatchPhaseStatesUseCase().execute(uow, project_ids=[project_id], as_of=d("2024-02-05"))
    assert len(only) == 1


def test_diff_defaults_to_latest_against_previous(uow, project_id):
    BulkShiftUseCase().execute(
        BulkShiftCommand(project_id=project_id, phase_ids=[_framing_id(uow, project_id)], delta_days=-2), uow
    )
    assert DiffSnapshotsUseCase().execute(project_id, uow) == ["Framing Crew was moved earlier by 2 day(s)"]
    notices = [n.message for n in GetNoticesUseCase().execute(project_id, uow)]
    assert "Framing Crew was moved earlier by 2 day(s)" in notices


def test_timeline_layout(uow, project_id):
    layout = GetTimelineLayoutUseCase().execute(project_id, uow, today=d("2024-03-01"))
    assert layout.window_start == "2024-01-02"
    assert layout.window_end == "2024-04-19"
    assert [b.name for b in layout.bars] == ["Framing Crew", "Insulation", "Drywall"]
    assert 0 < layout.today_offset < 1


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------

def test_record_external_event_resolves_permit_draw(uow, project_id):
    result = RecordExternalEventUseCase().execute(
        RecordExternalEventCommand(project_id=project_id, event_key="permit_approved_at", event_date=d("2024-01-15")),
        uow,
    )
    due = {m.milestone_key: m.due_date for m in result.milestones}
    assert due["draw_1"] == "2024-01-15"
    assert "draw_1" not in result.unresolved


def test_custom_anchor_rules_replace_the_defaults(uow, project_id):
    assert len(ListAnchorRulesUseCase().execute(project_id, uow)) == 5
    rules = [AnchorRule("handover", AnchorKind.PROJECT_FINAL_END, label="Handover payment")]
    SetAnchorRulesUseCase().execute(SetAnchorRulesCommand(project_id=project_id, rules=rules), uow)
    assert [r.milestone_key for r in ListAnchorRulesUseCase().execute(project_id, uow)] == ["handover"]

    result = BulkShiftUseCase().execute(BulkShiftCommand(project_id=project_id, delta_days=1), uow)
    assert [m.milestone_key for m in result.milestones.milestones] == ["handover"]
    assert result.milestones.milestones[0].due_date == "2024-03-21"


def test_duplicate_anchor_rule_keys_are_rejected(uow, project_id):
    rules = [
        AnchorRule("draw_4", AnchorKind.PROJECT_FINAL_END),
        AnchorRule("draw_4", AnchorKind.PHASE_END, phase_match="framing"),
    ]
    with pytest.raises(ApplicationError):
        SetAnchorRulesUseCase().execute(SetAnchorRulesCommand(project_id=project_id, rules=rules), uow)


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------

def test_utilization_reads_allocations_from_latest_snapshots(uow):
    crew = uuid.UUID(
        CreateResourceUseCase().execute(CreateResourceCommand(name="Framing Crew A"), uow).id
    )
    CreateResourceUseCase().execute(CreateResourceCommand(name="Retired Crew", active=False), uow)
    pid = _create_project(uow)
    SaveScheduleUseCase().execute(
        SaveScheduleCommand(project_id=pid, phases=_chain_drafts(resource_id=crew)), uow
    )
    AddBlackoutUseCase().execute(
        AddBlackoutCommand(resource_id=crew, start_date=d("2024-02-05"), end_date=d("2024-02-06")), uow
    )

    report = GetResourceUtilizationUseCase().execute(uow, week_of=d("2024-02-07"), horizon_weeks=2)
    assert report.weeks == ["2024-02-04", "2024-02-11"]
    assert [c.resource_name for c in report.cells] == ["Framing Crew A", "Framing Crew A"]
    first, second = report.cells
    assert first.blackout_days == 2
    assert first.total_capacity == 3
    assert first.allocated_capacity == 5
    assert first.is_overbooked
    assert second.allocated_capacity == 4
    assert [c.week_start for c in report.overbooked] == ["2024-02-04"]


def test_blackout_validation(uow):
    crew = uuid.UUID(CreateResourceUseCase().execute(CreateResourceCommand(name="Paint Crew"), uow).id)
    with pytest.raises(ApplicationError):
        AddBlackoutUseCase().execute(
            AddBlackoutCommand(resource_id=crew, start_date=d("2024-02-06"), end_date=d("2024-02-05")), uow
        )
    with pytest.raises(NotFoundError):
        AddBlackoutUseCase().execute(
            AddBlackoutCommand(resource_id=uuid.uuid4(), start_date=d("2024-02-05"), end_date=d("2024-02-06")),
            uow,
        )


# ---------------------------------------------------------------------------
# Locks and cache
# ---------------------------------------------------------------------------

def test_phase_state_cache_evicts_least_recently_used():
    cache = PhaseStateCache(max_entries=2)
    cache.put(("a",), "A")
    cache.put(("b",), "B")
    assert cache.get(("a",)) == "A"
    cache.put(("c",), "C")
    assert cache.get(("b",)) is None
    assert cache.get(("a",)) == "A"
    assert len(cache) == 2
    cache.clear()
    assert len(cache) == 0


def test_lock_registry_hands_out_one_lock_per_project():
    registry = ProjectLockRegistry()
    pid = uuid.uuid4()
    assert registry.lock_for(pid) is registry.lock_for(pid)
    assert registry.lock_for(pid) is not registry.lock_for(uuid.uuid4())
    with registry.hold(pid):
        assert registry.lock_for(pid).locked()
    assert not registry.lock_for(pid).locked()


# ---------------------------------------------------------------------------
# Schedules from templates
# ---------------------------------------------------------------------------

TEMPLATE = [
    TemplateItem("drywall", "Drywall", duration_days=5, sort_order=1),
    TemplateItem("paint", "Paint", duration_days=2, predecessor_key="drywall", lag_days=1, sort_order=2),
]


def test_template_uses_standard_holidays_by_default(uow):
    pid = _create_project(uow)
    result = ScheduleFromTemplateUseCase().execute(
        ScheduleFromTemplateCommand(project_id=pid, start_date=d("2024-07-01"), items=TEMPLATE), uow
    )
    drywall, paint = result.schedule.phases
    assert (drywall.start_date, drywall.end_date) == ("2024-07-01", "2024-07-08")
    assert (paint.start_date, paint.end_date) == ("2024-07-10", "2024-07-11")
    assert paint.dependency_id == drywall.id
    assert result.schedule.version == 1


def test_template_with_explicit_empty_holidays(uow):
    pid = _create_project(uow)
    result = ScheduleFromTemplateUseCase().execute(
        ScheduleFromTemplateCommand(project_id=pid, start_date=d("2024-07-01"), items=TEMPLATE, holidays=[]),
        uow,
    )
    assert result.schedule.phases[0].end_date == "2024-07-05"


def test_template_replaces_the_schedule_and_cascades(uow, project_id):
    result = ScheduleFromTemplateUseCase().execute(
        ScheduleFromTemplateCommand(
            project_id=project_id, start_date=d("2024-04-01"), items=TEMPLATE, expected_version=1
        ),
        uow,
    )
    assert result.schedule.version == 2
    assert "Paint was added to the schedule" in result.notices

    drywall_id = uuid.UUID(result.schedule.phases[0].id)
    shift = BulkShiftUseCase().execute(
        BulkShiftCommand(project_id=project_id, phase_ids=[drywall_id], delta_days=7, cascade=True), uow
    )
    assert [e.phase_name for e in shift.audit_entries] == ["Drywall", "Paint"]


def test_invalid_template_is_an_application_error(uow, project_id):
    items = [TemplateItem("a", "Paint", predecessor_key="a")]
    with pytest.raises(ApplicationError, match="cycle"):
        ScheduleFromTemplateUseCase().execute(
            ScheduleFromTemplateCommand(project_id=project_id, start_date=d("2024-04-01"), items=items), uow
        )
    with pytest.raises(ConcurrentEditError):
        ScheduleFromTemplateUseCase().execute(
            ScheduleFromTemplateCommand(
                project_id=project_id, start_date=d("2024-04-01"), items=TEMPLATE, expected_version=0
            ),
            uow,
        )
    assert GetScheduleUseCase().execute(project_id, uow).version == 1
