from datetime import datetime, timedelta, timezone

import pytest

from conftest import d, make_phase
from model import PhaseStatus
from service import DataIntegrityError, PHASE_PROGRESS_MAP, PhaseStateResolver, calendar_key


@pytest.fixture
def resolver():
    return PhaseStateResolver()


def test_single_active_phase_is_current(resolver):
    phases = [
        make_phase("Framing Crew", "2024-02-01", "2024-02-14", sort_order=1),
        make_phase("Insulation", "2024-03-01", "2024-03-10", sort_order=2),
    ]
    result = resolver.resolve(phases, d("2024-02-05"))

    assert result.current_phase_name == "Framing Crew"
    assert result.current_progress_percent == 10
    framing, insulation = result.phase_states
    assert framing.is_active and not framing.is_completed and not framing.is_upcoming
    assert insulation.is_upcoming
    assert insulation.status == PhaseStatus.UPCOMING


def test_boundaries_are_inclusive(resolver):
    phases = [make_phase("Drywall", "2024-04-01", "2024-04-10")]
    assert resolver.resolve(phases, d("2024-04-01")).phase_states[0].is_active
    assert resolver.resolve(phases, d("2024-04-10")).phase_states[0].is_active
    assert resolver.resolve(phases, d("2024-04-11")).phase_states[0].is_completed


def test_overlapping_active_phases_pick_largest_sort_order(resolver):
    phases = [
        make_phase("Plumbing Rough In", "2024-03-01", "2024-03-20", sort_order=5),
        make_phase("HVAC Rough In", "2024-03-05", "2024-03-25", sort_order=7),
        make_phase("Electric Rough In", "2024-03-05", "2024-03-25", sort_order=6),
    ]
    result = resolver.resolve(phases, d("2024-03-10"))
    assert result.current_phase_name == "HVAC Rough In"
    assert result.current_progress_percent == 35


def test_overlapping_tie_on_sort_order_keeps_first_in_list(resolver):
    phases = [
        make_phase("Paint", "2024-05-01", "2024-05-10", sort_order=3),
        make_phase("Flooring", "2024-05-01", "2024-05-10", sort_order=3),
    ]
    assert resolver.resolve(phases, d("2024-05-03")).current_phase_name == "Paint"
    reordered = list(reversed(phases))
    assert resolver.resolve(reordered, d("2024-05-03")).current_phase_name == "Flooring"


def test_no_active_phase_picks_latest_completed(resolver):
    phases = [
        make_phase("Drywall", "2024-04-01", "2024-04-10", sort_order=2),
        make_phase("Insulation", "2024-03-01", "2024-03-10", sort_order=1),
        make_phase("Paint", "2024-06-01", "2024-06-10", sort_order=3),
    ]
    result = resolver.resolve(phases, d("2024-05-01"))
    assert result.current_phase_name == "Drywall"
    assert result.current_progress_percent == 55


def test_completed_tie_on_end_date_prefers_later_position(resolver):
    phases = [
        make_phase("Paint", "2024-05-01", "2024-05-10"),
        make_phase("Flooring", "2024-05-03", "2024-05-10"),
    ]
    assert resolver.resolve(phases, d("2024-06-01")).current_phase_name == "Flooring"


def test_only_upcoming_phases_yield_preconstruction(resolver):
    phases = [make_phase("Framing Crew", "2024-02-01", "2024-02-14")]
    result = resolver.resolve(phases, d("2024-01-01"))
    assert result.current_phase_name == "Preconstruction"
    assert result.current_progress_percent == 10


def test_no_dated_phases_yield_planning(resolver):
    result = resolver.resolve([make_phase("Framing Crew")], d("2024-01-01"))
    assert result.current_phase_name == "Planning & Permits"
    assert result.current_progress_percent == 0
    assert result.phase_states[0].status == PhaseStatus.UNSCHEDULED

    assert resolver.resolve([], d("2024-01-01")).current_phase_name == "Planning & Permits"


def test_phase_missing_one_date_is_not_classified(resolver):
    phases = [make_phase("Paint", "2024-05-01", None)]
    state = resolver.resolve(phases, d("2024-05-03")).phase_states[0]
    assert not (state.is_active or state.is_completed or state.is_upcoming)


def test_unknown_phase_name_has_zero_progress(resolver):
    phases = [make_phase("Landscaping", "2024-05-01", "2024-05-10")]
    result = resolver.resolve(phases, d("2024-05-03"))
    assert result.current_phase_name == "Landscaping"
    assert result.current_progress_percent == 0


def test_end_before_start_is_a_data_integrity_error(resolver):
    with pytest.raises(DataIntegrityError):
        resolver.resolve([make_phase("Paint", "2024-05-10", "2024-05-01")], d("2024-05-03"))


def test_today_as_datetime_uses_its_own_calendar_date(resolver):
    phases = [make_phase("Drywall", "2024-04-01", "2024-04-10")]
    late_evening = datetime(2024, 4, 10, 23, 30, tzinfo=timezone(timedelta(hours=-8)))
    assert resolver.resolve(phases, late_evening).phase_states[0].is_active
    assert resolver.resolve(phases, "2024-04-11T00:15:00Z").phase_states[0].is_completed


def test_calendar_key_normalisation():
    assert calendar_key(d("2024-02-29")) == "2024-02-29"
    assert calendar_key("2024-02-29T22:00:00-05:00") == "2024-02-29"
    assert calendar_key(None) is None
    assert calendar_key("2024-02-29 08:00") == "2024-02-29"
    with pytest.raises(DataIntegrityError):
        calendar_key("next tuesday")


@pytest.mark.parametrize("text", ["2024-02-01xyz", "2024-02-01-", "2024-02-01/12:00", "2024-02-30"])
def test_calendar_key_rejects_trailing_junk_and_impossible_days(text):
    with pytest.raises(DataIntegrityError):
        calendar_key(text)


def test_preconstruction_phase_in_the_table_differs_from_the_fallback(resolver):
    assert resolver.progress_for("Preconstruction") == 5
    assert resolver.progress_for("Pre Construction") == 5
    phases = [make_phase("Preconstruction", "2024-01-01", "2024-01-20")]
    assert resolver.resolve(phases, d("2024-01-10")).current_progress_percent == 5
    upcoming = [make_phase("Framing Crew", "2024-02-01", "2024-02-14")]
    assert resolver.resolve(upcoming, d("2024-01-10")).current_progress_percent == 10


def test_resolve_is_idempotent(resolver):
    phases = [
        make_phase("Framing Crew", "2024-02-01", "2024-02-14", sort_order=1),
        make_phase("Concrete Crew", "2024-02-10", "2024-02-20", sort_order=1),
    ]
    assert resolver.resolve(phases, d("2024-02-12")) == resolver.resolve(phases, d("2024-02-12"))


def test_resolve_many_keys_results_by_project(resolver):
    timelines = {
        "a": [make_phase("Drywall", "2024-04-01", "2024-04-10")],
        "b": [make_phase("Final", "2024-01-01", "2024-01-05")],
    }
    results = resolver.resolve_many(timelines, d("2024-04-05"))
    assert results["a"].current_phase_name == "Drywall"
    assert results["b"].current_progress_percent == 100


def test_progress_table_is_monotonic_along_the_build_sequence():
    values = list(PHASE_PROGRESS_MAP.values())
    assert values == sorted(values)
    assert all(0 <= v <= 100 for v in values)
