import pytest

from conftest import make_phase
from model import ScheduleSnapshot
from service import GENERIC_CHANGE_NOTICE, ChangeNotifier, DataIntegrityError


@pytest.fixture
def notifier():
    return ChangeNotifier()


def test_moved_later(notifier):
    before = [make_phase("Drywall", "2024-04-01", "2024-04-10")]
    after = [make_phase("Drywall", "2024-04-03", "2024-04-12")]
    assert notifier.diff(before, after) == ["Drywall was moved later by 2 day(s)"]


def test_moved_earlier(notifier):
    before = [make_phase("Paint", "2024-05-10", "2024-05-12")]
    after = [make_phase("Paint", "2024-05-07", "2024-05-09")]
    assert notifier.diff(before, after) == ["Paint was moved earlier by 3 day(s)"]


def test_duration_change_wins_over_move(notifier):
    before = [
        make_phase("Framing Crew", "2024-02-01", "2024-02-14"),
        make_phase("Insulation", "2024-03-01", "2024-03-10"),
    ]
    after = [
        make_phase("Framing Crew", "2024-02-03", "2024-02-20"),
        make_phase("Insulation", "2024-03-01", "2024-03-08"),
    ]
    assert notifier.diff(before, after) == [
        "Framing Crew was extended by 4 day(s)",
        "Insulation was shortened by 2 day(s)",
    ]


def test_added_and_removed_phases(notifier):
    before = [
        make_phase("Framing Crew", "2024-02-01", "2024-02-14"),
        make_phase("Siding", "2024-03-01", "2024-03-05"),
    ]
    after = [
        make_phase("Framing Crew", "2024-02-01", "2024-02-14"),
        make_phase("Roofing", "2024-02-15", "2024-02-20"),
    ]
    assert notifier.diff(before, after) == [
        "Roofing was added to the schedule",
        "Siding was removed from the schedule",
    ]


def test_no_change_falls_back_to_generic_notice(notifier):
    phases = [make_phase("Drywall", "2024-04-01", "2024-04-10")]
    assert notifier.diff(phases, phases) == [GENERIC_CHANGE_NOTICE]
    assert notifier.diff(None, phases) == [GENERIC_CHANGE_NOTICE]


def test_phases_gaining_dates_are_not_described(notifier):
    before = [make_phase("Paint")]
    after = [make_phase("Paint", "2024-05-01", "2024-05-03")]
    assert notifier.diff(before, after) == [GENERIC_CHANGE_NOTICE]


def test_accepts_snapshots(notifier):
    before = ScheduleSnapshot(phases=(make_phase("Drywall", "2024-04-01", "2024-04-10"),))
    after = before.evolve((make_phase("Drywall", "2024-04-02", "2024-04-11"),))
    assert notifier.diff(before, after) == ["Drywall was moved later by 1 day(s)"]


def test_malformed_phase_is_rejected(notifier):
    before = [make_phase("Drywall", "2024-04-01", "2024-04-10")]
    after = [make_phase("Drywall", "2024-04-10", "2024-04-01")]
    with pytest.raises(DataIntegrityError):
        notifier.diff(before, after)
