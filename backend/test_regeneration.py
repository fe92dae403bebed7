"""
Tests for atomic regeneration: replace, rollback on partial failure,
audit rows and generation numbers.
"""
import threading

import pytest
from sqlalchemy import event

from config import load_settings
from errors import (
    ConfigurationError,
    InfeasibleScheduleError,
    InvariantViolation,
    OverAllocatedDemandError,
)
from models import ScheduleEntry, Timetable, TimeSlot
from regeneration import RegenerationManager, regenerate
from solver import generate_from_settings
from storage import (
    RUN_FAILED,
    RUN_SUCCEEDED,
    ScheduleRow,
    create_db_engine,
    init_db,
    make_session_factory,
)

SCOPE = '2024/2025'


@pytest.fixture
def small_catalogue(build_catalogue):
    return build_catalogue(
        classes={'X-A': {'MATH': 2, 'ART': 1}, 'X-B': {'MATH': 2}},
        teachers={'T1': [('MATH', ['X-A', 'X-B'])], 'T2': [('ART', ['X-A'])]},
    )


@pytest.fixture
def fail_on_insert():
    """Make the nth ScheduleRow insert of the next flush raise."""
    listeners = []

    def arm(n):
        calls = {'count': 0}

        def before_insert(mapper, connection, target):
            calls['count'] += 1
            if calls['count'] == n:
                raise RuntimeError(f'simulated failure on insert #{n}')

        event.listen(ScheduleRow, 'before_insert', before_insert)
        listeners.append(before_insert)

    yield arm
    for fn in listeners:
        event.remove(ScheduleRow, 'before_insert', fn)


def test_first_regeneration_inserts_whole_week(manager, small_catalogue):
    timetable, result = regenerate(manager, SCOPE, small_catalogue)

    assert result.replaced == 0
    assert result.inserted == 5
    assert result.generation == 1
    assert manager.generation(SCOPE) == 1

    rows = manager.load(SCOPE)
    assert len(rows) == 5
    assert set(manager.load_entries(SCOPE)) == set(timetable.entries)

    first = rows[0].to_dict()
    assert first['dayOfWeek'] == 'MONDAY'
    assert first['period'] == 1
    assert first['startTime'] == '08:00'
    assert first['endTime'] == '08:40'

    runs = manager.runs(SCOPE)
    assert [r.status for r in runs] == [RUN_SUCCEEDED]
    assert runs[0].inserted_count == 5


def test_regeneration_replaces_previous_week(manager, small_catalogue, build_catalogue):
    regenerate(manager, SCOPE, small_catalogue)

    smaller = build_catalogue(
        classes={'X-A': {'MATH': 1}},
        teachers={'T1': [('MATH', ['X-A'])]},
    )
    _, result = regenerate(manager, SCOPE, smaller)

    assert result.replaced == 5
    assert result.inserted == 1
    assert result.generation == 2
    assert [(r.class_id, r.subject_code) for r in manager.load(SCOPE)] == [('X-A', 'MATH')]


def test_failed_insert_rolls_back_everything(manager, small_catalogue, fail_on_insert):
    timetable, _ = regenerate(manager, SCOPE, small_catalogue)
    before = [r.to_dict() for r in manager.load(SCOPE)]

    fail_on_insert(3)
    with pytest.raises(RuntimeError):
        manager.replace(SCOPE, timetable)

    # The delete and the first inserts are gone with the rollback
    assert [r.to_dict() for r in manager.load(SCOPE)] == before
    assert manager.generation(SCOPE) == 1

    runs = manager.runs(SCOPE)
    assert [r.status for r in runs] == [RUN_SUCCEEDED, RUN_FAILED]
    assert 'insert #3' in runs[-1].message


def test_engine_failure_leaves_persisted_week_untouched(manager, small_catalogue, build_catalogue):
    regenerate(manager, SCOPE, small_catalogue)
    before = [r.to_dict() for r in manager.load(SCOPE)]

    # 36 hours into a 35-slot week
    too_big = build_catalogue(
        classes={'X-A': {'MATH': 36}},
        teachers={'T1': [('MATH', ['X-A'])]},
    )
    with pytest.raises(OverAllocatedDemandError):
        regenerate(manager, SCOPE, too_big)

    assert [r.to_dict() for r in manager.load(SCOPE)] == before
    assert manager.generation(SCOPE) == 1
    assert manager.runs(SCOPE)[-1].status == RUN_FAILED


def test_infeasible_run_is_audited(manager, build_catalogue):
    # One teacher for 2 x 18 hours in a 35-slot week
    catalogue = build_catalogue(
        classes={'A': {'MATH': 18}, 'B': {'MATH': 18}},
        teachers={'T1': [('MATH', ['A', 'B'])]},
    )
    with pytest.raises(InfeasibleScheduleError):
        regenerate(manager, SCOPE, catalogue, max_backtracks=10)

    assert manager.load(SCOPE) == []
    assert manager.generation(SCOPE) == 0
    runs = manager.runs(SCOPE)
    assert len(runs) == 1
    assert runs[0].status == RUN_FAILED


def test_invalid_timetable_is_never_persisted(manager):
    slot = TimeSlot(0, 1)
    clash = Timetable(entries=(
        ScheduleEntry('A', 'MATH', 'T1', slot),
        ScheduleEntry('B', 'MATH', 'T1', slot),
    ))
    with pytest.raises(InvariantViolation):
        manager.replace(SCOPE, clash)
    assert manager.load(SCOPE) == []

    runs = manager.runs(SCOPE)
    assert [r.status for r in runs] == [RUN_FAILED]
    assert 'invariant violation' in runs[0].message


def test_entry_outside_configured_grid_rejected(manager):
    timetable = Timetable(entries=(ScheduleEntry('A', 'MATH', 'T1', TimeSlot(0, 9)),))
    with pytest.raises(ConfigurationError):
        manager.replace(SCOPE, timetable)
    assert manager.generation(SCOPE) == 0
    assert manager.runs(SCOPE)[-1].status == RUN_FAILED


def test_scopes_are_independent(manager, small_catalogue):
    regenerate(manager, '2024/2025', small_catalogue)
    regenerate(manager, '2025/2026', small_catalogue)
    regenerate(manager, '2025/2026', small_catalogue)

    assert manager.generation('2024/2025') == 1
    assert manager.generation('2025/2026') == 2
    assert len(manager.load('2024/2025')) == 5
    assert len(manager.load('2025/2026')) == 5


def test_rows_load_in_day_period_class_order(manager, small_catalogue):
    regenerate(manager, SCOPE, small_catalogue)
    rows = manager.load(SCOPE)

    keys = [(r.period, r.class_id) for r in rows]
    assert keys == sorted(keys)
    assert {r.day_of_week for r in rows} == {'MONDAY'}


def test_rows_on_unconfigured_days_are_rejected(manager, small_catalogue):
    regenerate(manager, SCOPE, small_catalogue)

    renamed_days = load_settings({'TIMETABLE_DAYS': 'SENIN,SELASA,RABU,KAMIS,JUMAT'})
    reader = RegenerationManager(manager.session_factory, renamed_days)

    with pytest.raises(ConfigurationError, match='MONDAY'):
        reader.load_entries(SCOPE)


@pytest.fixture
def file_manager(tmp_path, settings):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'timetable.db'}")
    init_db(engine)
    yield RegenerationManager(make_session_factory(engine), settings)
    engine.dispose()


def test_concurrent_regenerations_of_one_scope_do_not_interleave(file_manager, small_catalogue):
    timetable = generate_from_settings(small_catalogue, file_manager.settings)
    first_inside = threading.Event()
    release_first = threading.Event()
    held = []

    def hold_first_writer(mapper, connection, target):
        # Park the first writer after its delete, in the middle of its inserts
        if not held:
            held.append(threading.current_thread().name)
            first_inside.set()
            release_first.wait(timeout=10)

    results, errors = [], []

    def run_replace():
        try:
            results.append(file_manager.replace(SCOPE, timetable))
        except Exception as e:
            errors.append(e)

    event.listen(ScheduleRow, 'before_insert', hold_first_writer)
    try:
        first = threading.Thread(target=run_replace, name='first')
        first.start()
        assert first_inside.wait(timeout=10)

        second = threading.Thread(target=run_replace, name='second')
        second.start()
        second.join(timeout=0.5)
        # Still waiting for the scope's write lock
        assert second.is_alive()

        release_first.set()
        first.join(timeout=10)
        second.join(timeout=10)
    finally:
        release_first.set()
        event.remove(ScheduleRow, 'before_insert', hold_first_writer)

    assert errors == []
    assert held == ['first']
    # The second writer saw the first one's committed week, never a half-written one
    assert sorted((r.replaced, r.generation) for r in results) == [(0, 1), (5, 2)]

    assert file_manager.generation(SCOPE) == 2
    assert len(file_manager.load(SCOPE)) == 5
    assert set(file_manager.load_entries(SCOPE)) == set(timetable.entries)
    assert [r.status for r in file_manager.runs(SCOPE)] == [RUN_SUCCEEDED, RUN_SUCCEEDED]
