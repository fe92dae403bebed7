"""
School Timetable Solver - most-constrained-first search with bounded backtracking

Assigns every (class, subject) weekly quota to a qualified teacher and a
(day, period) slot so that no class or teacher is double-booked. Runs are
single-threaded and deterministic: identical inputs give identical output.
"""

import logging
import time
from typing import Optional

import verify
from config import Settings
from cpsat_check import FEASIBLE, INFEASIBLE, probe_feasibility
from demand import DemandTable
from eligibility import EligibilityRegistry
from errors import (
    ConfigurationError,
    InfeasibleScheduleError,
    InvariantViolation,
    OverAllocatedDemandError,
)
from grid import SlotGrid
from models import Catalogue, ScheduleEntry, Timetable, TimeSlot

logger = logging.getLogger(__name__)

DEFAULT_BACKTRACK_FACTOR = 50
DEFAULT_MAX_CHAIN_DEPTH = 4

# Trail operations
_PLACE = 'place'
_REMOVE = 'remove'
_LOCK = 'lock'


class _BudgetExhausted(Exception):
    """Raised inside the repair search when the backtrack budget runs out."""


class AssignmentEngine:
    """One timetable run over a fresh grid and demand table.

    The run has two phases:

    1. Greedy pass: walk slots day-major; at each slot repeatedly pick the
       class with the fewest placeable (subject, teacher) options, then its
       subject with the most hours left (ties by code) and a free qualified
       teacher. Cells where nothing fits are recorded as pending.
    2. Repair: for every hour still owed, search for an ejection chain.
       Place the lesson in some cell, undoing whatever blocks it there (the
       class's own lesson and/or the teacher's lesson, most recently placed
       first), then re-place the undone lessons the same way, up to
       max_chain_depth levels. Each undo costs one unit of the backtrack
       budget; when it runs out the run fails.

    Every mutation is journaled on a trail so any failed branch can be
    rolled back exactly.
    """

    def __init__(
        self,
        catalogue: Catalogue,
        num_days: int,
        num_periods: int,
        max_backtracks: Optional[int] = None,
        backtrack_factor: int = DEFAULT_BACKTRACK_FACTOR,
        max_chain_depth: int = DEFAULT_MAX_CHAIN_DEPTH,
    ):
        self.catalogue = catalogue
        self.registry = EligibilityRegistry(catalogue.teachers)
        self.demand = DemandTable(catalogue.classes)
        self.grid = SlotGrid(num_days, num_periods)
        self.quotas = catalogue.quotas()
        self.max_chain_depth = max_chain_depth

        self._class_ids = [c.id for c in catalogue.classes]
        self._class_order = {c: i for i, c in enumerate(self._class_ids)}
        self._teacher_order = {t: i for i, t in enumerate(self.registry.teacher_ids)}

        if max_backtracks is None:
            # Proportional to the number of (class, slot) cells
            max_backtracks = backtrack_factor * len(self.grid) * max(1, len(self._class_ids))
        self.max_backtracks = max_backtracks

        self.backtracks = 0
        self.pending_cells: list[tuple[TimeSlot, str]] = []
        self._placed: dict[ScheduleEntry, int] = {}  # entry -> placement sequence
        self._sequence = 0
        self._trail: list[tuple] = []
        self._locked: set[ScheduleEntry] = set()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def preflight(self) -> None:
        """Fail fast on structural and arithmetic input problems."""
        self.registry.validate(self.quotas)
        self.demand.check_capacity(len(self.grid))

    def shortfall_report(self) -> list[tuple[str, str, int]]:
        """(class_id, subject, missing_hours) for every pair still short, plus
        the fully placed pairs that compete with them for the same teachers
        (reported with 0), in catalogue class order then subject code.
        """
        short = self.demand.shortfalls()
        scarce = {t for class_id, subject, _ in short for t in self.registry.teachers_for(subject, class_id)}
        pairs = {(class_id, subject) for class_id, subject, _ in short}
        for teacher_id in scarce:
            for subject, class_id in self.registry.pairs_for(teacher_id):
                if self.quotas.get((class_id, subject), 0) > 0:
                    pairs.add((class_id, subject))
        return sorted(
            ((c, s, self.demand.remaining(c, s)) for c, s in pairs),
            key=lambda item: (self._class_order[item[0]], item[1]),
        )

    def run(self) -> Timetable:
        start_time = time.time()
        self.preflight()

        self._greedy_pass()
        greedy_placed = len(self._placed)
        logger.debug(
            f"Greedy pass placed {greedy_placed} entries, "
            f"{len(self.pending_cells)} pending cells, "
            f"{sum(s for _, _, s in self.demand.shortfalls())} hours still owed"
        )

        if not self.demand.is_satisfied():
            self._repair_all()

        if not self.demand.is_satisfied():
            raise InfeasibleScheduleError(self.shortfall_report(), backtracks=self.backtracks)

        entries = sorted(self._placed, key=lambda e: (e.slot, self._class_order[e.class_id]))
        timetable = Timetable(
            entries=tuple(entries),
            backtracks=self.backtracks,
            stats={
                'greedyPlaced': greedy_placed,
                'pendingCells': len(self.pending_cells),
                'backtracks': self.backtracks,
                'elapsedSeconds': time.time() - start_time,
            },
        )
        # A violation here is an engine defect, not bad input
        verify.assert_valid(timetable, self.registry, self.quotas)
        return timetable

    # ------------------------------------------------------------------ #
    # Trail-backed mutations
    # ------------------------------------------------------------------ #
    def _place(self, entry: ScheduleEntry) -> None:
        self.grid.mark_busy(entry)
        self.demand.decrement(entry.class_id, entry.subject)
        self._sequence += 1
        self._placed[entry] = self._sequence
        self._trail.append((_PLACE, entry))

    def _remove(self, entry: ScheduleEntry) -> None:
        if self.backtracks >= self.max_backtracks:
            raise _BudgetExhausted()
        self.backtracks += 1
        self.grid.release(entry)
        self.demand.restore(entry.class_id, entry.subject)
        sequence = self._placed.pop(entry)
        self._trail.append((_REMOVE, entry, sequence))

    def _lock(self, entry: ScheduleEntry) -> None:
        self._locked.add(entry)
        self._trail.append((_LOCK, entry))

    def _rollback(self, mark: int) -> None:
        """Undo trail operations until the trail is back at mark."""
        while len(self._trail) > mark:
            op = self._trail.pop()
            kind, entry = op[0], op[1]
            if kind == _PLACE:
                self.grid.release(entry)
                self.demand.restore(entry.class_id, entry.subject)
                del self._placed[entry]
            elif kind == _REMOVE:
                self.grid.mark_busy(entry)
                self.demand.decrement(entry.class_id, entry.subject)
                self._placed[entry] = op[2]
            elif kind == _LOCK:
                self._locked.discard(entry)
            else:
                raise InvariantViolation(f'Unknown trail operation {kind!r}')

    # ------------------------------------------------------------------ #
    # Phase 1: greedy pass
    # ------------------------------------------------------------------ #
    def _options(self, class_id: str, slot: TimeSlot) -> list[tuple[str, str]]:
        """Placeable (subject, teacher) pairs, subjects in ranking order."""
        options = []
        for subject in self.demand.pending_subjects(class_id):
            for teacher_id in self.registry.teachers_for(subject, class_id):
                if self.grid.is_teacher_free(teacher_id, slot):
                    options.append((subject, teacher_id))
        return options

    def _slack(self, class_id: str, slot: TimeSlot) -> int:
        """Free cells from slot onwards minus hours the class is still owed."""
        free_ahead = sum(
            1 for s in self.grid.slots
            if s >= slot and self.grid.is_class_free(class_id, s)
        )
        return free_ahead - self.demand.total_remaining(class_id)

    def _teacher_pressure(self, teacher_id: str) -> int:
        """Outstanding hours this teacher could be needed for."""
        return sum(
            self.demand.remaining(class_id, subject)
            for subject, class_id in self.registry.pairs_for(teacher_id)
        )

    def _choose(self, options: list[tuple[str, str]]) -> Optional[tuple[str, str]]:
        if not options:
            return None
        top_subject = options[0][0]
        teachers = [t for s, t in options if s == top_subject]
        # Spare the teachers other classes depend on most
        teacher_id = min(teachers, key=lambda t: (self._teacher_pressure(t), self._teacher_order[t]))
        return top_subject, teacher_id

    def _greedy_pass(self) -> None:
        for slot in self.grid.slots:
            waiting = [
                c for c in self._class_ids
                if self.demand.total_remaining(c) > 0 and self.grid.is_class_free(c, slot)
            ]
            while waiting:
                options = {c: self._options(c, slot) for c in waiting}
                class_id = min(
                    waiting,
                    key=lambda c: (len(options[c]), self._slack(c, slot), self._class_order[c])
                )
                waiting.remove(class_id)

                choice = self._choose(options[class_id])
                if choice is None:
                    self.pending_cells.append((slot, class_id))
                    logger.debug(f"  Pending cell: {class_id} @ {slot.label()}")
                    continue

                subject, teacher_id = choice
                self._place(ScheduleEntry(class_id, subject, teacher_id, slot))

        # Greedy placements are never rolled back past this point
        self._trail.clear()

    # ------------------------------------------------------------------ #
    # Phase 2: bounded backtracking
    # ------------------------------------------------------------------ #
    def _repair_all(self) -> None:
        """Re-place every stranded hour, round after round, while progress is made."""
        progress = True
        round_num = 0
        while progress and not self.demand.is_satisfied():
            round_num += 1
            progress = False
            for class_id, subject, _ in self.demand.shortfalls():
                while self.demand.remaining(class_id, subject) > 0:
                    mark = len(self._trail)
                    try:
                        placed = self._repair(class_id, subject, depth=0)
                    except _BudgetExhausted:
                        self._rollback(mark)
                        logger.debug(
                            f"Backtrack budget of {self.max_backtracks} exhausted "
                            f"in round {round_num}"
                        )
                        return
                    if not placed:
                        logger.debug(f"  No repair chain for {class_id}/{subject} in round {round_num}")
                        break
                    progress = True
                    logger.debug(f"  Repaired {class_id}/{subject} (backtracks so far: {self.backtracks})")
                    # Committed chain: drop its journal and its locks
                    self._trail.clear()
                    self._locked.clear()

    def _repair_moves(self, class_id: str, subject: str, allow_ejections: bool) -> list:
        """Candidate (slot, teacher, ejected entries) for placing one hour.

        Cheapest first: fewer ejections, then the most recently placed
        blocker, then slot order and roster order.
        """
        ranked = []
        teachers = self.registry.teachers_for(subject, class_id)
        for slot in self.grid.slots:
            class_occupant = self.grid.class_entry(class_id, slot)
            if class_occupant is not None:
                if not allow_ejections or class_occupant in self._locked:
                    continue
                # Swapping a lesson for another hour of the same subject gains nothing
                if class_occupant.subject == subject:
                    continue
            for teacher_id in teachers:
                teacher_occupant = self.grid.teacher_entry(teacher_id, slot)
                ejected = [class_occupant] if class_occupant is not None else []
                if teacher_occupant is not None and teacher_occupant != class_occupant:
                    if not allow_ejections or teacher_occupant in self._locked:
                        continue
                    ejected.append(teacher_occupant)
                if not ejected:
                    # Direct placement is always the best move
                    return [(slot, teacher_id, [])]
                recency = max(self._placed[e] for e in ejected)
                ranked.append((len(ejected), -recency, slot, self._teacher_order[teacher_id], teacher_id, ejected))

        ranked.sort(key=lambda m: m[:4])
        return [(slot, teacher_id, ejected) for _, _, slot, _, teacher_id, ejected in ranked]

    def _repair(self, class_id: str, subject: str, depth: int) -> bool:
        """Place one hour of (class_id, subject), ejecting and re-placing blockers."""
        allow_ejections = depth < self.max_chain_depth
        for slot, teacher_id, ejected in self._repair_moves(class_id, subject, allow_ejections):
            mark = len(self._trail)
            for entry in ejected:
                self._remove(entry)
            new_entry = ScheduleEntry(class_id, subject, teacher_id, slot)
            self._place(new_entry)
            self._lock(new_entry)

            if all(self._repair(e.class_id, e.subject, depth + 1) for e in ejected):
                return True
            self._rollback(mark)
        return False


def generate_timetable(
    catalogue: Catalogue,
    num_days: int,
    num_periods: int,
    max_backtracks: Optional[int] = None,
    backtrack_factor: int = DEFAULT_BACKTRACK_FACTOR,
    max_chain_depth: int = DEFAULT_MAX_CHAIN_DEPTH,
    prove_infeasibility: bool = False,
    proof_time_limit: float = 10.0,
) -> Timetable:
    """
    Main entry point for timetable generation.

    Args:
        catalogue: Subjects, classes (with weekly quotas) and teachers
        num_days: Number of school days in the week grid
        num_periods: Number of periods per day
        max_backtracks: Override for the backtrack budget (undo operations)
        backtrack_factor: Budget per (class, slot) cell when no override is given
        max_chain_depth: Maximum length of one repair chain
        prove_infeasibility: On failure, ask CP-SAT whether any timetable exists
        proof_time_limit: Seconds allowed to the CP-SAT probe

    Returns:
        A Timetable satisfying every hard constraint.

    Raises:
        ConfigurationError, OverAllocatedDemandError, InfeasibleScheduleError,
        InvariantViolation
    """
    start_time = time.time()
    logger.info(
        f"=== GENERATE === Classes: {len(catalogue.classes)}, Teachers: {len(catalogue.teachers)}, "
        f"Slots: {num_days}x{num_periods}"
    )

    engine = AssignmentEngine(
        catalogue,
        num_days,
        num_periods,
        max_backtracks=max_backtracks,
        backtrack_factor=backtrack_factor,
        max_chain_depth=max_chain_depth,
    )
    logger.debug(f"Backtrack budget: {engine.max_backtracks}, chain depth: {max_chain_depth}")

    try:
        timetable = engine.run()
    except (ConfigurationError, OverAllocatedDemandError) as e:
        logger.warning(f"PRE-FLIGHT FAILED: {e}")
        raise
    except InfeasibleScheduleError as e:
        if prove_infeasibility:
            status = probe_feasibility(catalogue, num_days, num_periods, time_limit=proof_time_limit)
            e.proven_infeasible = {INFEASIBLE: True, FEASIBLE: False}.get(status)
            logger.info(f"CP-SAT feasibility probe: {status}")
        logger.warning(f"INFEASIBLE: {e}")
        for class_id, subject, missing in e.shortfalls:
            if missing == 0:
                continue
            logger.warning(f"  Shortfall: {class_id}/{subject} missing {missing}h")
        raise

    elapsed = time.time() - start_time
    logger.info(
        f"=== RESULT === Entries: {len(timetable)}, Backtracks: {timetable.backtracks}, "
        f"Time: {elapsed:.2f}s"
    )
    return timetable


def generate_from_settings(
    catalogue: Catalogue,
    settings: Settings,
    max_backtracks: Optional[int] = None,
    prove_infeasibility: Optional[bool] = None,
) -> Timetable:
    """generate_timetable with the grid and search limits taken from Settings."""
    return generate_timetable(
        catalogue,
        num_days=len(settings.days),
        num_periods=len(settings.periods),
        max_backtracks=max_backtracks,
        backtrack_factor=settings.backtrack_factor,
        max_chain_depth=settings.max_chain_depth,
        prove_infeasibility=settings.prove_infeasibility if prove_infeasibility is None else prove_infeasibility,
        proof_time_limit=settings.proof_time_limit,
    )


def summarize(timetable: Timetable) -> dict:
    """Success summary: entry count and per-teacher load."""
    load = timetable.teacher_load()
    return {
        'status': 'success',
        'entries': len(timetable),
        'teacherLoad': load,
        'maxTeacherLoad': max(load.values()) if load else 0,
        'backtracks': timetable.backtracks,
    }
