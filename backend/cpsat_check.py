"""
Exact feasibility probe using OR-Tools CP-SAT.

The bounded search can give up on instances that do have a solution. When
that happens an operator wants to know whether raising the budget could
help or whether the inputs themselves must change. This module answers
that question; it never produces the timetable that gets persisted.
"""

import logging

from ortools.sat.python import cp_model

from models import Catalogue

logger = logging.getLogger(__name__)

FEASIBLE = 'FEASIBLE'
INFEASIBLE = 'INFEASIBLE'
UNKNOWN = 'UNKNOWN'


def build_model(catalogue: Catalogue, num_days: int, num_periods: int) -> tuple[cp_model.CpModel, dict]:
    """Boolean model over every eligible (class, subject, teacher, slot).

    Hard constraints:
    - each (class, subject) gets exactly its weekly quota
    - a class has at most one lesson per slot
    - a teacher has at most one lesson per slot
    """
    model = cp_model.CpModel()
    slots = [(d, p) for d in range(num_days) for p in range(1, num_periods + 1)]

    # Qualified teachers per (subject, class_id), roster order
    qualified: dict[tuple[str, str], list[str]] = {}
    for teacher in catalogue.teachers:
        for qual in teacher.qualifications:
            for class_id in sorted(qual.classes):
                bucket = qualified.setdefault((qual.subject, class_id), [])
                if teacher.id not in bucket:
                    bucket.append(teacher.id)

    lesson: dict[tuple[str, str, str, tuple[int, int]], cp_model.IntVar] = {}
    class_slot: dict[tuple[str, tuple[int, int]], list] = {}
    teacher_slot: dict[tuple[str, tuple[int, int]], list] = {}

    for (class_id, subject), hours in catalogue.quotas().items():
        pair_vars = []
        for teacher_id in qualified.get((subject, class_id), []):
            for slot in slots:
                var = model.NewBoolVar(f'x_{class_id}_{subject}_{teacher_id}_d{slot[0]}_p{slot[1]}')
                lesson[(class_id, subject, teacher_id, slot)] = var
                pair_vars.append(var)
                class_slot.setdefault((class_id, slot), []).append(var)
                teacher_slot.setdefault((teacher_id, slot), []).append(var)
        if pair_vars:
            model.Add(sum(pair_vars) == hours)
        else:
            # No qualified teacher: quota can never be met
            model.Add(model.NewConstant(0) == hours)

    for bucket in class_slot.values():
        model.AddAtMostOne(bucket)
    for bucket in teacher_slot.values():
        model.AddAtMostOne(bucket)

    return model, lesson


def probe_feasibility(catalogue: Catalogue, num_days: int, num_periods: int, time_limit: float = 10.0) -> str:
    """Return FEASIBLE, INFEASIBLE or UNKNOWN (time limit reached)."""
    model, lesson = build_model(catalogue, num_days, num_periods)
    logger.debug(f"CP-SAT probe: {len(lesson)} lesson variables, limit {time_limit}s")

    solver = cp_model.CpSolver()
    solver.parameters.random_seed = 0
    solver.parameters.max_time_in_seconds = time_limit
    solver.parameters.num_search_workers = 1  # Deterministic with seed

    status = solver.Solve(model)
    if status in (cp_model.OPTIMAL, cp_model.FEASIBLE):
        return FEASIBLE
    if status == cp_model.INFEASIBLE:
        return INFEASIBLE
    return UNKNOWN
