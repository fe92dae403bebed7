"""
Error taxonomy for timetable generation.

Every failure the engine can report derives from TimetableError. The
exit_code attribute is what the batch CLI returns so operator tooling
can tell the failure kinds apart.
"""

from typing import Optional


class TimetableError(Exception):
    """Base class for all engine failures."""

    kind = 'error'
    exit_code = 1

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'message': str(self)}


class ConfigurationError(TimetableError):
    """Structural input problem found before search starts."""

    kind = 'configuration'
    exit_code = 2

    def __init__(self, problems: list[str]):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__('; '.join(self.problems) or 'invalid configuration')

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'message': str(self), 'problems': self.problems}


class OverAllocatedDemandError(TimetableError):
    """A class demands more weekly hours than the grid has slots."""

    kind = 'over_allocated'
    exit_code = 3

    def __init__(self, over_allocated: list[tuple[str, int, int]]):
        # (class_id, demanded_hours, available_slots)
        self.over_allocated = list(over_allocated)
        details = ', '.join(
            f'{class_id} needs {demanded}h but the week has {available} slots'
            for class_id, demanded, available in self.over_allocated
        )
        super().__init__(f'Over-allocated demand: {details}')

    def to_dict(self) -> dict:
        return {
            'kind': self.kind,
            'message': str(self),
            'classes': [
                {'class': c, 'demanded': d, 'available': a}
                for c, d, a in self.over_allocated
            ],
        }


class InvariantViolation(TimetableError):
    """Internal engine defect: double placement, negative demand, etc."""

    kind = 'invariant_violation'
    exit_code = 5


class InfeasibleScheduleError(TimetableError):
    """Search exhausted its backtracking budget with quotas still unmet."""

    kind = 'infeasible'
    exit_code = 4

    def __init__(
        self,
        shortfalls: list[tuple[str, str, int]],
        backtracks: int = 0,
        proven_infeasible: Optional[bool] = None,
    ):
        # (class_id, subject_code, missing_hours); pairs competing for the
        # same teachers are listed with 0
        self.shortfalls = list(shortfalls)
        self.backtracks = backtracks
        self.proven_infeasible = proven_infeasible
        missing = sum(s for _, _, s in self.shortfalls)
        short_pairs = sum(1 for _, _, s in self.shortfalls if s > 0)
        super().__init__(
            f'Could not place {missing} lesson hour(s) across '
            f'{short_pairs} class/subject pair(s) '
            f'after {backtracks} backtrack(s)'
        )

    @property
    def total_shortfall(self) -> int:
        return sum(s for _, _, s in self.shortfalls)

    def to_dict(self) -> dict:
        return {
            'kind': self.kind,
            'message': str(self),
            'backtracks': self.backtracks,
            'provenInfeasible': self.proven_infeasible,
            'shortfalls': [
                {'class': c, 'subject': s, 'shortfall': n}
                for c, s, n in self.shortfalls
            ],
        }
