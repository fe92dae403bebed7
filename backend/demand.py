"""
Demand Table: per (class, subject) weekly-hour counters for one run.
"""

from errors import ConfigurationError, InvariantViolation, OverAllocatedDemandError
from models import SchoolClass


class DemandTable:
    """Remaining lesson hours per class and subject.

    Counters start at the declared quota and count down as entries are
    placed. Going below zero, or restoring above the quota, is an engine
    bug and raises InvariantViolation.
    """

    def __init__(self, classes: list[SchoolClass]):
        self._quota: dict[str, dict[str, int]] = {}
        self._remaining: dict[str, dict[str, int]] = {}
        for cls in classes:
            quota = self._quota.setdefault(cls.id, {})
            for subject, hours in cls.demands:
                if hours < 0:
                    raise ConfigurationError(f"Negative quota for {cls.id}/{subject}")
                if hours == 0:
                    continue
                quota[subject] = quota.get(subject, 0) + hours
            self._remaining[cls.id] = dict(quota)

    @property
    def class_ids(self) -> list[str]:
        return list(self._quota)

    def quota(self, class_id: str, subject: str) -> int:
        return self._quota.get(class_id, {}).get(subject, 0)

    def remaining(self, class_id: str, subject: str) -> int:
        return self._remaining.get(class_id, {}).get(subject, 0)

    def total_demand(self, class_id: str) -> int:
        return sum(self._quota.get(class_id, {}).values())

    def total_remaining(self, class_id: str) -> int:
        return sum(self._remaining.get(class_id, {}).values())

    def decrement(self, class_id: str, subject: str) -> None:
        left = self.remaining(class_id, subject)
        if left <= 0:
            raise InvariantViolation(
                f'Demand for {class_id}/{subject} would go below zero'
            )
        self._remaining[class_id][subject] = left - 1

    def restore(self, class_id: str, subject: str) -> None:
        """Undo one decrement (used when the engine backtracks)."""
        left = self.remaining(class_id, subject)
        if left >= self.quota(class_id, subject):
            raise InvariantViolation(
                f'Demand for {class_id}/{subject} would exceed its quota'
            )
        self._remaining[class_id][subject] = left + 1

    def pending_subjects(self, class_id: str) -> list[str]:
        """Subjects still owed to a class: most hours left first, then by code."""
        remaining = self._remaining.get(class_id, {})
        owed = [s for s, h in remaining.items() if h > 0]
        return sorted(owed, key=lambda s: (-remaining[s], s))

    def is_satisfied(self) -> bool:
        return all(h == 0 for per_class in self._remaining.values() for h in per_class.values())

    def shortfalls(self) -> list[tuple[str, str, int]]:
        """(class_id, subject, missing_hours) for every pair still short."""
        return [
            (class_id, subject, hours)
            for class_id, per_class in self._remaining.items()
            for subject, hours in sorted(per_class.items())
            if hours > 0
        ]

    def check_capacity(self, slots_per_class: int) -> None:
        """Pre-flight arithmetic: no class may demand more hours than slots."""
        over = [
            (class_id, self.total_demand(class_id), slots_per_class)
            for class_id in self._quota
            if self.total_demand(class_id) > slots_per_class
        ]
        if over:
            raise OverAllocatedDemandError(over)
