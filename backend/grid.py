"""
Slot Grid: the weekly (day, period) coordinates plus occupancy tracking.

A grid is allocated fresh for each run and thrown away afterwards. It knows
nothing about subjects; it only records who is busy where.
"""

from typing import Optional

from errors import ConfigurationError, InvariantViolation
from models import ScheduleEntry, TimeSlot


class SlotGrid:
    def __init__(self, num_days: int, num_periods: int):
        if num_days <= 0 or num_periods <= 0:
            raise ConfigurationError('Grid needs at least one day and one period')
        self.num_days = num_days
        self.num_periods = num_periods
        # Day-major, then period
        self._slots = tuple(
            TimeSlot(day, period)
            for day in range(num_days)
            for period in range(1, num_periods + 1)
        )
        self._teacher_busy: dict[tuple[str, TimeSlot], ScheduleEntry] = {}
        self._class_busy: dict[tuple[str, TimeSlot], ScheduleEntry] = {}

    @property
    def slots(self) -> tuple:
        return self._slots

    def __len__(self) -> int:
        return len(self._slots)

    def is_teacher_free(self, teacher_id: str, slot: TimeSlot) -> bool:
        return (teacher_id, slot) not in self._teacher_busy

    def is_class_free(self, class_id: str, slot: TimeSlot) -> bool:
        return (class_id, slot) not in self._class_busy

    def teacher_entry(self, teacher_id: str, slot: TimeSlot) -> Optional[ScheduleEntry]:
        return self._teacher_busy.get((teacher_id, slot))

    def class_entry(self, class_id: str, slot: TimeSlot) -> Optional[ScheduleEntry]:
        return self._class_busy.get((class_id, slot))

    def mark_busy(self, entry: ScheduleEntry) -> None:
        """Occupy the entry's teacher and class at its slot.

        Marking an already-busy cell is an engine bug, never a recoverable
        condition.
        """
        teacher_key = (entry.teacher_id, entry.slot)
        class_key = (entry.class_id, entry.slot)
        if teacher_key in self._teacher_busy:
            raise InvariantViolation(
                f'Teacher {entry.teacher_id} double-booked at {entry.slot}'
            )
        if class_key in self._class_busy:
            raise InvariantViolation(
                f'Class {entry.class_id} double-booked at {entry.slot}'
            )
        self._teacher_busy[teacher_key] = entry
        self._class_busy[class_key] = entry

    def release(self, entry: ScheduleEntry) -> None:
        teacher_key = (entry.teacher_id, entry.slot)
        class_key = (entry.class_id, entry.slot)
        if self._teacher_busy.get(teacher_key) != entry or self._class_busy.get(class_key) != entry:
            raise InvariantViolation(f'Releasing an entry that is not on the grid: {entry}')
        del self._teacher_busy[teacher_key]
        del self._class_busy[class_key]
