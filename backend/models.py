"""
Core data model shared by the engine, the verifier and persistence.

All records are frozen dataclasses: catalogue data is an immutable input
to a run and schedule entries never change once emitted.
"""

import json
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class Subject:
    code: str
    name: str = ''


@dataclass(frozen=True)
class SchoolClass:
    id: str
    grade: str = ''
    # Ordered (subject_code, weekly_hours) pairs
    demands: tuple = ()
    name: str = ''

    @property
    def total_hours(self) -> int:
        return sum(hours for _, hours in self.demands)


@dataclass(frozen=True)
class Qualification:
    subject: str
    classes: frozenset = frozenset()


@dataclass(frozen=True)
class Teacher:
    id: str
    name: str = ''
    qualifications: tuple = ()

    def can_teach(self, subject: str, class_id: str) -> bool:
        return any(q.subject == subject and class_id in q.classes for q in self.qualifications)


@dataclass(frozen=True, order=True)
class TimeSlot:
    """One (day, period) coordinate. Orders day-major, then period."""
    day: int     # 0-based index into the configured days
    period: int  # 1-based period number

    def label(self, days: Optional[tuple] = None) -> str:
        day_name = days[self.day] if days else f'D{self.day + 1}'
        return f'{day_name}-{self.period}'


@dataclass(frozen=True)
class ScheduleEntry:
    class_id: str
    subject: str
    teacher_id: str
    slot: TimeSlot

    def to_dict(self, days: Optional[tuple] = None) -> dict:
        return {
            'class': self.class_id,
            'subject': self.subject,
            'teacher': self.teacher_id,
            'day': days[self.slot.day] if days else self.slot.day,
            'period': self.slot.period,
        }


@dataclass(frozen=True)
class Catalogue:
    """Static inputs of one run: subjects, classes and teachers."""
    subjects: tuple = ()
    classes: tuple = ()
    teachers: tuple = ()

    def subject_codes(self) -> list[str]:
        return [s.code for s in self.subjects]

    def class_ids(self) -> list[str]:
        return [c.id for c in self.classes]

    def quotas(self) -> dict[tuple[str, str], int]:
        """(class_id, subject_code) -> weekly hours, zero-hour pairs left out."""
        result = {}
        for cls in self.classes:
            for subject, hours in cls.demands:
                if hours > 0:
                    result[(cls.id, subject)] = result.get((cls.id, subject), 0) + hours
        return result


@dataclass(frozen=True)
class Timetable:
    """The complete set of entries produced by one engine run."""
    entries: tuple = ()
    backtracks: int = 0
    stats: dict = field(default_factory=dict, compare=False)

    def __len__(self) -> int:
        return len(self.entries)

    def teacher_load(self) -> dict[str, int]:
        load = Counter(e.teacher_id for e in self.entries)
        return dict(sorted(load.items()))

    def class_hours(self) -> dict[str, dict[str, int]]:
        hours: dict[str, dict[str, int]] = {}
        for e in self.entries:
            per_class = hours.setdefault(e.class_id, {})
            per_class[e.subject] = per_class.get(e.subject, 0) + 1
        return {c: dict(sorted(s.items())) for c, s in sorted(hours.items())}

    def to_dict(self, days: Optional[tuple] = None) -> dict:
        return {
            'entries': [e.to_dict(days) for e in self.entries],
            'teacherLoad': self.teacher_load(),
            'backtracks': self.backtracks,
        }

    def to_json(self, days: Optional[tuple] = None) -> str:
        # Canonical form: identical timetables serialize byte-for-byte equal
        return json.dumps(self.to_dict(days), sort_keys=True, separators=(',', ':'))
