"""
Timetable verification and workload reporting.

find_violations checks the four hard invariants of a timetable:
1. no class is booked twice in one slot
2. no teacher is booked twice in one slot
3. every (class, subject) gets exactly its weekly quota
4. every entry's teacher is qualified for that subject and class

Quota and eligibility checks are skipped when the caller has no catalogue
at hand (e.g. when auditing rows read back from the database).
"""

from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Optional

from eligibility import EligibilityRegistry
from errors import InvariantViolation
from models import ScheduleEntry, Timetable

TEACHER_CONFLICT = 'teacher_conflict'
CLASS_CONFLICT = 'class_conflict'
QUOTA_MISMATCH = 'quota_mismatch'
INELIGIBLE = 'ineligible'


@dataclass(frozen=True)
class Violation:
    kind: str
    message: str

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'message': self.message}


def find_violations(
    entries: Iterable[ScheduleEntry],
    registry: Optional[EligibilityRegistry] = None,
    quotas: Optional[dict[tuple[str, str], int]] = None,
) -> list[Violation]:
    entries = list(entries)
    violations = []

    teacher_slots = Counter((e.teacher_id, e.slot) for e in entries)
    for (teacher_id, slot), count in sorted(teacher_slots.items()):
        if count > 1:
            violations.append(Violation(
                TEACHER_CONFLICT,
                f'Teacher {teacher_id} teaches {count} lessons at {slot.label()}'
            ))

    class_slots = Counter((e.class_id, e.slot) for e in entries)
    for (class_id, slot), count in sorted(class_slots.items()):
        if count > 1:
            violations.append(Violation(
                CLASS_CONFLICT,
                f'Class {class_id} has {count} lessons at {slot.label()}'
            ))

    if quotas is not None:
        placed = Counter((e.class_id, e.subject) for e in entries)
        for pair in sorted(set(placed) | set(quotas)):
            expected = quotas.get(pair, 0)
            if placed.get(pair, 0) != expected:
                class_id, subject = pair
                violations.append(Violation(
                    QUOTA_MISMATCH,
                    f'{class_id}/{subject}: {placed.get(pair, 0)} lessons placed, quota is {expected}'
                ))

    if registry is not None:
        for e in entries:
            if not registry.is_eligible(e.teacher_id, e.subject, e.class_id):
                violations.append(Violation(
                    INELIGIBLE,
                    f'Teacher {e.teacher_id} is not qualified for {e.subject} in {e.class_id}'
                ))

    return violations


def assert_valid(
    timetable: Timetable,
    registry: Optional[EligibilityRegistry] = None,
    quotas: Optional[dict[tuple[str, str], int]] = None,
) -> None:
    violations = find_violations(timetable.entries, registry, quotas)
    if violations:
        raise InvariantViolation(
            f'{len(violations)} invariant violation(s): '
            + '; '.join(v.message for v in violations[:5])
        )


def workload_report(timetable: Timetable, target_min: int = 20, target_max: int = 28,
                    teacher_ids: Optional[list[str]] = None) -> dict:
    """Weekly teaching hours per teacher, flagged against a target band,
    plus the hours each class receives per subject.

    Teachers listed in teacher_ids but absent from the timetable are
    reported with zero hours.
    """
    load = timetable.teacher_load()
    for teacher_id in teacher_ids or []:
        load.setdefault(teacher_id, 0)

    teachers = []
    for teacher_id, hours in sorted(load.items()):
        teachers.append({
            'teacher': teacher_id,
            'hours': hours,
            'withinTarget': target_min <= hours <= target_max,
        })

    return {
        'target': {'min': target_min, 'max': target_max},
        'teachers': teachers,
        'outsideTarget': [t['teacher'] for t in teachers if not t['withinTarget']],
        'classHours': timetable.class_hours(),
    }
