"""
Eligibility Registry: which teacher may teach which subject to which class.

Lookups are keyed by stable identifiers (subject code, class id) rather
than by position in a roster, so reordering the catalogue never changes
who is allowed to teach what.
"""

from errors import ConfigurationError
from models import Teacher


class EligibilityRegistry:
    def __init__(self, teachers: list[Teacher]):
        self._teachers: dict[str, Teacher] = {}
        # (subject, class_id) -> teacher ids in roster order
        self._by_pair: dict[tuple[str, str], list[str]] = {}
        # teacher_id -> [(subject, class_id)] the teacher is qualified for
        self._pairs_by_teacher: dict[str, list[tuple[str, str]]] = {}

        duplicates = []
        for teacher in teachers:
            if teacher.id in self._teachers:
                duplicates.append(f'Duplicate teacher id {teacher.id!r}')
                continue
            self._teachers[teacher.id] = teacher
            pairs = self._pairs_by_teacher.setdefault(teacher.id, [])
            for qual in teacher.qualifications:
                for class_id in sorted(qual.classes):
                    key = (qual.subject, class_id)
                    bucket = self._by_pair.setdefault(key, [])
                    if teacher.id not in bucket:
                        bucket.append(teacher.id)
                        pairs.append(key)
        if duplicates:
            raise ConfigurationError(duplicates)

    @property
    def teacher_ids(self) -> list[str]:
        return list(self._teachers)

    def teachers_for(self, subject: str, class_id: str) -> tuple:
        """Qualified teachers for subject in class_id, in roster order."""
        return tuple(self._by_pair.get((subject, class_id), ()))

    def is_eligible(self, teacher_id: str, subject: str, class_id: str) -> bool:
        return teacher_id in self._by_pair.get((subject, class_id), ())

    def pairs_for(self, teacher_id: str) -> list[tuple[str, str]]:
        """(subject, class_id) pairs the teacher is qualified for."""
        return list(self._pairs_by_teacher.get(teacher_id, ()))

    def validate(self, quotas: dict[tuple[str, str], int]) -> None:
        """Pre-flight check: every demanded (class, subject) needs a teacher.

        Args:
            quotas: Mapping of (class_id, subject) -> weekly hours

        Raises:
            ConfigurationError listing every pair without a qualified teacher.
        """
        problems = [
            f'No qualified teacher for subject {subject!r} in class {class_id!r}'
            for (class_id, subject), hours in quotas.items()
            if hours > 0 and not self.teachers_for(subject, class_id)
        ]
        if problems:
            raise ConfigurationError(problems)
