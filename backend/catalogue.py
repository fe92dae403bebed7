"""
Catalogue input: subjects, classes with weekly quotas, and teacher
qualifications, validated with pydantic and turned into engine models.
"""

import json
import logging
import re
from pathlib import Path
from typing import Union

from pydantic import BaseModel, Field, ValidationError

from errors import ConfigurationError
from models import Catalogue, Qualification, SchoolClass, Subject, Teacher

logger = logging.getLogger(__name__)


class SubjectIn(BaseModel):
    code: str = Field(min_length=1)
    name: str = ''


class DemandIn(BaseModel):
    subject: str
    hours: int = Field(ge=0)


class ClassIn(BaseModel):
    id: str = Field(min_length=1)
    name: str = ''
    grade: str = ''
    demands: list[DemandIn] = []


class QualificationIn(BaseModel):
    subject: str
    classes: list[str]


class TeacherIn(BaseModel):
    id: str = Field(min_length=1)
    name: str = ''
    qualifications: list[QualificationIn] = []


class CatalogueDocument(BaseModel):
    subjects: list[SubjectIn]
    classes: list[ClassIn]
    teachers: list[TeacherIn]


def normalize_class_name(name: str) -> str:
    """'  x-a ' and 'X-A' are the same class."""
    return re.sub(r'\s+', ' ', name.strip()).upper()


def to_catalogue(doc: CatalogueDocument) -> Catalogue:
    """Convert a validated document into engine models.

    Classes whose normalized name repeats an earlier class are skipped
    with a warning, together with every reference to them. Unknown or
    duplicate identifiers are reported together as one ConfigurationError.
    """
    problems = []

    subjects = []
    subject_codes = set()
    for s in doc.subjects:
        if s.code in subject_codes:
            problems.append(f'Duplicate subject code {s.code!r}')
            continue
        subject_codes.add(s.code)
        subjects.append(Subject(code=s.code, name=s.name))

    classes = []
    class_ids = set()
    skipped_ids = set()
    seen_names: dict[str, str] = {}
    for c in doc.classes:
        if c.id in class_ids or c.id in skipped_ids:
            problems.append(f'Duplicate class id {c.id!r}')
            continue
        norm = normalize_class_name(c.name or c.id)
        if norm in seen_names:
            logger.warning(f"Skipping duplicate class {c.name or c.id!r} (id {c.id}), same as {seen_names[norm]}")
            skipped_ids.add(c.id)
            continue
        seen_names[norm] = c.id
        class_ids.add(c.id)

        demands = []
        for d in c.demands:
            if d.subject not in subject_codes:
                problems.append(f'Class {c.id!r} demands unknown subject {d.subject!r}')
            elif d.hours > 0:
                demands.append((d.subject, d.hours))
        classes.append(SchoolClass(id=c.id, grade=c.grade, demands=tuple(demands), name=c.name))

    teachers = []
    teacher_ids = set()
    for t in doc.teachers:
        if t.id in teacher_ids:
            problems.append(f'Duplicate teacher id {t.id!r}')
            continue
        teacher_ids.add(t.id)

        quals = []
        for q in t.qualifications:
            if q.subject not in subject_codes:
                problems.append(f'Teacher {t.id!r} is qualified for unknown subject {q.subject!r}')
                continue
            unknown = [cid for cid in q.classes if cid not in class_ids and cid not in skipped_ids]
            if unknown:
                problems.append(f'Teacher {t.id!r} references unknown class(es) {", ".join(unknown)}')
            eligible = frozenset(cid for cid in q.classes if cid in class_ids)
            if eligible:
                quals.append(Qualification(subject=q.subject, classes=eligible))
        teachers.append(Teacher(id=t.id, name=t.name, qualifications=tuple(quals)))

    if problems:
        raise ConfigurationError(problems)

    return Catalogue(subjects=tuple(subjects), classes=tuple(classes), teachers=tuple(teachers))


def parse_catalogue(data: Union[dict, str]) -> Catalogue:
    """Validate a catalogue given as a dict or JSON text."""
    try:
        if isinstance(data, str):
            doc = CatalogueDocument.model_validate_json(data)
        else:
            doc = CatalogueDocument.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError([
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]) from e
    return to_catalogue(doc)


def load_catalogue(path: Union[str, Path]) -> Catalogue:
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f'Catalogue file not found: {path}')
    with path.open('r', encoding='utf-8') as f:
        text = f.read()
    logger.debug(f"Loaded catalogue {path} ({len(text)} bytes)")
    return parse_catalogue(text)


def dump_catalogue(catalogue: Catalogue) -> str:
    """Serialize a Catalogue back into the document format."""
    doc = {
        'subjects': [{'code': s.code, 'name': s.name} for s in catalogue.subjects],
        'classes': [
            {
                'id': c.id,
                'name': c.name,
                'grade': c.grade,
                'demands': [{'subject': s, 'hours': h} for s, h in c.demands],
            }
            for c in catalogue.classes
        ],
        'teachers': [
            {
                'id': t.id,
                'name': t.name,
                'qualifications': [
                    {'subject': q.subject, 'classes': sorted(q.classes)} for q in t.qualifications
                ],
            }
            for t in catalogue.teachers
        ],
    }
    return json.dumps(doc, indent=2)
