import pytest

from config import load_settings
from models import Catalogue, Qualification, SchoolClass, Subject, Teacher
from regeneration import RegenerationManager
from storage import create_db_engine, init_db, make_session_factory


def make_catalogue(classes: dict, teachers: dict) -> Catalogue:
    """Build a Catalogue from plain dicts.

    classes:  {class_id: {subject: hours}}
    teachers: {teacher_id: [(subject, [class_ids])]}
    """
    codes = []
    for demands in classes.values():
        for subject in demands:
            if subject not in codes:
                codes.append(subject)
    for quals in teachers.values():
        for subject, _ in quals:
            if subject not in codes:
                codes.append(subject)

    return Catalogue(
        subjects=tuple(Subject(code=c, name=c.title()) for c in codes),
        classes=tuple(
            SchoolClass(id=cid, demands=tuple(demands.items()))
            for cid, demands in classes.items()
        ),
        teachers=tuple(
            Teacher(
                id=tid,
                qualifications=tuple(Qualification(s, frozenset(cids)) for s, cids in quals),
            )
            for tid, quals in teachers.items()
        ),
    )


@pytest.fixture
def build_catalogue():
    return make_catalogue


@pytest.fixture
def settings():
    # Defaults only, independent of the developer's environment
    return load_settings({})


@pytest.fixture
def db_engine():
    engine = create_db_engine('sqlite://')
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def manager(db_engine, settings):
    return RegenerationManager(make_session_factory(db_engine), settings)
