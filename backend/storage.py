"""
SQLAlchemy schema for the persisted timetable.

schedule_entries is what attendance and calendar views read. The lock and
run tables belong to the regeneration protocol: one lock row per scope
(academic year / term) serializes writers, and every attempt leaves an
audit row.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()

RUN_SUCCEEDED = 'SUCCEEDED'
RUN_FAILED = 'FAILED'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScheduleRow(Base):
    __tablename__ = 'schedule_entries'
    id = Column(Integer, primary_key=True)
    scope = Column(String, nullable=False, index=True)
    class_id = Column(String, nullable=False)
    subject_code = Column(String, nullable=False)
    teacher_id = Column(String, nullable=False)
    day_of_week = Column(String, nullable=False)
    period = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    __table_args__ = (
        UniqueConstraint('scope', 'class_id', 'day_of_week', 'period', name='_scope_class_slot_uc'),
        UniqueConstraint('scope', 'teacher_id', 'day_of_week', 'period', name='_scope_teacher_slot_uc'),
    )

    def to_dict(self) -> dict:
        return {
            'class': self.class_id,
            'subject': self.subject_code,
            'teacher': self.teacher_id,
            'dayOfWeek': self.day_of_week,
            'period': self.period,
            'startTime': self.start_time.strftime('%H:%M'),
            'endTime': self.end_time.strftime('%H:%M'),
        }


class RegenerationLock(Base):
    __tablename__ = 'regeneration_locks'
    scope = Column(String, primary_key=True)
    generation = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class RegenerationRun(Base):
    __tablename__ = 'regeneration_runs'
    id = Column(Integer, primary_key=True)
    scope = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False)
    replaced_count = Column(Integer, nullable=False, default=0)
    inserted_count = Column(Integer, nullable=False, default=0)
    message = Column(Text, default='')
    created_at = Column(DateTime(timezone=True), default=_utcnow)


def create_db_engine(url: str) -> Engine:
    """Engine for url. SQLite gets BEGIN IMMEDIATE so writers are serialized."""
    if not url.startswith('sqlite'):
        return create_engine(url, pool_pre_ping=True)

    kwargs = {'connect_args': {'check_same_thread': False}}
    if url in ('sqlite://', 'sqlite:///:memory:'):
        # One shared connection, otherwise every session sees an empty database
        kwargs['poolclass'] = StaticPool
    engine = create_engine(url, **kwargs)

    # pysqlite's own transaction handling defers BEGIN; take it over
    @event.listens_for(engine, 'connect')
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _begin_immediate(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')

    return engine


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)
