"""
Regeneration Transaction Manager.

The only place where the committed timetable changes. A regeneration
replaces every row of a scope in one transaction: lock the scope, delete
the old week, insert the new one, commit. Any failure rolls the whole
transaction back, so readers see either the old week or the new one.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

import verify
from config import Settings
from eligibility import EligibilityRegistry
from errors import ConfigurationError, TimetableError
from models import Catalogue, ScheduleEntry, Timetable, TimeSlot
from solver import generate_from_settings
from storage import RUN_FAILED, RUN_SUCCEEDED, RegenerationLock, RegenerationRun, ScheduleRow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegenerationResult:
    scope: str
    replaced: int
    inserted: int
    generation: int

    def to_dict(self) -> dict:
        return {
            'scope': self.scope,
            'replaced': self.replaced,
            'inserted': self.inserted,
            'generation': self.generation,
        }


class RegenerationManager:
    def __init__(self, session_factory: sessionmaker, settings: Settings):
        self.session_factory = session_factory
        self.settings = settings

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #
    def replace(
        self,
        scope: str,
        timetable: Timetable,
        registry: Optional[EligibilityRegistry] = None,
        quotas: Optional[dict[tuple[str, str], int]] = None,
    ) -> RegenerationResult:
        """Atomically replace the persisted timetable of scope.

        The timetable must already satisfy every invariant; it is checked
        again here and never corrected.
        """
        try:
            verify.assert_valid(timetable, registry, quotas)
            rows = self._to_rows(scope, timetable)
        except TimetableError as e:
            logger.warning(f"REGENERATION REJECTED: scope {scope}: {e}")
            self.record_failure(scope, e)
            raise

        session = self.session_factory()
        try:
            lock = self._acquire_lock(session, scope)
            replaced = session.execute(
                delete(ScheduleRow).where(ScheduleRow.scope == scope)
            ).rowcount or 0
            session.add_all(rows)
            session.flush()

            lock.generation += 1
            lock.updated_at = datetime.now(timezone.utc)
            generation = lock.generation
            session.add(RegenerationRun(
                scope=scope,
                status=RUN_SUCCEEDED,
                replaced_count=replaced,
                inserted_count=len(rows),
            ))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"REGENERATION ROLLED BACK: scope {scope}: {e}", exc_info=True)
            self.record_failure(scope, e)
            raise
        finally:
            session.close()

        logger.info(
            f"=== REGENERATED === Scope: {scope}, Replaced: {replaced}, "
            f"Inserted: {len(rows)}, Generation: {generation}"
        )
        return RegenerationResult(scope=scope, replaced=replaced, inserted=len(rows), generation=generation)

    def record_failure(self, scope: str, error: Exception) -> None:
        """Audit a failed attempt in its own transaction."""
        session = self.session_factory()
        try:
            session.add(RegenerationRun(scope=scope, status=RUN_FAILED, message=str(error)[:2000]))
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception(f"Could not record failed regeneration for scope {scope}")
        finally:
            session.close()

    def _acquire_lock(self, session: Session, scope: str) -> RegenerationLock:
        """Exclusive write scope for the rest of the transaction."""
        if session.get_bind().dialect.name == 'postgresql':
            session.execute(text('SELECT pg_advisory_xact_lock(hashtext(:scope))'), {'scope': scope})

        lock = session.execute(
            select(RegenerationLock).where(RegenerationLock.scope == scope).with_for_update()
        ).scalar_one_or_none()
        if lock is None:
            lock = RegenerationLock(scope=scope, generation=0)
            session.add(lock)
            session.flush()
        return lock

    def _to_rows(self, scope: str, timetable: Timetable) -> list[ScheduleRow]:
        days, periods = self.settings.days, self.settings.periods
        rows = []
        for entry in timetable.entries:
            slot = entry.slot
            if not (0 <= slot.day < len(days) and 1 <= slot.period <= len(periods)):
                raise ConfigurationError(
                    f'Entry at {slot.label()} lies outside the configured '
                    f'{len(days)}x{len(periods)} grid'
                )
            clock = self.settings.period_time(slot.period)
            rows.append(ScheduleRow(
                scope=scope,
                class_id=entry.class_id,
                subject_code=entry.subject,
                teacher_id=entry.teacher_id,
                day_of_week=days[slot.day],
                period=slot.period,
                start_time=clock.start,
                end_time=clock.end,
            ))
        return rows

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    def load(self, scope: str) -> list[ScheduleRow]:
        """Persisted rows of scope in (day, period, class) order."""
        day_order = {d: i for i, d in enumerate(self.settings.days)}
        with self.session_factory() as session:
            rows = session.execute(
                select(ScheduleRow).where(ScheduleRow.scope == scope)
            ).scalars().all()
        return sorted(rows, key=lambda r: (day_order.get(r.day_of_week, len(day_order)), r.period, r.class_id))

    def load_entries(self, scope: str) -> list[ScheduleEntry]:
        """Persisted rows of scope as engine entries.

        Raises ConfigurationError when a row's day is not one of the
        configured days (e.g. TIMETABLE_DAYS changed since the write).
        """
        day_order = {d: i for i, d in enumerate(self.settings.days)}
        rows = self.load(scope)
        unknown = sorted({r.day_of_week for r in rows} - set(day_order))
        if unknown:
            raise ConfigurationError(
                f"Scope {scope} has rows on unknown day(s) {', '.join(unknown)}; "
                f"configured days are {', '.join(self.settings.days)}"
            )
        return [
            ScheduleEntry(
                class_id=r.class_id,
                subject=r.subject_code,
                teacher_id=r.teacher_id,
                slot=TimeSlot(day_order[r.day_of_week], r.period),
            )
            for r in rows
        ]

    def generation(self, scope: str) -> int:
        with self.session_factory() as session:
            lock = session.get(RegenerationLock, scope)
            return lock.generation if lock is not None else 0

    def runs(self, scope: str) -> list[RegenerationRun]:
        with self.session_factory() as session:
            return session.execute(
                select(RegenerationRun)
                .where(RegenerationRun.scope == scope)
                .order_by(RegenerationRun.id)
            ).scalars().all()


def regenerate(
    manager: RegenerationManager,
    scope: str,
    catalogue: Catalogue,
    max_backtracks: Optional[int] = None,
    prove_infeasibility: Optional[bool] = None,
) -> tuple[Timetable, RegenerationResult]:
    """Run the engine and persist its timetable for scope.

    Engine failures leave the persisted timetable untouched; they are
    audited and re-raised unchanged.
    """
    logger.info(f"=== REGENERATE REQUEST === Scope: {scope}")
    try:
        timetable = generate_from_settings(
            catalogue,
            manager.settings,
            max_backtracks=max_backtracks,
            prove_infeasibility=prove_infeasibility,
        )
    except TimetableError as e:
        manager.record_failure(scope, e)
        raise

    registry = EligibilityRegistry(catalogue.teachers)
    result = manager.replace(scope, timetable, registry=registry, quotas=catalogue.quotas())
    return timetable, result
