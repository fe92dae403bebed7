"""
Runtime settings for the timetable engine.

Everything is read from environment variables so the batch job and the
HTTP service share one configuration, including the period clock table
that attendance and calendar views rely on.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import time
from typing import Mapping, Optional

from errors import ConfigurationError

DEFAULT_DAYS = ['MONDAY', 'TUESDAY', 'WEDNESDAY', 'THURSDAY', 'FRIDAY']

# Period number -> (start, end). Breaks after period 3 and period 5.
DEFAULT_PERIODS = '08:00-08:40,08:40-09:20,09:20-10:00,10:20-11:00,11:00-11:40,12:20-13:00,13:00-13:40'

DEFAULT_DATABASE_URL = 'sqlite:///timetable.db'

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


@dataclass(frozen=True)
class PeriodTime:
    period: int  # 1-based
    start: time
    end: time

    def label(self) -> str:
        return f"{self.start.strftime('%H:%M')}-{self.end.strftime('%H:%M')}"


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    debug_solver: bool = False
    days: tuple = tuple(DEFAULT_DAYS)
    periods: tuple = field(default_factory=lambda: parse_periods(DEFAULT_PERIODS))
    backtrack_factor: int = 50
    max_chain_depth: int = 4
    prove_infeasibility: bool = False
    proof_time_limit: float = 10.0
    target_load_min: int = 20
    target_load_max: int = 28
    port: int = 8080

    def period_time(self, period: int) -> PeriodTime:
        """Clock range for a 1-based period number."""
        return self.periods[period - 1]


def _flag(value: Optional[str]) -> bool:
    return (value or '').lower() in ('1', 'true', 'yes')


def _parse_clock(text: str) -> time:
    hours, minutes = text.strip().split(':')
    return time(int(hours), int(minutes))


def parse_periods(value: str) -> tuple:
    """Parse "HH:MM-HH:MM,..." into PeriodTime records.

    Ranges must be non-empty, strictly increasing and must not overlap.
    """
    periods = []
    problems = []
    for idx, chunk in enumerate(c for c in value.split(',') if c.strip()):
        try:
            start_text, end_text = chunk.split('-')
            start, end = _parse_clock(start_text), _parse_clock(end_text)
        except ValueError:
            problems.append(f'Invalid period range {chunk.strip()!r}')
            continue
        if end <= start:
            problems.append(f'Period {idx + 1} ends before it starts ({chunk.strip()})')
        if periods and start < periods[-1].end:
            problems.append(f'Period {idx + 1} overlaps period {idx}')
        periods.append(PeriodTime(period=idx + 1, start=start, end=end))

    if not periods and not problems:
        problems.append('At least one period must be configured')
    if problems:
        raise ConfigurationError(problems)
    return tuple(periods)


def parse_days(value: str) -> tuple:
    days = [d.strip().upper() for d in value.split(',') if d.strip()]
    if not days:
        raise ConfigurationError('At least one day must be configured')
    if len(set(days)) != len(days):
        raise ConfigurationError(f'Duplicate day in {value!r}')
    return tuple(days)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment (os.environ by default)."""
    env = os.environ if environ is None else environ

    try:
        return Settings(
            database_url=env.get('DATABASE_URL', DEFAULT_DATABASE_URL),
            debug_solver=_flag(env.get('DEBUG_SOLVER')),
            days=parse_days(env.get('TIMETABLE_DAYS', ','.join(DEFAULT_DAYS))),
            periods=parse_periods(env.get('TIMETABLE_PERIODS', DEFAULT_PERIODS)),
            backtrack_factor=int(env.get('BACKTRACK_FACTOR', 50)),
            max_chain_depth=int(env.get('MAX_CHAIN_DEPTH', 4)),
            prove_infeasibility=_flag(env.get('PROVE_INFEASIBILITY')),
            proof_time_limit=float(env.get('PROOF_TIME_LIMIT', 10.0)),
            target_load_min=int(env.get('TARGET_LOAD_MIN', 20)),
            target_load_max=int(env.get('TARGET_LOAD_MAX', 28)),
            port=int(env.get('PORT', 8080)),
        )
    except ValueError as e:
        raise ConfigurationError(f'Invalid numeric setting: {e}') from e


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT
    )
