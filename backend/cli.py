#!/usr/bin/env python3
"""Batch entry point for timetable generation.

Exit status tells operator tooling what went wrong:
  0 success
  1 any other failure (database errors, a failing verify)
  2 ConfigurationError
  3 OverAllocatedDemandError
  4 InfeasibleScheduleError
  5 InvariantViolation
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

import verify
from catalogue import load_catalogue
from config import Settings, configure_logging, load_settings
from errors import TimetableError
from models import Timetable
from regeneration import RegenerationManager, regenerate
from solver import generate_from_settings, summarize
from storage import create_db_engine, init_db, make_session_factory

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


# ---------- Helpers ----------

def _emit(payload: dict, as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, indent=2, sort_keys=True))
        return
    for key, value in payload.items():
        if isinstance(value, dict):
            print(f"{key}:")
            for k, v in value.items():
                print(f"  {k}: {v}")
        elif isinstance(value, list):
            print(f"{key}:")
            for item in value:
                print(f"  - {item}")
        else:
            print(f"{key}: {value}")


def _manager(settings: Settings, database: Optional[str]) -> RegenerationManager:
    engine = create_db_engine(database or settings.database_url)
    init_db(engine)
    return RegenerationManager(make_session_factory(engine), settings)


# ---------- Commands ----------

def cmd_generate(args: argparse.Namespace, settings: Settings) -> int:
    catalogue = load_catalogue(args.catalogue)
    timetable = generate_from_settings(
        catalogue, settings, max_backtracks=args.budget, prove_infeasibility=args.prove or None
    )
    payload = summarize(timetable)
    if args.show_entries:
        payload['timetable'] = timetable.to_dict(settings.days)['entries']
    _emit(payload, args.json)
    return EXIT_OK


def cmd_regenerate(args: argparse.Namespace, settings: Settings) -> int:
    catalogue = load_catalogue(args.catalogue)
    manager = _manager(settings, args.database)
    timetable, result = regenerate(
        manager,
        args.scope,
        catalogue,
        max_backtracks=args.budget,
        prove_infeasibility=args.prove or None,
    )
    payload = summarize(timetable)
    payload.update(result.to_dict())
    _emit(payload, args.json)
    return EXIT_OK


def cmd_verify(args: argparse.Namespace, settings: Settings) -> int:
    manager = _manager(settings, args.database)
    entries = manager.load_entries(args.scope)
    violations = verify.find_violations(entries)
    report = verify.workload_report(
        Timetable(entries=tuple(entries)), settings.target_load_min, settings.target_load_max
    )
    payload = {
        'scope': args.scope,
        'entries': len(entries),
        'violations': [v.message for v in violations],
        'outsideTargetLoad': report['outsideTarget'],
    }
    if args.json:
        payload['workload'] = report
    _emit(payload, args.json)
    return EXIT_FAILURE if violations else EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='timetable', description='Weekly school timetable generator.')
    parser.add_argument('--debug', action='store_true', help='Verbose solver logging (same as DEBUG_SOLVER=1).')
    sub = parser.add_subparsers(dest='command', required=True)

    def add_engine_args(p: argparse.ArgumentParser) -> None:
        p.add_argument('--catalogue', required=True, help='Catalogue JSON (subjects, classes, teachers).')
        p.add_argument('--budget', type=int, default=None, help='Backtrack budget override (undo operations).')
        p.add_argument('--prove', action='store_true', help='On failure, ask CP-SAT whether any timetable exists.')
        p.add_argument('--json', action='store_true', help='Print JSON instead of text.')

    p_gen = sub.add_parser('generate', help='Run the engine without persisting.')
    add_engine_args(p_gen)
    p_gen.add_argument('--show-entries', action='store_true', help='Include every entry in the output.')
    p_gen.set_defaults(func=cmd_generate)

    p_regen = sub.add_parser('regenerate', help='Run the engine and replace the persisted timetable.')
    add_engine_args(p_regen)
    p_regen.add_argument('--scope', required=True, help='Scope to replace, e.g. academic year "2024/2025".')
    p_regen.add_argument('--database', default=None, help='SQLAlchemy URL (default: DATABASE_URL).')
    p_regen.set_defaults(func=cmd_regenerate)

    p_verify = sub.add_parser('verify', help='Check the persisted timetable of a scope for conflicts.')
    p_verify.add_argument('--scope', required=True)
    p_verify.add_argument('--database', default=None)
    p_verify.add_argument('--json', action='store_true')
    p_verify.set_defaults(func=cmd_verify)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
    except TimetableError as e:
        print(f"error: {e}", file=sys.stderr)
        return e.exit_code

    configure_logging(args.debug or settings.debug_solver)

    try:
        return args.func(args, settings)
    except TimetableError as e:
        _emit({'status': 'error', **e.to_dict()}, getattr(args, 'json', False))
        return e.exit_code
    except SQLAlchemyError as e:
        logger.error(f"DATABASE ERROR: {e}", exc_info=True)
        return EXIT_FAILURE


if __name__ == '__main__':
    sys.exit(main())
