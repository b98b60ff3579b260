"""
RTSM - Command Line
===================
Administrative entry point for the randomization engine.

Usage:
    rtsm init-db [--drop]
    rtsm create scheme.json --user admin
    rtsm preview scheme.json
    rtsm generate 1 --user admin
    rtsm activate 1 --user admin
    rtsm stats 1
    rtsm randomize STUDY-01 SUBJ-0001 --stratum age=<65 --user coordinator
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from rtsm.database.connection import get_db_manager
from rtsm.logging_config import setup_logging
from rtsm.randomization.exceptions import RandomizationError, ValidationError
from rtsm.randomization.service import get_randomization_service

logger = logging.getLogger(__name__)


# =============================================================================
# HELPERS
# =============================================================================

def _emit(result: Any) -> None:
    print(json.dumps(result, indent=2, default=str))


def _load_json(path: str) -> Dict[str, Any]:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(f"Cannot read scheme file {path}: {e}", {"path": path}) from e


def _parse_strata(pairs: List[str]) -> Dict[str, str]:
    values = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise ValidationError(f"Stratum value must look like factor=value, got '{pair}'")
        values[name] = value
    return values


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_init_db(args) -> Dict[str, Any]:
    get_db_manager().create_tables(drop_existing=args.drop)
    return {"success": True}


def cmd_create(args) -> Dict[str, Any]:
    return get_randomization_service().save_config(_load_json(args.scheme), args.user)


def cmd_preview(args) -> Dict[str, Any]:
    return get_randomization_service().test_config(_load_json(args.scheme), limit=args.limit)


def cmd_generate(args) -> Dict[str, Any]:
    return get_randomization_service().generate_list(args.config_id, args.user)


def cmd_activate(args) -> Dict[str, Any]:
    return get_randomization_service().activate_config(args.config_id, args.user)


def cmd_stats(args) -> Dict[str, Any]:
    return get_randomization_service().get_list_stats(args.config_id)


def cmd_randomize(args) -> Dict[str, Any]:
    return get_randomization_service().randomize_subject(
        args.study_id, args.subject_id, args.user, _parse_strata(args.stratum)
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rtsm",
        description="RTSM Randomization Engine",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create database tables")
    p.add_argument("--drop", action="store_true", help="Drop existing tables first (DESTRUCTIVE!)")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("create", help="Save a scheme from a JSON file")
    p.add_argument("scheme", help="Path to scheme JSON")
    p.add_argument("--user", default="system")
    p.set_defaults(func=cmd_create)

    p = sub.add_parser("preview", help="Dry-run a scheme from a JSON file")
    p.add_argument("scheme", help="Path to scheme JSON")
    p.add_argument("--limit", type=int, default=None)
    p.set_defaults(func=cmd_preview)

    for name, func, text in (
        ("generate", cmd_generate, "Generate the sealed list"),
        ("activate", cmd_activate, "Activate a scheme"),
    ):
        p = sub.add_parser(name, help=text)
        p.add_argument("config_id", type=int)
        p.add_argument("--user", default="system")
        p.set_defaults(func=func)

    p = sub.add_parser("stats", help="List usage statistics")
    p.add_argument("config_id", type=int)
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("randomize", help="Randomize a subject")
    p.add_argument("study_id")
    p.add_argument("subject_id")
    p.add_argument("--stratum", action="append", default=[], metavar="FACTOR=VALUE")
    p.add_argument("--user", default="system")
    p.set_defaults(func=cmd_randomize)

    return parser


# =============================================================================
# ENTRY POINT
# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        _emit(args.func(args))
    except RandomizationError as e:
        _emit(e.to_dict())
        return 1
    except SQLAlchemyError as e:
        logger.error(f"Database error: {e}")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
