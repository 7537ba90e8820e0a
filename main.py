#!/usr/bin/env python3
"""
RiskRules -- command-line front end for the property risk rules engine.

Usage:
  python main.py test-rule rule.json case1.json case2.json
  python main.py test-rule rule.json case1.json --json
  python main.py render 6f1c...-rule-id
  python main.py process observations.json --property 42
  python main.py process observations.json --property 42 --at 2026-01-15T00:00:00Z
  python main.py reevaluate 42

test-rule runs entirely in memory; nothing is written. The other commands
use the configured database.

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the rules database (default: sqlite:///riskrules.db)
  LOG_LEVEL      DEBUG, INFO, WARNING, ERROR or CRITICAL (default: INFO)
"""

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional

from core.config import get_settings
from core.engine import Engine, build_engine
from core.errors import RulesEngineError
from core.models import ProcessResult
from store.memory import MemoryStore
from store.sql import SQLStore

logger = logging.getLogger("riskrules.cli")


def _load_json(path: str) -> Any:
    """Read a JSON document from a regular file.

    Resolves symlinks and verifies the path is a regular file before reading.
    Raises SystemExit with a readable message on any failure.
    """
    file_path = Path(path).resolve()
    if not file_path.is_file():
        raise SystemExit(f"  [!] '{path}' is not a readable file.")
    try:
        return json.loads(file_path.read_text())
    except OSError as e:
        raise SystemExit(f"  [!] Could not read file '{path}': {e}") from e
    except json.JSONDecodeError as e:
        raise SystemExit(f"  [!] '{path}' is not valid JSON: {e}") from e


def _observations_from(document: Any) -> list:
    """Accept either a bare list of observations or {"observations": [...]}."""
    if isinstance(document, dict):
        return document.get("observations", [])
    return document


def _open_engine(db_url: Optional[str]) -> Engine:
    settings = get_settings()
    return build_engine(SQLStore(db_url or settings.database_url), settings)


def _print_process_result(result: ProcessResult) -> None:
    print(f"  Assessment {result.assessment_id}")
    print(f"  Rules evaluated:  {result.rules_evaluated}")
    print(f"  Rules triggered:  {len(result.triggered_rule_ids)}")
    for vuln in result.created:
        print(f"    + vulnerability {vuln.id} (rule {vuln.rule_id})")
    if result.skipped:
        print(f"  Skipped (already open): {result.skipped}")
    for failure in result.errors:
        print(f"  [!] rule {failure.item_id}: {failure.message}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_test_rule(args: argparse.Namespace) -> int:
    rule_doc = _load_json(args.rule)
    tree = rule_doc.get("functional_rule", rule_doc) if isinstance(rule_doc, dict) else rule_doc
    cases = [_observations_from(_load_json(path)) for path in args.cases]

    engine = build_engine(MemoryStore(), get_settings())
    results = engine.rules.test_rule(tree, cases)

    if args.json:
        payload = [
            {"case": path, "triggered": r.triggered, "observations": [o.to_dict() for o in r.case]}
            for path, r in zip(args.cases, results)
        ]
        print(json.dumps(payload, indent=2))
    else:
        for path, r in zip(args.cases, results):
            print(f"  {'TRIGGERED' if r.triggered else 'clear    '}  {path}")
    return 0


def cmd_render(args: argparse.Namespace) -> int:
    engine = _open_engine(args.db)
    try:
        print(engine.rules.render_human_readable(args.rule_id))
    finally:
        engine.store.close()
    return 0


def cmd_process(args: argparse.Namespace) -> int:
    observations = _observations_from(_load_json(args.observations))
    engine = _open_engine(args.db)
    try:
        assessment = engine.processor.record_assessment(args.property, observations, assessed_at=args.assessed_at)
        if args.at or args.point_in_time:
            result = engine.processor.process_assessment_at_time(assessment, args.at)
        else:
            result = engine.processor.process_assessment(assessment)
    finally:
        engine.store.close()

    if args.json:
        print(json.dumps(asdict(result), indent=2))
    else:
        _print_process_result(result)
    return 1 if result.errors else 0


def cmd_reevaluate(args: argparse.Namespace) -> int:
    engine = _open_engine(args.db)
    try:
        result = engine.vulnerabilities.reevaluate_property(args.property_id)
    finally:
        engine.store.close()

    if args.json:
        print(json.dumps(asdict(result), indent=2))
    else:
        print(f"  Property {result.property_id}: {result.checked} checked, {result.removed} removed")
        if result.orphaned:
            print(f"  {len(result.orphaned)} vulnerabilities reference a deleted rule")
    return 1 if result.errors else 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="riskrules",
        description="Evaluate property risk rules against assessment observations.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py test-rule rule.json house-a.json house-b.json
  python main.py render 6f1c0e0e-0000-4000-8000-000000000000
  python main.py process observations.json --property 42 --json
  DATABASE_URL=postgresql://user:pw@host/db python main.py reevaluate 42
        """,
    )
    parser.add_argument(
        "--db",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (overrides DATABASE_URL)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_test = sub.add_parser("test-rule", help="Dry-run a rule against observation files (nothing persisted)")
    p_test.add_argument("rule", metavar="RULE.json", help="Condition tree, or a rule object with functional_rule")
    p_test.add_argument("cases", nargs="+", metavar="OBSERVATIONS.json", help="One observation set per file")
    p_test.add_argument("--json", action="store_true", help="Output structured JSON")
    p_test.set_defaults(func=cmd_test_rule)

    p_render = sub.add_parser("render", help="Print a stored rule in plain language")
    p_render.add_argument("rule_id", metavar="RULE-ID")
    p_render.set_defaults(func=cmd_render)

    p_process = sub.add_parser("process", help="Record an assessment and create vulnerabilities")
    p_process.add_argument("observations", metavar="OBSERVATIONS.json")
    p_process.add_argument("--property", type=int, required=True, metavar="ID", help="Property id")
    p_process.add_argument("--assessed-at", default=None, metavar="ISO8601", help="When the assessment was made")
    p_process.add_argument(
        "--at",
        default=None,
        metavar="ISO8601",
        help="Only evaluate rules effective at this instant",
    )
    p_process.add_argument(
        "--point-in-time",
        action="store_true",
        help="Only evaluate rules effective at the assessment time",
    )
    p_process.add_argument("--json", action="store_true", help="Output structured JSON")
    p_process.set_defaults(func=cmd_process)

    p_reeval = sub.add_parser("reevaluate", help="Re-judge a property's vulnerabilities against current rules")
    p_reeval.add_argument("property_id", type=int, metavar="PROPERTY-ID")
    p_reeval.add_argument("--json", action="store_true", help="Output structured JSON")
    p_reeval.set_defaults(func=cmd_reevaluate)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    try:
        return args.func(args)
    except RulesEngineError as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"  [!] {exc.message}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
