"""RecycleMart CLI — operator commands for a local marketplace store.

Usage:
    recyclemart status
    recyclemart quote --category plastic --weight 2
    recyclemart list-jobs --status posted
    recyclemart list-jobs --search cardboard
    recyclemart export --output backup.json
    recyclemart import --input backup.json
    recyclemart clear-all --yes

Directories default to config/ and data/ at the repository root and can
be overridden with RECYCLEMART_CONFIG_DIR and RECYCLEMART_DATA_DIR
(read from the environment or a .env file).
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from recyclemart.config import load_config
from recyclemart.models.job import JobStatus, MaterialCategory
from recyclemart.persistence.event_log import EventLog
from recyclemart.persistence.store import FileBackend, LocalStore
from recyclemart.service import MarketplaceService


DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"
DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"


def _make_service(config_dir: Path, data_dir: Path) -> MarketplaceService:
    """Create a MarketplaceService over the on-disk store and event log."""
    data_dir.mkdir(parents=True, exist_ok=True)
    config = load_config(config_dir)
    store = LocalStore(FileBackend(data_dir / "store"), key_prefix=config.key_prefix)
    event_log = EventLog(data_dir / "events.jsonl")
    return MarketplaceService(config, store=store, event_log=event_log)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    stats = service.get_stats()
    analytics = service.analytics()
    _print_json({
        "stats": {
            "total_jobs": stats.total_jobs,
            "active_jobs": stats.active_jobs,
            "completed_today": stats.completed_today,
            "active_collectors": stats.active_collectors,
            "total_rewards_paid": stats.total_rewards_paid,
        },
        "completed_jobs": analytics["completed_jobs"],
        "disputed_jobs": analytics["disputed_jobs"],
        "total_users": analytics["total_users"],
        "total_transactions": analytics["total_transactions"],
        "total_volume": analytics["total_volume"],
        "average_job_reward": analytics["average_job_reward"],
        "jobs_by_category": analytics["jobs_by_category"],
    })
    return 0


def cmd_quote(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    result = service.quote_reward(args.category, args.weight, args.reward)
    if not result.success:
        print(f"Error: {result.errors}", file=sys.stderr)
        return 1
    b = result.data["breakdown"]
    output: dict[str, Any] = {
        "category": b.category.value,
        "weight_kg": b.weight_kg,
        "rate_per_kg": b.rate_per_kg,
        "material_value": b.material_value,
        "convenience_fee": b.convenience_fee,
        "platform_fee": b.platform_fee,
        "reward": b.reward,
        "clamped_to_minimum": b.clamped_to_minimum,
        "collector_net": b.collector_net,
        "reward_fiat": b.reward_fiat,
    }
    if "level" in result.data:
        output["offered_reward_level"] = result.data["level"]
    _print_json(output)
    return 0


def cmd_list_jobs(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    if args.search:
        jobs = service.search_jobs(args.search)
    else:
        jobs = service.list_jobs(
            status=JobStatus(args.status) if args.status else None,
            poster=args.poster,
            collector=args.collector,
        )
    _print_json([job.public_view() for job in jobs])
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    data = service.export_data()
    if args.output:
        args.output.write_text(
            json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8",
        )
        print(f"Exported to {args.output}")
    else:
        _print_json(data)
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    data = json.loads(args.input.read_text(encoding="utf-8"))
    result = service.import_data(data)
    if not result.success:
        print(f"Error: {result.errors}", file=sys.stderr)
        return 1
    print(f"Imported {args.input}")
    return 0


def cmd_clear_all(args: argparse.Namespace) -> int:
    if not args.yes:
        print("Refusing to clear all data without --yes", file=sys.stderr)
        return 1
    service = _make_service(args.config, args.data)
    result = service.clear_all()
    if not result.success:
        print(f"Error: {result.errors}", file=sys.stderr)
        return 1
    print("All marketplace data cleared")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="recyclemart",
        description="RecycleMart — recycling marketplace operator CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(os.environ.get("RECYCLEMART_CONFIG_DIR", DEFAULT_CONFIG)),
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=Path(os.environ.get("RECYCLEMART_DATA_DIR", DEFAULT_DATA)),
        help="Path to data directory (default: data/)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command")

    # status
    sub.add_parser("status", help="Show marketplace stats")

    # quote
    p_quote = sub.add_parser("quote", help="Compute the suggested reward for a pickup")
    p_quote.add_argument(
        "--category", required=True,
        choices=[c.value for c in MaterialCategory],
        help="Material category",
    )
    p_quote.add_argument("--weight", required=True, help="Weight in kg (Decimal)")
    p_quote.add_argument("--reward", help="Offered reward to classify (Decimal)")

    # list-jobs
    p_list = sub.add_parser("list-jobs", help="List jobs")
    p_list.add_argument("--status", choices=[s.value for s in JobStatus])
    p_list.add_argument("--poster", help="Filter by poster address")
    p_list.add_argument("--collector", help="Filter by collector address")
    p_list.add_argument("--search", help="Free-text search (ignores other filters)")

    # export
    p_export = sub.add_parser("export", help="Export all collections as JSON")
    p_export.add_argument("--output", type=Path, help="Write to file instead of stdout")

    # import
    p_import = sub.add_parser("import", help="Replace collections from an export")
    p_import.add_argument("--input", type=Path, required=True, help="Export file")

    # clear-all
    p_clear = sub.add_parser("clear-all", help="Wipe jobs, users, transactions and stats")
    p_clear.add_argument("--yes", action="store_true", help="Confirm the wipe")

    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv(override=False)
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "quote": cmd_quote,
        "list-jobs": cmd_list_jobs,
        "export": cmd_export,
        "import": cmd_import,
        "clear-all": cmd_clear_all,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
