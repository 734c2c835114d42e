#!/usr/bin/env python3
"""
BoondManager Sync command line

    python cli.py sync [--timeout 600]
    python cli.py quality --env production
    python cli.py export --env sandbox --format csv --entity candidates --clean
    python cli.py dictionary --env sandbox --refresh
    python cli.py serve --port 8004
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from boond_client import BoondManagerClient, fetch_snapshot
from config import load_config, setup_logging
from dictionary_cache import DictionaryCache
from entities import Environment, EntityType
from errors import BoondError, ConfigurationError, SyncAborted
from export_service import EXPORT_FORMATS, ExportService, export_filename
from quality import QualityAnalyzer
from sync_engine import SyncEngine

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="BoondManager sync and data quality")
    parser.add_argument("--config", help="Path to config.yaml (default: BOOND_CONFIG or ./config.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Copy production into the sandbox")
    sync.add_argument("--timeout", type=float, help="Stop starting new records after this many seconds")

    quality = sub.add_parser("quality", help="Analyze data quality of one environment")
    quality.add_argument("--env", choices=[e.value for e in Environment], required=True)
    quality.add_argument("--output", help="Write the JSON report here instead of stdout")

    export = sub.add_parser("export", help="Export records to JSON or CSV")
    export.add_argument("--env", choices=[e.value for e in Environment], required=True)
    export.add_argument("--format", choices=EXPORT_FORMATS, default="json")
    export.add_argument("--clean", action="store_true", help="Normalize names, emails, phones and dates")
    export.add_argument("--entity", help="Entity type (candidates, companies, ...); default all")
    export.add_argument("--output", help="Output file (default: <entity_or_all>_<env>_<date>.<format>)")

    dictionary = sub.add_parser("dictionary", help="Show the application dictionary")
    dictionary.add_argument("--env", choices=[e.value for e in Environment], required=True)
    dictionary.add_argument("--refresh", action="store_true")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8004)

    return parser


def _print_json(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        cfg = load_config(args.config)
    except ConfigurationError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 2

    setup_logging(cfg.log_settings.get("level", "INFO"), cfg.log_settings.get("file"))

    if args.command == "serve":
        import app
        app.init_services(cfg)
        app.start_server(args.host, args.port)
        return 0

    env = Environment(args.env) if getattr(args, "env", None) else None

    try:
        if args.command == "sync":
            engine = SyncEngine(
                BoondManagerClient.from_config(cfg, Environment.PRODUCTION),
                BoondManagerClient.from_config(cfg, Environment.SANDBOX),
                workers=cfg.workers,
            )
            try:
                result = engine.run(timeout=args.timeout)
            except SyncAborted as e:
                if e.result is not None:
                    _print_json(e.result.to_dict())
                raise
            _print_json(result.to_dict())
            return 0 if result.failed_records == 0 and not result.cancelled else 1

        client = BoondManagerClient.from_config(cfg, env)

        if args.command == "quality":
            report = QualityAnalyzer().analyze(fetch_snapshot(client)).to_dict()
            if args.output:
                Path(args.output).write_text(json.dumps(report, ensure_ascii=False, indent=2), encoding="utf-8")
                print(f"✓ Report written to {args.output}: {report['summary']}")
            else:
                _print_json(report)
            return 0

        if args.command == "export":
            entity_type = EntityType.parse(args.entity) if args.entity and args.entity != "all" else None
            snapshot = fetch_snapshot(client, [entity_type] if entity_type else None)
            content = ExportService().export(snapshot, fmt=args.format, clean=args.clean, entity=entity_type)
            output = args.output or export_filename(entity_type, env.value, args.format)
            Path(output).write_bytes(content)
            print(f"✓ Exported {sum(snapshot.stats.values())} records to {output}")
            return 0

        if args.command == "dictionary":
            cache = DictionaryCache({env: client.fetch_dictionary}, ttl=cfg.dictionary_ttl)
            _print_json(cache.get(env, force_refresh=args.refresh).to_dict())
            return 0

    except ValueError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 2
    except BoondError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"❌ {e}", file=sys.stderr)
        return 1

    return 2


if __name__ == "__main__":
    sys.exit(main())
