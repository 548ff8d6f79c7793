import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Optional, Sequence

from scoretracker.config import Config
from scoretracker.data_models.score_import import ScoreSubmission
from scoretracker.database.database import Database
from scoretracker.services.configuration import ConfigurationService
from scoretracker.services.locks import KeyedLockManager
from scoretracker.services.score_import import ScoreImportService
from scoretracker.services.seed_configurations import get_categories_summary, seed_configurations
from scoretracker.utils.logger import setup_logger
from scoretracker.utils.redis_utils import RedisUtils
from scoretracker.utils.score_exceptions import ConfigurationError, ScoreTrackerException

class ScoreTracker:
    """Wires the database, configuration and services together."""

    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url
        self.db: Optional[Database] = None
        self.config_service: Optional[ConfigurationService] = None
        self.redis_client = None
        self.imports: Optional[ScoreImportService] = None

    async def setup(self):
        self.logger.info("Setting up score tracker...")

        self.db = Database(self.database_url)
        await self.db.initialize()

        self.config_service = ConfigurationService(self.db.async_session)
        await self.config_service.load_all()

        self.redis_client = await RedisUtils.create_redis_client()
        lock_manager = KeyedLockManager(
            timeout=self.config_service.get('locks.timeout_seconds', Config.LOCK_TIMEOUT_SECONDS),
            redis_client=self.redis_client,
        )
        self.imports = ScoreImportService(self.db, self.config_service, lock_manager)
        self.logger.info("Score tracker setup complete")

    async def close(self):
        if self.redis_client is not None:
            await self.redis_client.aclose()
        if self.db:
            await self.db.close()

def _print_json(data):
    print(json.dumps(data, indent=2, default=str))

async def run_command(args) -> int:
    if args.command == 'seed-config':
        db = Database(args.database_url)
        await db.initialize()
        try:
            await seed_configurations(db)
            _print_json(get_categories_summary())
        finally:
            await db.close()
        return 0

    tracker = ScoreTracker(args.database_url)
    await tracker.setup()
    try:
        if args.command == 'init-db':
            print("Database initialized")

        elif args.command == 'load-catalog':
            _print_json(await tracker.db.load_catalog(args.file))

        elif args.command == 'import':
            batch = json.loads(Path(args.file).read_text(encoding='utf-8'))
            summary = await tracker.imports.import_batch(
                user_id=batch['user_id'],
                game=batch['game'],
                playtype=batch['playtype'],
                submissions=[ScoreSubmission.from_dict(s) for s in batch['scores']],
                import_type=batch.get('import_type', 'file/json'),
                service=batch.get('service'),
                assign_sessions=not args.no_sessions,
            )
            _print_json({
                'counts': summary.counts,
                'sessions': summary.session_ids,
                'results': [
                    {
                        'status': r.status.value,
                        'score_id': r.score_id,
                        'chart_id': r.chart_id,
                        'session_id': r.session_id,
                        'reason': r.reason,
                    }
                    for r in summary.results
                ],
            })

        elif args.command == 'consolidate':
            pb = await tracker.imports.consolidation.consolidate(args.user, args.chart)
            _print_json(pb.to_dict() if pb else None)

        elif args.command == 'recalc-chart':
            _print_json(await tracker.imports.reconsolidate_chart(args.chart))

        elif args.command == 'delete-score':
            pb = await tracker.imports.delete_score(args.score)
            _print_json(pb.to_dict() if pb else None)

        elif args.command == 'show-pb':
            pb = await tracker.imports.consolidation.get_personal_best(args.user, args.chart)
            if pb is None:
                print(f"No personal best for user {args.user} on {args.chart}")
                return 1
            _print_json(pb.to_dict())

        elif args.command == 'show-session':
            summary = await tracker.imports.tracker.get_session_summary(args.session)
            _print_json(asdict(summary))

        elif args.command == 'set-config':
            try:
                value = json.loads(args.value)
            except json.JSONDecodeError:
                raise ConfigurationError(args.key, f"value {args.value!r} is not valid JSON") from None
            await tracker.config_service.set(args.key, value, operator_id=args.operator)
            _print_json({args.key: tracker.config_service.get(args.key)})

        elif args.command == 'show-config':
            if args.category:
                _print_json(tracker.config_service.get_by_category(args.category))
            else:
                _print_json(tracker.config_service.effective())

        return 0
    finally:
        await tracker.close()

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scoretracker",
        description="Import rhythm game scores and maintain personal bests and session deltas.",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Async SQLAlchemy URL; defaults to DATABASE_URL from the environment",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables")
    sub.add_parser("seed-config", help="Write default runtime configuration")

    load = sub.add_parser("load-catalog", help="Load songs and charts from JSON")
    load.add_argument("file")

    imp = sub.add_parser("import", help="Import a JSON batch of scores for one user")
    imp.add_argument("file")
    imp.add_argument("--no-sessions", action="store_true", help="Do not assign scores to sessions")

    consolidate = sub.add_parser("consolidate", help="Recompute one personal best")
    consolidate.add_argument("--user", type=int, required=True)
    consolidate.add_argument("--chart", required=True)

    recalc = sub.add_parser("recalc-chart", help="Recompute every personal best on a chart")
    recalc.add_argument("--chart", required=True)

    delete = sub.add_parser("delete-score", help="Delete a score and recompute its personal best")
    delete.add_argument("--score", required=True)

    show_pb = sub.add_parser("show-pb", help="Print a personal best")
    show_pb.add_argument("--user", type=int, required=True)
    show_pb.add_argument("--chart", required=True)

    show_session = sub.add_parser("show-session", help="Print a session and its score deltas")
    show_session.add_argument("--session", type=int, required=True)

    set_config = sub.add_parser("set-config", help="Change a runtime setting")
    set_config.add_argument("key", help="Setting name, e.g. session.gap_minutes")
    set_config.add_argument("value", help="New value as JSON")
    set_config.add_argument("--operator", type=int, default=None, help="Operator id for the audit log")

    show_config = sub.add_parser("show-config", help="Print effective runtime settings")
    show_config.add_argument("--category", default=None)

    return parser

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point"""
    Config.validate()
    args = build_parser().parse_args(argv)
    logger = setup_logger(__name__)

    try:
        return asyncio.run(run_command(args))
    except ScoreTrackerException as e:
        logger.error(f"{args.command} failed: {e}")
        print(e.user_message, file=sys.stderr)
        return 1

if __name__ == "__main__":
    sys.exit(main())
