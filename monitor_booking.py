"""CLI entrypoint for the BookWatcher agent."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

import requests
from apscheduler.schedulers.background import BackgroundScheduler

from bookwatcher.alerts import AlertEngine
from bookwatcher.bot import TelegramBot
from bookwatcher.config import Settings, load_settings
from bookwatcher.db import Database, resolve_sqlite_path
from bookwatcher.errors import ConfigurationError, TelegramAPIError
from bookwatcher.notifications import OperatorChannel, TelegramClient, TelegramDispatcher
from bookwatcher.runner import MonitorRunner
from bookwatcher.scheduler import MonitorService
from bookwatcher.scraper import BrowserSession, SnapshotReader
from bookwatcher.templates import format_check_report, format_startup_message

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool, level: str = "INFO") -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    # APScheduler logs every job execution at INFO.
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="BookWatcher booking availability monitor")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--init", action="store_true", help="initialize storage and exit")
    mode.add_argument("--run", action="store_true", help="execute one monitoring cycle now")
    mode.add_argument(
        "--test-notification",
        action="store_true",
        help="check the bot credential and send a test message to operators",
    )
    mode.add_argument(
        "--serve",
        action="store_true",
        help="run the scheduler and the Telegram bot until interrupted",
    )
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    return parser


def check_telegram(client: TelegramClient) -> bool:
    try:
        me = client.get_me()
    except (TelegramAPIError, requests.RequestException) as exc:
        logger.error("Failed to connect to Telegram: %s", exc)
        return False
    logger.info("Telegram bot connected as @%s", me.get("username"))
    return True


def build_runner(
    settings: Settings,
    database: Database,
    session: BrowserSession,
    dispatcher: TelegramDispatcher,
    scheduler: BackgroundScheduler,
) -> MonitorRunner:
    operators = OperatorChannel(dispatcher=dispatcher, chat_ids=settings.operator_chat_ids)
    engine = AlertEngine(scheduler=scheduler, dispatcher=dispatcher, subscribers=database)
    reader = SnapshotReader(
        session,
        timeout_seconds=settings.scan_timeout_seconds,
        screenshots_dir=settings.data_dir,
    )
    return MonitorRunner(database=database, reader=reader, engine=engine, operators=operators)


def serve(
    settings: Settings,
    runner: MonitorRunner,
    client: TelegramClient,
    dispatcher: TelegramDispatcher,
    scheduler: BackgroundScheduler,
) -> int:
    service = MonitorService(
        settings,
        scheduler,
        runner,
        runner.engine,
        runner.operators,
        artifacts_dir=settings.data_dir,
    )
    bot = TelegramBot(
        client=client,
        dispatcher=dispatcher,
        database=runner.database,
        engine=runner.engine,
        runner=runner,
    )
    stop_event = threading.Event()

    def request_stop(signum, _frame) -> None:
        logger.info("Received signal %d, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    runner.operators.notify(format_startup_message())
    service.start()
    logger.info(
        "Monitor is running. Checking every %d minutes.", settings.check_interval_minutes
    )
    try:
        bot.run_forever(stop_event)
    finally:
        service.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = load_settings()
    configure_logging(args.verbose, settings.log_level)

    database = Database(path=resolve_sqlite_path(settings.database_url))

    if args.init:
        database.initialize()
        return 0

    if not (args.run or args.test_notification or args.serve):
        parser.print_help()
        return 1

    try:
        settings.validate()
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return 1

    client = TelegramClient(token=settings.telegram_bot_token)
    dispatcher = TelegramDispatcher(client=client)
    if not check_telegram(client):
        return 1

    if args.test_notification:
        operators = OperatorChannel(dispatcher=dispatcher, chat_ids=settings.operator_chat_ids)
        return 0 if operators.notify(format_startup_message()) else 1

    database.initialize()
    scheduler = BackgroundScheduler()
    session = BrowserSession(settings)
    runner = build_runner(settings, database, session, dispatcher, scheduler)
    try:
        session.start()
        if args.serve:
            return serve(settings, runner, client, dispatcher, scheduler)

        summary = runner.run(trigger="manual")
        for result in summary.results if summary else []:
            logger.info("%s", format_check_report(result.scan).replace("*", ""))
        runner.engine.stop()
        if summary and any(result.error for result in summary.results):
            return 1
        return 0
    finally:
        session.stop()


if __name__ == "__main__":
    sys.exit(main())
