# src/main.py
"""
The main entry point for the analysis pipeline. Acts as a launcher for
running the scheduler service or a single operation from the command line.
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
import traceback
from datetime import date, datetime
from uuid import uuid4

if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Core infrastructure imports
from core.config.configuration_manager import ConfigurationManager, SystemConfig
from core.errors import ErrorHandler
from core.logging.system_logger import SystemLogger, JsonFormatter

# Pipeline components
from storage.daily_store import DailyStore
from services.log_collector import LogCollector
from services.log_query_service import LogQueryService
from analysis.analysis_client import AnalysisClient
from orchestrator.orchestrator import AnalysisOrchestrator

DEFAULT_CONFIG_PATH = "config/system_default.yaml"

shutdown_event = asyncio.Event()


def graceful_shutdown_handler(signum, frame):
    """Signal handler to initiate a graceful async shutdown."""
    print(f"\nShutdown signal {signum} received. Initiating graceful shutdown...")
    shutdown_event.set()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Launcher for the error log analysis pipeline.")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to the base YAML configuration.")
    subparsers = parser.add_subparsers(dest="mode", required=True)

    subparsers.add_parser("serve", help="Run the daily scheduler until SIGINT/SIGTERM.")

    run_parser = subparsers.add_parser("run", help="Run the analysis once for one day.")
    run_parser.add_argument("--date", type=date.fromisoformat, required=True, help="Partition day, YYYY-MM-DD.")

    collect_parser = subparsers.add_parser("collect", help="Ingest a JSON array of logs.")
    collect_parser.add_argument("file", help="Path to a JSON file holding an array of log records.")

    stats_parser = subparsers.add_parser("stats", help="Print statistics as JSON.")
    stats_parser.add_argument("--from", dest="from_date", type=datetime.fromisoformat, default=None)
    stats_parser.add_argument("--to", dest="to_date", type=datetime.fromisoformat, default=None)
    return parser


def load_settings(config_path: str, error_handler: ErrorHandler) -> SystemConfig:
    """Three-phase configuration load with a temporary startup logger."""
    config_manager = ConfigurationManager(config_path)
    partial_context = config_manager.get_partial_ambient_context()
    partial_context["component_name"] = f"Main-{os.getpid()}"
    temp_logger = SystemLogger(logging.getLogger("startup"), "TEXT", partial_context)
    config_manager.set_core_services(temp_logger, error_handler)
    config_manager.load_environment_overrides()
    config_manager.finalize()
    return config_manager.settings


def configure_logging(settings: SystemConfig) -> SystemLogger:
    logging.basicConfig(level=settings.logging.level.upper(),
                        format='%(asctime)s - %(levelname)s - %(message)s', force=True)

    if settings.logging.file and settings.logging.file.enabled:
        log_dir = os.path.dirname(settings.logging.file.path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        path_root, path_ext = os.path.splitext(settings.logging.file.path)
        file_handler = logging.FileHandler(f"{path_root}_{timestamp}{path_ext}")
        file_handler.setLevel(settings.logging.file.level.upper())
        if settings.logging.file.format.upper() == "JSON":
            file_handler.setFormatter(JsonFormatter())
        else:
            file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        logging.getLogger().addHandler(file_handler)

    ambient_context = {
        "component_name": settings.system.component_name,
        "machine_name": settings.system.machine_name,
    }
    return SystemLogger(logging.getLogger("pipeline"), log_format=settings.logging.format,
                        ambient_context=ambient_context)


async def run_serve_mode(orchestrator: AnalysisOrchestrator, logger: SystemLogger, base_log_context):
    logger.info("Starting scheduler service...", **base_log_context)
    if not await orchestrator.is_healthy():
        raise SystemExit("Daily Store health check failed during initialization")

    await orchestrator.start_async()

    signal.signal(signal.SIGINT, graceful_shutdown_handler)
    signal.signal(signal.SIGTERM, graceful_shutdown_handler)

    while not shutdown_event.is_set() and not orchestrator.is_shutting_down:
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=0.5)
        except asyncio.TimeoutError:
            continue

    await orchestrator.shutdown_async()
    logger.info("Scheduler service shutdown complete", **base_log_context)


async def main(argv=None) -> int:
    """The main asynchronous entry point."""
    args = build_parser().parse_args(argv)
    error_handler = ErrorHandler()
    logger = None

    try:
        settings = load_settings(args.config, error_handler)
        logger = configure_logging(settings)
        error_handler.logger = logger.logger

        base_log_context = {"trace_id": f"startup_{uuid4().hex}"}
        logger.info(f"System starting up in {args.mode.upper()} mode.", **base_log_context)

        store = DailyStore(settings.file_storage, logger, error_handler)

        if args.mode == "collect":
            with open(args.file, 'r', encoding='utf-8') as f:
                payload = json.load(f)
            collector = LogCollector(store, settings.performance, logger, error_handler)
            return 0 if await collector.collect_logs_async(payload) else 1

        if args.mode == "stats":
            query_service = LogQueryService(store, settings.file_storage, logger, error_handler)
            statistics = await query_service.get_log_statistics(args.from_date, args.to_date)
            print(json.dumps(statistics.model_dump(by_alias=True, mode="json"), indent=2))
            return 0

        client = AnalysisClient(settings.analysis_service, logger, error_handler)
        orchestrator = AnalysisOrchestrator(settings, store, client, logger, error_handler)

        if args.mode == "run":
            summary = await orchestrator.run_for_day(args.date)
            print(json.dumps(summary.to_dict(), indent=2))
            return 0 if summary.status in ("COMPLETED", "COMPLETED_WITH_FAILURES") else 1

        await run_serve_mode(orchestrator, logger, base_log_context)
        return 0

    except SystemExit as e:
        (logger or SystemLogger(logging.getLogger(__name__), "TEXT", {})).warning(
            f"System exiting due to initialization failure: {e}")
        return 1
    except Exception as e:
        error = error_handler.handle_error(e, "main")
        print(f"FATAL: {error}", file=sys.stderr)
        return 1
    finally:
        if logger:
            logger.info("System shutdown complete.", trace_id=f"shutdown_{uuid4().hex}")


def cli():
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    try:
        cli()
    except KeyboardInterrupt:
        print("\nApplication shutdown.")
    except Exception as e:
        print("=" * 80, file=sys.stderr)
        print("FATAL, UNHANDLED EXCEPTION REACHED TOP-LEVEL.", file=sys.stderr)
        print(f"Error: {e}", file=sys.stderr)
        traceback.print_exc(file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        sys.exit(1)
