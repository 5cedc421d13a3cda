"""Cron worker entry point for the automation orchestrator.

Runs one of the periodic jobs either once (for an external scheduler) or in a
loop (as a long-running service):

    python -m automation.workers.cron_worker poll
    python -m automation.workers.cron_worker auto-run --loop 300

Architecture Pattern:
    - Stateless ticks: every tick reads and writes the shared database
    - Graceful Shutdown: SIGTERM/SIGINT finish the current tick, then exit

Exit Codes:
    0: Successful run / shutdown
    1: Fatal error (configuration invalid, database unreachable)
"""

import argparse
import asyncio
import signal
import sys

from automation.clients.registry import ProviderRegistry
from automation.config import get_database_url, get_poll_interval
from automation.database import engine, get_session_factory
from automation.services.auto_scheduler import AutoScheduler
from automation.services.run_coordinator import RunCoordinator
from automation.services.status_poller import StatusPoller
from automation.utils.logging import configure_logging, get_logger

log = get_logger(__name__)

COMMANDS = ("auto-run", "poll")

# Shutdown flag (set by SIGTERM handler)
shutdown_requested = False


def signal_handler(signum: int, frame: object) -> None:
    """Request shutdown after the current tick.

    Args:
        signum: Signal number (SIGTERM = 15, SIGINT = 2)
        frame: Current stack frame (unused)
    """
    global shutdown_requested
    log.info(
        "shutdown_signal_received",
        signal=signum,
        signal_name=signal.Signals(signum).name,
    )
    shutdown_requested = True


async def run_tick(command: str, providers: ProviderRegistry) -> dict[str, int]:
    """Run one tick of command and return its counters."""
    session_factory = get_session_factory()
    coordinator = RunCoordinator(providers, session_factory)

    if command == "poll":
        summary = await StatusPoller(
            providers, session_factory, dispatcher=coordinator.dispatcher
        ).poll()
        return {
            "checked": summary.checked,
            "completed": summary.completed,
            "failed": summary.failed,
            "errors": summary.errors,
        }

    if command == "auto-run":
        results = await AutoScheduler(coordinator, session_factory).tick()
        return {
            "channels": len(results),
            "started": sum(1 for r in results if r.outcome == "started"),
            "errors": sum(1 for r in results if r.outcome == "error"),
        }

    raise ValueError(f"Unknown command: {command}")


async def worker_main_loop(command: str, loop_interval: int | None) -> None:
    """Run ticks until done (single tick) or until shutdown is requested.

    A failing tick is logged; in loop mode the next tick still runs.
    """
    providers = ProviderRegistry.from_environment()
    try:
        while True:
            try:
                counters = await run_tick(command, providers)
                log.info("cron_tick_completed", command=command, **counters)
            except Exception as e:
                log.error(
                    "cron_tick_failed",
                    command=command,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                if loop_interval is None:
                    raise

            if loop_interval is None:
                return

            # Sleep in 1s slices so a shutdown signal is honored quickly
            for _ in range(loop_interval):
                if shutdown_requested:
                    return
                await asyncio.sleep(1)
            if shutdown_requested:
                return
    finally:
        await providers.close()
        if engine is not None:
            await engine.dispose()
        log.info("cron_worker_shutdown", command=command)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Automation orchestrator cron jobs")
    parser.add_argument("command", choices=COMMANDS, help="Job to run")
    parser.add_argument(
        "--loop",
        nargs="?",
        type=int,
        const=-1,
        default=None,
        metavar="SECONDS",
        help="Keep running, sleeping SECONDS between ticks (default: POLL_INTERVAL_SECONDS)",
    )
    args = parser.parse_args(argv)
    if args.loop == -1:
        args.loop = get_poll_interval()
    return args


def main(argv: list[str] | None = None) -> None:
    """Cron worker entry point."""
    configure_logging()
    args = parse_args(argv)

    try:
        get_database_url()
    except ValueError as e:
        log.error("configuration_load_failed", error=str(e))
        sys.exit(1)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        asyncio.run(worker_main_loop(args.command, args.loop))
    except KeyboardInterrupt:
        log.info("cron_worker_interrupted_by_user")
    except Exception as e:
        log.error("cron_worker_fatal_error", error=str(e), exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
