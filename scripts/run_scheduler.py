"""AdHarvest Scheduler Runner.

Usage:
    python scripts/run_scheduler.py [--run-now]

Environment variables:
    HARVEST_INTERVAL_HOURS         -- 활성 스케줄 실행 간격 (default: 6)
    HEALTH_CHECK_INTERVAL_MINUTES  -- Graph API 헬스체크 간격 (default: 30)
    ENABLE_HEALTH_CHECK            -- 0이면 헬스체크 비활성

Ctrl+C or SIGTERM for graceful shutdown.
"""

import argparse
import asyncio
import os
import signal
import sys
from pathlib import Path

_root = str(Path(__file__).resolve().parent.parent)
sys.path.insert(0, _root)
os.chdir(_root)

from dotenv import load_dotenv  # noqa: E402
load_dotenv(Path(_root) / ".env")

from loguru import logger  # noqa: E402
logger.remove()
logger.add(sys.stderr, level="INFO", format="{time:HH:mm:ss} | {level:<7} | {message}")

_logs_dir = Path(_root) / "logs"
_logs_dir.mkdir(exist_ok=True)
logger.add(
    str(_logs_dir / "scheduler_{time:YYYY-MM-DD}.log"),
    rotation="1 day",
    retention="7 days",
    level="DEBUG",
    encoding="utf-8",
)

from database import init_db  # noqa: E402
from scheduler.scheduler import HarvestScheduler  # noqa: E402


_scheduler: HarvestScheduler | None = None
_shutdown_event: asyncio.Event | None = None


def _handle_signal(sig, _frame):
    """Graceful shutdown on SIGINT / SIGTERM."""
    sig_name = signal.Signals(sig).name
    logger.info("Received {}, shutting down...", sig_name)
    if _scheduler is not None:
        try:
            _scheduler.stop()
        except RuntimeError as exc:
            # 아직 start 전
            logger.debug("scheduler stop skipped: {}", exc)
    if _shutdown_event is not None:
        _shutdown_event.set()


async def main(run_now: bool = False):
    global _scheduler, _shutdown_event

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    await init_db()
    logger.info("DB initialized")

    _scheduler = HarvestScheduler()
    _scheduler.setup_schedules()

    if run_now:
        await _scheduler.run_all_schedules()

    _scheduler.start()

    _shutdown_event = asyncio.Event()
    logger.info("Scheduler running. Ctrl+C to stop.")
    await _shutdown_event.wait()

    await _scheduler.recorder.drain()
    logger.info("Scheduler stopped.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="AdHarvest scheduler")
    parser.add_argument("--run-now", action="store_true", help="시작 직후 활성 스케줄 1회 실행")
    args = parser.parse_args()
    asyncio.run(main(run_now=args.run_now))
