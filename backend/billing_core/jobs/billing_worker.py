"""
Billing sweep worker.

Runs the inbox, outbox, retry and cleanup sweeps until SIGTERM/SIGINT, then
drains in-flight sweeps before exiting.

Run as: python -m billing_core.jobs.billing_worker

Configuration: see billing_core.config.settings.
"""

import logging
import signal
import sys

from billing_core.config.settings import get_settings
from billing_core.database.session import get_session_factory
from billing_core.jobs.scheduler import SweepScheduler
from billing_core.jobs.sweeps import build_sweep_jobs
from billing_core.outbox.sinks import build_sink

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 60


def build_scheduler(session_factory=None, settings=None, sink=None) -> SweepScheduler:
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    sink = sink or build_sink(settings)
    return SweepScheduler(build_sweep_jobs(session_factory, settings, sink))


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings = get_settings()
    scheduler = build_scheduler(settings=settings)

    def _handle_signal(signum, frame):
        logger.info("Shutdown signal received", extra={"signal": signum})
        scheduler.stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "Billing worker started",
        extra={
            "providers": list(settings.enabled_providers),
            "outbox_batch_size": settings.outbox_batch_size,
            "outbox_sink": settings.outbox_sink,
        },
    )
    scheduler.start()

    # Wake periodically so signal handlers run promptly on the main thread.
    while not scheduler.stop_event.wait(1.0):
        pass

    scheduler.stop(timeout=SHUTDOWN_TIMEOUT_SECONDS)
    logger.info("Billing worker stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
