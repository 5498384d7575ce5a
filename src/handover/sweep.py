"""Automatic transfer sweep.

AutoTransferSweep runs TransferLifecycleEngine.process_auto_transfers on an
interval inside the API process. SweepJob is the CronJob entrypoint that
runs one sweep and exits:

    python -m src.handover.sweep
"""

import asyncio
import logging
import sys
import time
from typing import Optional

import structlog
from prometheus_client import REGISTRY, push_to_gateway

from src.handover.config import HandoverSettings, get_settings
from src.handover.transfers.engine import TransferLifecycleEngine
from src.handover.transfers.models import SweepResult

logger = structlog.get_logger()


class AutoTransferSweep:
    """Runs the automatic transfer sweep once or on an interval.

    Attributes:
        engine: The lifecycle engine to drive.
        interval_seconds: Delay between sweeps in run_forever.
    """

    def __init__(self, engine: TransferLifecycleEngine, interval_seconds: int = 3600):
        self.engine = engine
        self.interval_seconds = interval_seconds

    async def run_once(self) -> SweepResult:
        """Run a single sweep and log its counters."""
        start_time = time.monotonic()
        result = await self.engine.process_auto_transfers()
        logger.info(
            "Auto transfer sweep completed",
            execution_time=time.monotonic() - start_time,
            **result.model_dump(),
        )
        return result

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Sweep every interval until stop_event is set.

        A failed sweep is logged and the loop waits for the next interval.
        """
        logger.info("Starting periodic auto transfer sweep", interval=self.interval_seconds)
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error("Auto transfer sweep failed", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Periodic auto transfer sweep stopped")


class SweepJob:
    """CronJob wrapper: wires the engine, runs one sweep, reports an exit code."""

    def __init__(self, settings: Optional[HandoverSettings] = None):
        self.settings = settings or get_settings()

    async def run(self) -> int:
        """Execute one sweep.

        Returns:
            0 on success, 1 if the sweep failed or any sale failed.
        """
        # Imported here because main imports this module
        from src.handover.github.client import GitHubClient
        from src.handover.main import build_engine
        from src.handover.transfers.repository import PostgresDatabase

        database = PostgresDatabase(self.settings.database_url)
        github_client = GitHubClient(
            base_url=self.settings.github_base_url,
            max_retries=self.settings.github_max_retries,
            timeout=self.settings.github_timeout_seconds,
        )

        try:
            logger.info("Starting auto transfer sweep job")
            await database.connect()
            engine = build_engine(self.settings, database, github_client)
            result = await AutoTransferSweep(engine).run_once()
            await engine.wait_for_notifications()
            self._push_metrics()

            if result.failed > 0:
                logger.warning("Sweep completed with failures", failed=result.failed)
                return 1
            return 0
        except Exception as e:
            logger.error("Auto transfer sweep job failed", error=str(e), exc_info=True)
            return 1
        finally:
            await github_client.close()
            await database.disconnect()

    def _push_metrics(self) -> None:
        gateway_url = self.settings.prometheus_gateway_url
        if gateway_url:
            try:
                push_to_gateway(gateway_url, job="handover-sweep", registry=REGISTRY)
                logger.debug("Metrics pushed to gateway", gateway_url=gateway_url)
            except Exception as e:
                logger.warning("Failed to push metrics", error=str(e))


def configure_logging() -> None:
    """Configure structlog JSON output on top of stdlib logging."""
    logging.basicConfig(level=logging.INFO, format="%(message)s", stream=sys.stdout)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


async def main() -> None:
    """CronJob entrypoint."""
    configure_logging()
    exit_code = await SweepJob().run()
    sys.exit(exit_code)


if __name__ == "__main__":
    asyncio.run(main())
