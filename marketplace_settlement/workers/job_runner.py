"""
Settlement job runner.

Runs the settlement jobs daily at a scheduled hour (e.g., 2 AM UTC) for
deployments without an external HTTP scheduler, or once with ``--once``.
"""
import asyncio
import signal
import sys
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from marketplace_settlement.config import get_settings
from marketplace_settlement.core.clock import Clock, utcnow
from marketplace_settlement.core.escrow import EscrowReleaseJob
from marketplace_settlement.core.payouts import PayoutBatchJob
from marketplace_settlement.core.platform_settings import PlatformSettingsProvider
from marketplace_settlement.core.reconciliation import ReconciliationEngine
from marketplace_settlement.integrations.stripe_client import StripeClient
from marketplace_settlement.monitoring.logging import job_context, setup_logging

logger = structlog.get_logger(__name__)

ESCROW = "escrow"
PAYOUTS = "payouts"
RECONCILE = "reconcile"
ALL = "all"

# Escrow first so freshly released funds are available to that day's payouts
JOB_ORDER = (ESCROW, PAYOUTS, RECONCILE)


class JobRunner:
    """Builds the settlement jobs once and runs them on demand."""

    def __init__(
        self,
        escrow_job: Optional[EscrowReleaseJob] = None,
        payout_job: Optional[PayoutBatchJob] = None,
        reconciliation_engine: Optional[ReconciliationEngine] = None,
    ):
        self._escrow_job = escrow_job
        self._payout_job = payout_job
        self._reconciliation_engine = reconciliation_engine
        self._stripe_client: Optional[StripeClient] = None

    def _stripe(self) -> StripeClient:
        if self._stripe_client is None:
            self._stripe_client = StripeClient()
        return self._stripe_client

    def _runner_for(self, job: str) -> Callable[[], Awaitable[Dict[str, Any]]]:
        if job == ESCROW:
            if self._escrow_job is None:
                self._escrow_job = EscrowReleaseJob(platform_settings=PlatformSettingsProvider())
            return self._escrow_job.run
        if job == PAYOUTS:
            if self._payout_job is None:
                self._payout_job = PayoutBatchJob(stripe_client=self._stripe())
            return self._payout_job.run
        if job == RECONCILE:
            if self._reconciliation_engine is None:
                self._reconciliation_engine = ReconciliationEngine(stripe_client=self._stripe())
            return self._reconciliation_engine.run
        raise ValueError(f"Unknown job: {job}")

    async def run(self, jobs: List[str]) -> Dict[str, Any]:
        """
        Run the named jobs in order.

        A failing job is logged and recorded; later jobs still run.

        Returns:
            Dict[str, Any]: Result or error per job
        """
        results: Dict[str, Any] = {}
        for job in jobs:
            with job_context(job):
                logger.info("settlement_job_started")
                try:
                    results[job] = await self._runner_for(job)()
                    logger.info("settlement_job_finished")
                except Exception as e:
                    logger.error("settlement_job_failed", error=str(e))
                    results[job] = {"error": str(e)}
        return results


def resolve_jobs(job: str) -> List[str]:
    """Expand a --job argument into the jobs to run."""
    if job == ALL:
        return list(JOB_ORDER)
    if job not in JOB_ORDER:
        raise ValueError(f"Unknown job: {job}")
    return [job]


def calculate_next_run_time(target_hour: int = 2, clock: Clock = utcnow) -> float:
    """
    Calculate seconds until next scheduled run.

    Args:
        target_hour: Hour of day to run (24-hour format, UTC)
        clock: Current time source

    Returns:
        float: Seconds until next run
    """
    now = clock()
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)

    # If we've passed today's run time, schedule for tomorrow
    if now >= next_run:
        next_run += timedelta(days=1)

    seconds_until = (next_run - now).total_seconds()

    logger.info(
        "settlement_next_run_scheduled",
        next_run=next_run.isoformat(),
        seconds_until=seconds_until,
    )

    return seconds_until


async def start_job_runner(
    jobs: List[str], target_hour: int = 2, runner: Optional[JobRunner] = None
) -> None:
    """
    Start the job runner.

    Runs the given jobs daily at the specified hour.

    Args:
        jobs: Jobs to run, in order
        target_hour: Hour of day to run (default: 2 AM UTC)
        runner: Optional preconfigured runner
    """
    setup_logging()
    runner = runner or JobRunner()

    logger.info("job_runner_starting", target_hour=target_hour, jobs=jobs)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("job_runner_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            seconds_until = calculate_next_run_time(target_hour)

            # Wait until next run time (with periodic checks for shutdown signal)
            while seconds_until > 0 and running:
                sleep_time = min(seconds_until, 60)
                await asyncio.sleep(sleep_time)
                seconds_until -= sleep_time

            if not running:
                break

            await runner.run(jobs)

    except Exception as e:
        logger.error("job_runner_error", error=str(e))
        raise
    finally:
        logger.info("job_runner_stopped")


async def run_once(jobs: List[str], runner: Optional[JobRunner] = None) -> Dict[str, Any]:
    """Run the jobs a single time and return their results."""
    setup_logging()
    runner = runner or JobRunner()
    return await runner.run(jobs)


def main(argv: Optional[List[str]] = None) -> int:
    """Console entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Settlement job runner")
    parser.add_argument(
        "--job",
        choices=[ESCROW, PAYOUTS, RECONCILE, ALL],
        default=ALL,
        help="Job to run (default: all, in escrow, payouts, reconcile order)",
    )
    parser.add_argument(
        "--hour",
        type=int,
        default=None,
        help="Hour of day (UTC) to run the jobs (0-23); defaults to JOB_RUN_HOUR",
    )
    parser.add_argument("--once", action="store_true", help="Run immediately and exit")
    args = parser.parse_args(argv)

    jobs = resolve_jobs(args.job)

    if args.once:
        results = asyncio.run(run_once(jobs))
        return 1 if any("error" in result for result in results.values()) else 0

    hour = args.hour if args.hour is not None else get_settings().job_run_hour
    if not 0 <= hour <= 23:
        parser.error("--hour must be between 0 and 23")
    asyncio.run(start_job_runner(jobs, target_hour=hour))
    return 0


if __name__ == "__main__":
    sys.exit(main())
