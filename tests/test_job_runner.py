"""
Tests for the settlement job runner.
"""
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest

from marketplace_settlement.core.escrow import EscrowReleaseJob
from marketplace_settlement.core.payouts import PayoutBatchJob
from marketplace_settlement.core.reconciliation import ReconciliationEngine, ReconciliationError
from marketplace_settlement.workers import job_runner
from marketplace_settlement.workers.job_runner import (
    JobRunner,
    calculate_next_run_time,
    resolve_jobs,
)


@pytest.fixture
def runner() -> JobRunner:
    escrow = AsyncMock(spec=EscrowReleaseJob)
    escrow.run.return_value = {"released": 1, "released_ids": ["o1"], "failures": []}
    payouts = AsyncMock(spec=PayoutBatchJob)
    payouts.run.return_value = {
        "processed": 0,
        "failed": 0,
        "processed_ids": [],
        "failed_details": [],
        "skipped_ids": [],
    }
    reconciliation = AsyncMock(spec=ReconciliationEngine)
    reconciliation.run.side_effect = ReconciliationError("Failed to fetch Stripe data: down")
    return JobRunner(
        escrow_job=escrow, payout_job=payouts, reconciliation_engine=reconciliation
    )


class TestResolveJobs:
    """--job argument expansion."""

    @pytest.mark.unit
    def test_all_runs_escrow_before_payouts(self) -> None:
        assert resolve_jobs("all") == ["escrow", "payouts", "reconcile"]

    @pytest.mark.unit
    def test_single_job(self) -> None:
        assert resolve_jobs("payouts") == ["payouts"]

    @pytest.mark.unit
    def test_unknown_job(self) -> None:
        with pytest.raises(ValueError, match="Unknown job"):
            resolve_jobs("refunds")


class TestCalculateNextRunTime:
    """Scheduling of the daily run."""

    @pytest.mark.unit
    def test_later_today(self) -> None:
        now = datetime(2025, 1, 15, 1, 30, tzinfo=timezone.utc)
        assert calculate_next_run_time(2, clock=lambda: now) == 30 * 60

    @pytest.mark.unit
    def test_tomorrow_when_hour_has_passed(self) -> None:
        now = datetime(2025, 1, 15, 2, 0, tzinfo=timezone.utc)
        assert calculate_next_run_time(2, clock=lambda: now) == 24 * 60 * 60


class TestJobRunner:
    """Test suite for JobRunner."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_job_does_not_stop_the_others(self, runner: JobRunner) -> None:
        results = await runner.run(["reconcile", "escrow", "payouts"])

        assert results["reconcile"] == {"error": "Failed to fetch Stripe data: down"}
        assert results["escrow"]["released"] == 1
        assert results["payouts"]["processed"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_only_requested_jobs_run(self, runner: JobRunner) -> None:
        await runner.run(["escrow"])

        runner._escrow_job.run.assert_awaited_once()
        runner._payout_job.run.assert_not_awaited()
        runner._reconciliation_engine.run.assert_not_awaited()

    @pytest.mark.unit
    def test_main_once_exit_code_reflects_failures(self, mocker: Any) -> None:
        run_once = mocker.patch.object(
            job_runner,
            "run_once",
            new=AsyncMock(return_value={"escrow": {"released": 0}, "reconcile": {"error": "x"}}),
        )

        assert job_runner.main(["--once"]) == 1
        run_once.assert_awaited_once_with(["escrow", "payouts", "reconcile"])

    @pytest.mark.unit
    def test_main_once_success(self, mocker: Any) -> None:
        mocker.patch.object(
            job_runner, "run_once", new=AsyncMock(return_value={"escrow": {"released": 0}})
        )

        assert job_runner.main(["--once", "--job", "escrow"]) == 0
