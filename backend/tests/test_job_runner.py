"""
Scheduled job runner tests.
"""
import pytest
from unittest.mock import AsyncMock, patch

import job_runner


class TestUsagePeriodRollover:
    @pytest.mark.asyncio
    async def test_reports_rolled_over_count(self):
        summary = {"scanned": 4, "rolled_over": 3, "skipped": 1, "failed": 0}
        with patch(
            "formtier.services.usage_metering.usage_metering_service.reset_all_elapsed_periods",
            AsyncMock(return_value=summary),
        ):
            result = await job_runner.run_usage_period_rollover()

        assert result["count"] == 3
        assert result["summary"] == summary
        assert "3" in result["message"]

    @pytest.mark.asyncio
    async def test_failure_propagates(self):
        with patch(
            "formtier.services.usage_metering.usage_metering_service.reset_all_elapsed_periods",
            AsyncMock(side_effect=RuntimeError("mongo unavailable")),
        ):
            with pytest.raises(RuntimeError):
                await job_runner.run_usage_period_rollover()


class TestSubscriptionLifecycleSweep:
    @pytest.mark.asyncio
    async def test_counts_both_transitions(self):
        summary = {"suspended": 2, "pending_deletion": 1, "failed": 0}
        with patch(
            "formtier.services.subscription_lifecycle.subscription_lifecycle_service.run_lifecycle_sweep",
            AsyncMock(return_value=summary),
        ):
            result = await job_runner.run_subscription_lifecycle_sweep()

        assert result["count"] == 3
        assert result["summary"] == summary
