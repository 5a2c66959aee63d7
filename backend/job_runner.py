"""
Shared job runner for scheduled background jobs.
Used by the server scheduler and by manual admin runs.
Each run_* returns a dict with "message" and "count".
"""
import logging

logger = logging.getLogger(__name__)


async def run_usage_period_rollover():
    try:
        from formtier.services.usage_metering import usage_metering_service
        summary = await usage_metering_service.reset_all_elapsed_periods()
        count = summary["rolled_over"]
        logger.info(f"Usage period rollover job completed: {count} accounts rolled over")
        return {
            "message": f"Usage periods rolled over: {count} ({summary['failed']} failed)",
            "count": count,
            "summary": summary,
        }
    except Exception as e:
        logger.error(f"Usage period rollover job failed: {e}")
        raise


async def run_subscription_lifecycle_sweep():
    try:
        from formtier.services.subscription_lifecycle import subscription_lifecycle_service
        summary = await subscription_lifecycle_service.run_lifecycle_sweep()
        count = summary["suspended"] + summary["pending_deletion"]
        logger.info(
            f"Subscription lifecycle job completed: {summary['suspended']} suspended, "
            f"{summary['pending_deletion']} pending deletion"
        )
        return {
            "message": (
                f"Subscriptions suspended: {summary['suspended']}, "
                f"flagged for deletion: {summary['pending_deletion']}"
            ),
            "count": count,
            "summary": summary,
        }
    except Exception as e:
        logger.error(f"Subscription lifecycle job failed: {e}")
        raise
