from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            # tz_aware so period and grace boundaries compare against aware UTC datetimes
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for metering, lifecycle sweeps and archival."""
        try:
            # One metering row and one subscription row per account; the unique
            # index is what makes the lazy-create upserts race-safe
            await self.db.usage_metrics.create_index("account_id", unique=True)
            await self.db.usage_metrics.create_index("period_end")  # rollover sweep

            # Per-form submission counters, one row per form per period
            await self.db.form_usage.create_index(
                [("account_id", 1), ("form_id", 1), ("period_start", 1)], unique=True
            )
            await self.db.form_usage.create_index([("account_id", 1), ("period_start", 1), ("submissions_count", -1)])

            await self.db.subscriptions.create_index("account_id", unique=True)
            await self.db.subscriptions.create_index("subscription_id", unique=True)
            await self.db.subscriptions.create_index([("status", 1), ("grace_ends_at", 1)])
            await self.db.subscriptions.create_index([("status", 1), ("suspended_at", 1)])
            try:
                await self.db.subscriptions.create_index("provider_customer_id", unique=True, sparse=True)
            except Exception:
                pass  # Index may already exist with different options

            # Forms - active/archived listing in downgrade order
            await self.db.forms.create_index([("account_id", 1), ("archived_at", 1), ("created_at", 1)])
            await self.db.forms.create_index("form_id", unique=True)

            await self.db.formtier_audit_logs.create_index([("account_id", 1), ("created_at", -1)])
            await self.db.formtier_audit_logs.create_index([("action", 1), ("created_at", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()
