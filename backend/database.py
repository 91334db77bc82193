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
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
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
        """Create MongoDB indexes for portal lookups.

        Client records are keyed by canonical identity in `_id`, so they need
        no extra unique index.
        """
        try:
            try:
                await self.db.portal_users.create_index("auth_email", unique=True)
            except Exception:
                pass  # Index may already exist with different options
            await self.db.portal_users.create_index("portal_user_id", unique=True)

            # Signature lookups by request id (sign/cancel filters)
            await self.db.clients.create_index("signatureRequests.id")

            # Signed-out tokens, kept until they would have expired
            await self.db.revoked_sessions.create_index("expires_at", expireAfterSeconds=0)

            # Audit log indexes - for timeline queries
            await self.db.audit_logs.create_index([("client_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

