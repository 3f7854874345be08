"""Database connection manager."""

import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING

from mailmirror.core.state_store import StateStore

logger = logging.getLogger(__name__)


SYNC_STATE_COLLECTION = "sync_state"
FOLDERS_COLLECTION = "folders"
FOLDER_PROGRESS_COLLECTION = "folder_sync_progress"
MESSAGES_COLLECTION = "messages"


async def ensure_indexes(db) -> None:
    """Create the indexes the state store relies on. Safe to call repeatedly."""
    await db[FOLDERS_COLLECTION].create_index(
        [("local_path", ASCENDING)], unique=True, name="local_path_unique"
    )
    await db[MESSAGES_COLLECTION].create_index(
        [("immutable_id", ASCENDING)], unique=True, name="immutable_id_unique"
    )
    await db[MESSAGES_COLLECTION].create_index(
        [("folder_path", ASCENDING)], name="folder_path"
    )


class DatabaseManager:
    """Async MongoDB connection manager for the mirror state store."""

    def __init__(self, mongodb_uri: str, database: str):
        self.mongodb_uri = mongodb_uri
        self.database = database
        self.client: Optional[AsyncIOMotorClient] = None
        self.db = None
        self._state_store: Optional[StateStore] = None

    async def connect(self):
        """Establish database connection and make sure indexes exist."""
        try:
            if self.client is None:
                self.client = AsyncIOMotorClient(self.mongodb_uri, tz_aware=True)
                # Test connection
                await self.client.admin.command("ping")

            self.db = self.client[self.database]
            await ensure_indexes(self.db)
            self._state_store = StateStore(self.db)

            logger.info(f"Connected to MongoDB: {self.database}")

        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def disconnect(self):
        """Close database connection."""
        if self.client:
            self.client.close()
            self.client = None
            self.db = None
            self._state_store = None
            logger.info("Disconnected from MongoDB")

    @property
    def state_store(self) -> StateStore:
        if self._state_store is None:
            raise RuntimeError("Database not connected")
        return self._state_store

    async def __aenter__(self) -> "DatabaseManager":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.disconnect()
