"""Database module for the Passkey Service."""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorCollection,
    AsyncIOMotorDatabase,
)
from pymongo.errors import ConnectionFailure, PyMongoError, ServerSelectionTimeoutError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from passkey_service.config import settings
from passkey_service.managers.logging_manager import get_logger

T = TypeVar("T")

db_logger = get_logger(name="Passkey_Service_Database", prefix="[DATABASE]")
perf_logger = get_logger(name="Passkey_Service_DB_Performance", prefix="[DB_PERFORMANCE]")
health_logger = get_logger(name="Passkey_Service_DB_Health", prefix="[DB_HEALTH]")


class DatabaseManager:
    """MongoDB database manager using Motor (async MongoDB driver)"""

    def __init__(self):
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self._connection_retries = 3
        # Will be set after connect(); True when connected to a replica-set or mongos that supports transactions
        self.transactions_supported: Optional[bool] = None
        self._index_providers: list = []

    def _connection_string(self) -> str:
        if settings.MONGODB_USERNAME and settings.MONGODB_PASSWORD:
            password = settings.MONGODB_PASSWORD.get_secret_value()
            return (
                f"mongodb://{settings.MONGODB_USERNAME}:"
                f"{password}@"
                f"{settings.MONGODB_URL.replace('mongodb://', '')}"
            )
        return settings.MONGODB_URL

    async def connect(self):
        """Connect to MongoDB with retry logic"""
        start_time = time.time()
        db_logger.info("Starting MongoDB connection process")

        for attempt in range(self._connection_retries):
            attempt_start = time.time()
            try:
                db_logger.info("Connection attempt %d/%d to MongoDB", attempt + 1, self._connection_retries)

                self.client = AsyncIOMotorClient(
                    self._connection_string(),
                    serverSelectionTimeoutMS=settings.MONGODB_SERVER_SELECTION_TIMEOUT,
                    connectTimeoutMS=settings.MONGODB_CONNECTION_TIMEOUT,
                    tz_aware=True,
                )
                self.database = self.client[settings.MONGODB_DATABASE]

                ping_start = time.time()
                await self.client.admin.command("ping")
                ping_duration = time.time() - ping_start

                # Replica set (setName) or mongos (msg == 'isdbgrid') -> transactions supported
                hello = await self.client.admin.command({"hello": 1})
                self.transactions_supported = bool(hello.get("setName") or hello.get("msg") == "isdbgrid")
                if not self.transactions_supported:
                    db_logger.warning(
                        "MongoDB deployment does not support transactions; passkey ceremonies will fail to commit"
                    )

                total_duration = time.time() - start_time
                perf_logger.info(
                    "MongoDB connection established successfully in %.3fs (ping: %.3fs)", total_duration, ping_duration
                )
                db_logger.info("Successfully connected to MongoDB database: %s", settings.MONGODB_DATABASE)
                return

            except (ServerSelectionTimeoutError, ConnectionFailure) as e:
                attempt_duration = time.time() - attempt_start
                perf_logger.warning("Connection attempt %d failed after %.3fs", attempt + 1, attempt_duration)
                db_logger.warning(
                    "Failed to connect to MongoDB (attempt %d/%d): %s", attempt + 1, self._connection_retries, e
                )
                if attempt == self._connection_retries - 1:
                    total_duration = time.time() - start_time
                    db_logger.error("All connection attempts failed after %.3fs", total_duration)
                    raise

                backoff_time = 2**attempt
                db_logger.info("Waiting %.1fs before retry (exponential backoff)", backoff_time)
                await asyncio.sleep(backoff_time)

    async def disconnect(self):
        """Disconnect from MongoDB"""
        if self.client is None:
            db_logger.warning("Disconnect called but no active MongoDB connection found")
            return

        self.client.close()
        self.client = None
        self.database = None
        db_logger.info("Successfully disconnected from MongoDB")

    async def health_check(self) -> bool:
        """Check database connection health"""
        if self.client is None:
            health_logger.warning("Health check failed: No database client available")
            return False

        start_time = time.time()
        try:
            await self.client.admin.command("ping")
        except (ServerSelectionTimeoutError, ConnectionFailure) as e:
            health_logger.error("Database health check failed after %.3fs: %s", time.time() - start_time, e)
            return False

        perf_logger.debug("Database health check completed successfully in %.3fs", time.time() - start_time)
        return True

    def get_collection(self, collection_name: str) -> AsyncIOMotorCollection:
        """Get collection from database"""
        if self.database is None:
            raise RuntimeError("Database not connected")
        return self.database[collection_name]

    def register_index_provider(self, provider: Any) -> None:
        """Register an object exposing `ensure_indexes()` to run from create_indexes()."""
        if provider not in self._index_providers:
            self._index_providers.append(provider)

    async def create_indexes(self):
        """Create the indexes every registered store declares."""
        start_time = time.time()
        db_logger.info("Creating indexes for %d registered stores", len(self._index_providers))
        try:
            for provider in self._index_providers:
                await provider.ensure_indexes()
        except PyMongoError as e:
            db_logger.error("Failed to create database indexes after %.3fs: %s", time.time() - start_time, e)
            raise
        perf_logger.info("Database indexes created in %.3fs", time.time() - start_time)

    async def run_in_transaction(
        self,
        callback: Callable[[AsyncIOMotorClientSession], Awaitable[T]],
        operation: str = "transaction",
    ) -> T:
        """
        Run ``callback(session)`` inside a multi-document transaction.

        The driver retries the callback on transient transaction errors (write
        conflicts from a concurrent transaction holding the same document) and
        retries the commit on unknown commit results. Any other exception
        aborts the transaction and propagates unchanged.

        Args:
            callback: Coroutine function receiving the open session
            operation: Name used in log lines

        Returns:
            Whatever the callback returned on the committed attempt
        """
        if self.client is None:
            raise RuntimeError("Database not connected")

        start_time = time.time()
        db_logger.debug("Starting transaction for %s", operation)
        try:
            async with await self.client.start_session() as session:
                result = await session.with_transaction(
                    callback,
                    read_concern=ReadConcern("snapshot"),
                    write_concern=WriteConcern("majority"),
                )
        except Exception as e:
            db_logger.info("Transaction for %s aborted after %.3fs: %s", operation, time.time() - start_time, e)
            raise

        perf_logger.info("Transaction for %s committed in %.3fs", operation, time.time() - start_time)
        return result


# Global database manager instance
db_manager = DatabaseManager()
