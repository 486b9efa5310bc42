"""
Database Manager - PostgreSQL schema and operations.

Stores the per-instance status cache and the append-only service log of
status transitions.
"""

import asyncpg
import logging
from typing import List, Optional, Sequence, Tuple

from events import ServiceLogEvent, StatusCacheEntry
from migrate import run_migrations

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 50


def clamp_page(limit: int, skip: int) -> Tuple[int, int]:
    """Apply the service log paging rules: limit in 1..50, skip >= 0."""
    if limit <= 0:
        limit = DEFAULT_PAGE_SIZE
    if limit > MAX_PAGE_SIZE:
        limit = MAX_PAGE_SIZE
    if skip < 0:
        skip = 0
    return limit, skip


class DatabaseManager:
    """Manages PostgreSQL database operations for the controller."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    async def ping(self) -> bool:
        """Return True if a trivial query succeeds."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except Exception as e:
            logger.warning(f"Database ping failed: {e}")
            return False

    # ==================== Status Cache ====================

    async def get_instance_status(self, instance_name: str, namespace: str) -> str:
        """
        Get the last recorded status of an instance.

        Returns:
            The cached status, or "" if the instance has never been recorded.
        """
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            status = await conn.fetchval(
                """
                SELECT status FROM instance_status_cache
                WHERE instance_name = $1 AND namespace = $2
                """,
                instance_name,
                namespace,
            )
            return status or ""

    async def get_status_cache_entry(
        self, instance_name: str, namespace: str
    ) -> Optional[StatusCacheEntry]:
        """Get the full status cache row for an instance."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT instance_name, namespace, status, updated_at
                FROM instance_status_cache
                WHERE instance_name = $1 AND namespace = $2
                """,
                instance_name,
                namespace,
            )
            if not row:
                return None
            return StatusCacheEntry(
                instance_name=row["instance_name"],
                namespace=row["namespace"],
                status=row["status"],
                updated_at=row["updated_at"],
            )

    async def set_instance_status(
        self, instance_name: str, namespace: str, status: str
    ) -> None:
        """Upsert the last recorded status of an instance."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO instance_status_cache (instance_name, namespace, status, updated_at)
                VALUES ($1, $2, $3, NOW())
                ON CONFLICT (instance_name, namespace)
                DO UPDATE SET status = EXCLUDED.status, updated_at = EXCLUDED.updated_at
                """,
                instance_name,
                namespace,
                status,
            )

    # ==================== Service Log ====================

    async def insert_service_log(self, event: ServiceLogEvent) -> int:
        """
        Append a transition event to the service log.

        Returns:
            The ID of the inserted row.
        """
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            log_id = await conn.fetchval(
                """
                INSERT INTO service_logs (
                    instance_name, namespace, event_type, from_status,
                    to_status, message, details, timestamp
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING id
                """,
                event.instance_name,
                event.namespace,
                event.event_type.value,
                event.from_status,
                event.to_status,
                event.message,
                event.details,
                event.timestamp,
            )
            return log_id

    async def list_service_logs(
        self,
        is_admin: bool,
        allowed_namespaces: Sequence[str] = (),
        instance_name: str = "",
        namespace: str = "",
        limit: int = DEFAULT_PAGE_SIZE,
        skip: int = 0,
    ) -> Tuple[List[ServiceLogEvent], int]:
        """
        List service log events, newest first.

        Args:
            is_admin: Admins see every namespace.
            allowed_namespaces: Namespaces a non-admin may read when no
                namespace filter is given.
            instance_name: Optional instance filter.
            namespace: Optional namespace filter.
            limit: Page size, defaults to 50 and is capped at 50.
            skip: Offset for pagination.

        Returns:
            Tuple of (events on this page, total matching events).
        """
        self._ensure_connected()
        limit, skip = clamp_page(limit, skip)

        conditions = []
        params: List[object] = []

        if instance_name:
            params.append(instance_name)
            conditions.append(f"instance_name = ${len(params)}")

        if namespace:
            params.append(namespace)
            conditions.append(f"namespace = ${len(params)}")
        elif not is_admin:
            if not allowed_namespaces:
                return [], 0
            params.append(list(allowed_namespaces))
            conditions.append(f"namespace = ANY(${len(params)}::text[])")

        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""

        async with self.pool.acquire() as conn:
            total = await conn.fetchval(
                f"SELECT COUNT(*) FROM service_logs{where}", *params
            )
            rows = await conn.fetch(
                f"""
                SELECT * FROM service_logs{where}
                ORDER BY timestamp DESC, id DESC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                """,
                *params,
                limit,
                skip,
            )
            return [ServiceLogEvent.from_row(row) for row in rows], total
