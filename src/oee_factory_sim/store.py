"""PostgreSQL / TimescaleDB sink for machine events."""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg2
from psycopg2 import pool

from .config import DatabaseConfig
from .events import ProductionEvent, StatusEvent

logger = logging.getLogger(__name__)

INSERT_STATUS_SQL = (
    "INSERT INTO status_events (time, machine_id, status) VALUES (%s, %s, %s)"
)
INSERT_PRODUCTION_SQL = (
    "INSERT INTO production_events (time, machine_id, parts_produced, parts_scrapped) "
    "VALUES (%s, %s, %s, %s)"
)


class StoreError(Exception):
    """Raised when a row could not be written."""


class EventStore:
    """Writes one row per event. Safe to call from many threads at once."""

    def __init__(
        self,
        db_config: DatabaseConfig,
        min_conn: int = 1,
        max_conn: int = 10,
        connection_pool: Optional[pool.AbstractConnectionPool] = None,
    ):
        self.db_config = db_config
        if connection_pool is not None:
            self.pool = connection_pool
        else:
            try:
                self.pool = pool.ThreadedConnectionPool(min_conn, max_conn, db_config.dsn)
            except psycopg2.Error as e:
                raise StoreError(
                    f"Failed to connect to database {db_config.host}:{db_config.port}/"
                    f"{db_config.dbname}: {e}"
                ) from e
            logger.info(
                f"Connected to database {db_config.host}:{db_config.port}/{db_config.dbname}"
            )

    @contextmanager
    def get_connection(self) -> Iterator["psycopg2.extensions.connection"]:
        """Get connection from pool"""
        conn = self.pool.getconn()
        try:
            yield conn
        finally:
            self.pool.putconn(conn)

    def execute(self, sql: str, params: Optional[tuple] = None) -> None:
        """Run one statement in its own transaction."""
        with self.get_connection() as conn:
            try:
                with conn.cursor() as cursor:
                    cursor.execute(sql, params)
                conn.commit()
            except psycopg2.Error as e:
                conn.rollback()
                raise StoreError(str(e).strip()) from e

    def insert_status(self, event: StatusEvent) -> None:
        self.execute(
            INSERT_STATUS_SQL,
            (event.timestamp, event.machine_id, event.status.value),
        )

    def insert_production(self, event: ProductionEvent) -> None:
        self.execute(
            INSERT_PRODUCTION_SQL,
            (event.timestamp, event.machine_id, event.parts_produced, event.parts_scrapped),
        )

    def close(self) -> None:
        """Close all connections"""
        self.pool.closeall()
        logger.info("Database connections closed")
