# core/database.py
import threading
from contextlib import contextmanager, nullcontext
from typing import Iterator, Optional

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, LargeBinary, MetaData,
    String, Table, UniqueConstraint, create_engine, event,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from core.config import Settings, logger as core_logger
from core.errors import StorageError
from core.utils import utc_now

logger = core_logger.getChild("Database")

# Define Table names here for consistency
IMAGES_TABLE = "images"
VARIANTS_TABLE = "image_variants"
USAGES_TABLE = "image_usages"

metadata = MetaData()

images = Table(
    IMAGES_TABLE, metadata,
    Column("id", String(36), primary_key=True),
    Column("file_name", String(255), nullable=False),
    Column("file_type", String(20), nullable=False),
    Column("mime_type", String(100), nullable=False),
    Column("file_size", Integer, nullable=False),
    Column("width", Integer), # NULL for vector images
    Column("height", Integer),
    Column("image_data", LargeBinary, nullable=False),
    Column("is_temporary", Boolean, nullable=False, default=False),
    Column("expires_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utc_now),
    Column("updated_at", DateTime(timezone=True)),
    UniqueConstraint("file_name", "file_type", name="uq_images_filename_type"),
)

image_variants = Table(
    VARIANTS_TABLE, metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("image_id", String(36), ForeignKey(f"{IMAGES_TABLE}.id", ondelete="CASCADE"), nullable=False),
    Column("variant_type", String(50), nullable=False),
    Column("mime_type", String(100), nullable=False),
    Column("width", Integer),
    Column("height", Integer),
    Column("quality", Integer),
    Column("file_size", Integer, nullable=False),
    Column("image_data", LargeBinary, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utc_now),
    UniqueConstraint("image_id", "variant_type", name="uq_variants_image_type"),
)

image_usages = Table(
    USAGES_TABLE, metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("image_id", String(36), ForeignKey(f"{IMAGES_TABLE}.id", ondelete="CASCADE"), nullable=False),
    Column("entity_type", String(50), nullable=False),
    Column("entity_id", String(64), nullable=False),
    Column("usage_type", String(50), nullable=False),
    Column("is_primary", Boolean, nullable=False, default=False),
    Column("sort_order", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utc_now),
    # One primary and one non-primary row per slot; the upsert in link() targets this key
    UniqueConstraint("entity_type", "entity_id", "usage_type", "is_primary", name="uq_usages_slot_primary"),
    Index("idx_usages_image_id", "image_id"),
)


def dialect_insert(conn: Connection, table: Table):
    """Returns an INSERT construct that supports ON CONFLICT DO UPDATE for the connection's dialect."""
    name = conn.dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise StorageError(f"Atomic upsert is not supported on dialect '{name}'")
    return insert(table)


class Database:
    """
    Owns the SQLAlchemy engine and its bounded connection pool.

    Constructed explicitly and handed to each repository, so tests can point
    it at a throwaway SQLite file.
    """

    def __init__(self, url: str, pool_size: int = 5, max_overflow: int = 0,
                 pool_timeout: float = 30.0, echo: bool = False):
        self.url = url
        self.is_sqlite = url.startswith("sqlite")
        engine_kwargs = {"echo": echo}
        self._shared_lock: Optional[threading.RLock] = None
        if self.is_sqlite and (":memory:" in url or url.rstrip("/") == "sqlite:"):
            # A memory database exists per connection, so every caller must share one
            # and transactions on it run one at a time
            engine_kwargs.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
            self._shared_lock = threading.RLock()
        else:
            engine_kwargs.update(pool_size=pool_size, max_overflow=max_overflow, pool_timeout=pool_timeout, pool_pre_ping=True)
            if self.is_sqlite:
                engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": pool_timeout}
        self.engine: Engine = create_engine(url, **engine_kwargs)
        if self.is_sqlite:
            self._configure_sqlite()
        logger.info(f"Database engine created (dialect={self.engine.dialect.name}, pool_size={pool_size}, max_overflow={max_overflow}).")

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            echo=settings.DB_ECHO,
        )

    def _configure_sqlite(self) -> None:
        # pysqlite defers BEGIN until the first write, which lets two readers deadlock
        # when both upgrade. Take the write lock up front and enforce FK cascades.
        @event.listens_for(self.engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(self.engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    def create_all(self) -> None:
        """Creates the image tables if they do not exist."""
        try:
            metadata.create_all(self.engine)
            logger.info(f"Ensured tables: {IMAGES_TABLE}, {VARIANTS_TABLE}, {USAGES_TABLE}")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create image tables: {e}", exc_info=True)
            raise StorageError(f"Failed to create image tables: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """One atomic unit: commits on success, rolls back on any exception."""
        try:
            with self._shared_lock or nullcontext(), self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as e:
            logger.error(f"Storage operation failed and was rolled back: {e}", exc_info=False)
            raise StorageError(f"Storage operation failed: {e}") from e

    @contextmanager
    def scope(self, conn: Optional[Connection] = None) -> Iterator[Connection]:
        """Joins the caller's transaction when one is given, otherwise opens a new one."""
        if conn is not None:
            yield conn
        else:
            with self.transaction() as own_conn:
                yield own_conn

    def dispose(self) -> None:
        self.engine.dispose()
        logger.info("Database engine disposed.")
