#!/usr/bin/env python3
"""
Database models and operations for the Feed Sweeper.

All sqlite access goes through DatabaseQueue: callers ``await
db.execute('operation_name', **params)`` and a single worker coroutine runs
the matching method against one connection, so writes are serialised without
explicit locking. Every write is an upsert or partial update keyed by a
stable id.
"""

from os import path, access, R_OK
import json
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, Iterable

from config import config, get_logger
from entities import to_iso, utcnow
from errors import PipelineError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")

SCHEMA_FILE_SIZE_LIMIT = 1024 * 1024

FEED_COLUMNS = (
    "source_id", "url", "type", "active",
    "health_status", "health_reliability_score", "health_last_check", "health_last_success",
    "health_error_count_24h", "health_consecutive_failures", "health_last_error",
    "fetch_interval_minutes", "last_fetched_at", "last_seen_article_date",
    "last_content_hash", "last_etag", "last_modified", "recent_hashes",
)

ARTICLE_COLUMNS = (
    "title", "url", "original_url", "source_id", "content", "image", "summary",
    "lifecycle", "quality_score", "published_at", "guid", "keywords", "category",
    "reading_time", "fetch_error", "last_fetched_at", "lang",
)

# Columns added after the first release, with their DDL
_ARTICLE_MIGRATIONS = {
    "lang": "TEXT NOT NULL DEFAULT 'en'",
    "reading_time": "INTEGER",
    "keywords": "TEXT NOT NULL DEFAULT '[]'",
    "category": "TEXT",
}
_FEED_MIGRATIONS = {
    "recent_hashes": "TEXT NOT NULL DEFAULT '[]'",
    "last_content_hash": "TEXT",
}


class StorageError(PipelineError):
    """Raised by DatabaseQueue.execute when an operation fails."""


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None

        if not feeds_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            _run_migrations(conn)

    except Error as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Add columns introduced after a database was first created."""
    cursor = conn.cursor()
    try:
        for table, migrations in (("articles", _ARTICLE_MIGRATIONS), ("feeds", _FEED_MIGRATIONS)):
            cursor.execute(f"PRAGMA table_info({table})")
            columns = {column[1] for column in cursor.fetchall()}
            for column, ddl in migrations.items():
                if column not in columns:
                    logger.info(f"Adding {column} column to {table} table")
                    cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='logs'")
        if cursor.fetchone() is None:
            logger.info("Creating logs table")
            cursor.execute("""
                CREATE TABLE logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    level TEXT NOT NULL,
                    message TEXT NOT NULL,
                    context TEXT,
                    created_at TEXT NOT NULL
                )
            """)
        conn.commit()
    except Error as e:
        logger.error(f"Error running migrations: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    if file_size > SCHEMA_FILE_SIZE_LIMIT:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {SCHEMA_FILE_SIZE_LIMIT} bytes)")

    with open(schema_path, 'r') as f:
        return f.read()


def _row_to_dict(row: Optional[Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


def _filter_columns(fields: Dict[str, Any], allowed: Iterable[str]) -> Dict[str, Any]:
    allowed = set(allowed)
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown columns: {', '.join(sorted(unknown))}")
    return dict(fields)


class DatabaseQueue:
    """A queue for database operations to ensure serialised access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready = Event()
        self._init_error: Optional[BaseException] = None

    async def start(self) -> None:
        """Start the database worker and wait until the schema is ready."""
        if self.running:
            return

        self.running = True
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if self._init_error is not None:
            error, self._init_error = self._init_error, None
            self._ready.clear()
            self.worker_task = None
            raise StorageError(f"Could not open database at {self.db_path}: {error}")
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting on an operation
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def __aenter__(self) -> "DatabaseQueue":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.debug(f"Using existing database at {self.db_path}")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            initialize_database(self.conn)
        except (Error, OSError, ValueError) as e:
            logger.error(f"Database initialization failed for {self.db_path}: {e}")
            self._init_error = e
            self.running = False
            if self.conn is not None:
                self.conn.close()
                self.conn = None
            return
        finally:
            self._ready.set()

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or not callable(method):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except (Error, ValueError, TypeError, KeyError) as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    if self.conn is not None:
                        self.conn.rollback()
                    self.results[operation_id] = {"error": str(e)}
                except Exception as e:
                    logger.exception(f"Unexpected error in {operation_name}: {e}")
                    if self.conn is not None:
                        self.conn.rollback()
                    self.results[operation_id] = {"error": f"{type(e).__name__}: {e}"}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break
            except Exception as e:
                logger.error(f"Unexpected error in database worker: {e}")

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation."""
        if not self.running or self.conn is None:
            raise StorageError("Database worker is not running")
        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise StorageError(f"Database stopped before {operation_name} completed")
            if "error" in result:
                raise StorageError(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Feed operations
    def upsert_feed(self, feed: Dict[str, Any]) -> bool:
        """Insert or fully replace a feed row, preserving created_at."""
        row = _filter_columns({k: v for k, v in feed.items() if k != "id"}, FEED_COLUMNS)
        now = to_iso(utcnow())
        columns = ["id"] + list(row) + ["created_at", "updated_at"]
        values = [feed["id"]] + list(row.values()) + [now, now]
        assignments = ", ".join(f"{c} = excluded.{c}" for c in list(row) + ["updated_at"])
        cursor = self.conn.cursor()
        cursor.execute(
            f"INSERT INTO feeds ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)}) "
            f"ON CONFLICT(id) DO UPDATE SET {assignments}",
            values,
        )
        self.conn.commit()
        return True

    def seed_feed(self, feed_id: str, source_id: str, url: str, type: str = "rss",
                  active: bool = True, fetch_interval_minutes: Optional[int] = None) -> bool:
        """Register a configured feed; existing rows keep their cache and health state.

        Returns True when a new row was created.
        """
        now = to_iso(utcnow())
        cursor = self.conn.cursor()
        cursor.execute("SELECT 1 FROM feeds WHERE id = ?", (feed_id,))
        exists = cursor.fetchone() is not None
        if exists:
            cursor.execute(
                "UPDATE feeds SET source_id = ?, url = ?, type = ?, fetch_interval_minutes = ?, updated_at = ? WHERE id = ?",
                (source_id, url, type, fetch_interval_minutes, now, feed_id),
            )
        else:
            cursor.execute(
                "INSERT INTO feeds (id, source_id, url, type, active, fetch_interval_minutes, recent_hashes, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, '[]', ?, ?)",
                (feed_id, source_id, url, type, 1 if active else 0, fetch_interval_minutes, now, now),
            )
        self.conn.commit()
        return not exists

    def get_feed(self, feed_id: str) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,))
        return _row_to_dict(cursor.fetchone())

    def list_feeds(self, active_only: bool = False) -> List[Dict[str, Any]]:
        """List feed rows ordered by id; ``active_only`` drops inactive feeds."""
        cursor = self.conn.cursor()
        if active_only:
            cursor.execute("SELECT * FROM feeds WHERE active = 1 ORDER BY id")
        else:
            cursor.execute("SELECT * FROM feeds ORDER BY id")
        return [dict(row) for row in cursor.fetchall()]

    def update_feed(self, feed_id: str, fields: Dict[str, Any]) -> bool:
        """Partial update of a feed row in a single statement."""
        fields = _filter_columns(fields, FEED_COLUMNS)
        if not fields:
            return False
        fields["updated_at"] = to_iso(utcnow())
        assignments = ", ".join(f"{c} = ?" for c in fields)
        cursor = self.conn.cursor()
        cursor.execute(f"UPDATE feeds SET {assignments} WHERE id = ?", list(fields.values()) + [feed_id])
        self.conn.commit()
        return cursor.rowcount > 0

    def reset_feeds(self) -> int:
        """Bring every errored or disabled feed back to a healthy, active state."""
        now = to_iso(utcnow())
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE feeds SET health_status = 'healthy', health_consecutive_failures = 0, "
            "health_error_count_24h = 0, health_last_error = NULL, active = 1, updated_at = ? "
            "WHERE health_status IN ('disabled', 'error')",
            (now,),
        )
        reset = cursor.rowcount
        cursor.execute("UPDATE feeds SET health_consecutive_failures = 0 WHERE active = 1")
        self.conn.commit()
        return reset

    # Article operations
    def upsert_article(self, article: Dict[str, Any]) -> str:
        """Insert or update an article by id.

        A stored published_at is never overwritten and created_at is kept.
        Returns "created" or "updated".
        """
        row = _filter_columns({k: v for k, v in article.items() if k != "id"}, ARTICLE_COLUMNS)
        now = to_iso(utcnow())
        cursor = self.conn.cursor()
        cursor.execute("SELECT 1 FROM articles WHERE id = ?", (article["id"],))
        existed = cursor.fetchone() is not None

        columns = ["id"] + list(row) + ["created_at", "updated_at"]
        values = [article["id"]] + list(row.values()) + [now, now]
        assignments = []
        for column in list(row) + ["updated_at"]:
            if column == "published_at":
                assignments.append("published_at = COALESCE(articles.published_at, excluded.published_at)")
            else:
                assignments.append(f"{column} = excluded.{column}")
        cursor.execute(
            f"INSERT INTO articles ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)}) "
            f"ON CONFLICT(id) DO UPDATE SET {', '.join(assignments)}",
            values,
        )
        self.conn.commit()
        return "updated" if existed else "created"

    def get_article(self, article_id: str) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM articles WHERE id = ?", (article_id,))
        return _row_to_dict(cursor.fetchone())

    def find_articles_by_lifecycle(self, lifecycle: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Oldest-first batch of articles in a lifecycle stage."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM articles WHERE lifecycle = ? ORDER BY created_at ASC, id ASC LIMIT ?",
            (lifecycle, int(limit)),
        )
        return [dict(row) for row in cursor.fetchall()]

    def update_article(self, article_id: str, fields: Dict[str, Any]) -> bool:
        """Partial update; published_at only fills an empty value."""
        fields = _filter_columns(fields, ARTICLE_COLUMNS)
        if "keywords" in fields and isinstance(fields["keywords"], (list, tuple)):
            fields["keywords"] = json.dumps(list(fields["keywords"]))
        if not fields:
            return False
        fields["updated_at"] = to_iso(utcnow())
        assignments = ", ".join(
            "published_at = COALESCE(published_at, ?)" if c == "published_at" else f"{c} = ?"
            for c in fields
        )
        cursor = self.conn.cursor()
        cursor.execute(f"UPDATE articles SET {assignments} WHERE id = ?", list(fields.values()) + [article_id])
        self.conn.commit()
        return cursor.rowcount > 0

    def count_articles(self, lifecycle: Optional[str] = None, source_id: Optional[str] = None) -> int:
        clauses, params = [], []
        if lifecycle:
            clauses.append("lifecycle = ?")
            params.append(lifecycle)
        if source_id:
            clauses.append("source_id = ?")
            params.append(source_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = self.conn.cursor()
        cursor.execute(f"SELECT COUNT(*) FROM articles{where}", params)
        return cursor.fetchone()[0]

    def lifecycle_counts(self) -> Dict[str, int]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT lifecycle, COUNT(*) FROM articles GROUP BY lifecycle")
        return {row[0]: row[1] for row in cursor.fetchall()}

    def delete_orphaned_articles(self, source_ids: List[str]) -> int:
        """Remove articles whose source no longer has an active feed."""
        cursor = self.conn.cursor()
        if source_ids:
            placeholders = ",".join("?" for _ in source_ids)
            cursor.execute(
                f"DELETE FROM articles WHERE source_id NOT IN ({placeholders})",
                list(source_ids),
            )
        else:
            cursor.execute("DELETE FROM articles")
        self.conn.commit()
        return cursor.rowcount

    # Activity log
    def write_log(self, level: str, message: str, context: Optional[Dict[str, Any]] = None) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT INTO logs (level, message, context, created_at) VALUES (?, ?, ?, ?)",
            (level, message, json.dumps(context, default=str) if context else None, to_iso(utcnow())),
        )
        self.conn.commit()
        return True

    def recent_logs(self, limit: int = 50, level: Optional[str] = None) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        if level:
            cursor.execute("SELECT * FROM logs WHERE level = ? ORDER BY id DESC LIMIT ?", (level, int(limit)))
        else:
            cursor.execute("SELECT * FROM logs ORDER BY id DESC LIMIT ?", (int(limit),))
        rows = []
        for row in cursor.fetchall():
            entry = dict(row)
            entry["context"] = json.loads(entry["context"]) if entry.get("context") else None
            rows.append(entry)
        return rows

    def ping(self) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("SELECT 1")
        return cursor.fetchone()[0] == 1
