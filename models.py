#!/usr/bin/env python3
"""
Database models and operations for the feed commentary service.

This module contains all database-related classes and functions,
providing a clean separation between data access and business logic.

The schema is owned by an explicit, versioned migration list applied once
when the database worker starts (tracked in ``PRAGMA user_version``).
Runtime queries assume the final schema.
"""

from os import path, makedirs
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, Tuple

from config import get_logger
from errors import StorageError
from telemetry import get_tracer, trace_span
from utils import now_ts, iso_timestamp

# Module-specific logger
logger = get_logger("models")
_tracer = get_tracer("db")


# Each entry is (version, statements). Versions are applied in order and never edited once released.
MIGRATIONS: List[Tuple[int, List[str]]] = [
    (1, [
        """
        CREATE TABLE IF NOT EXISTS articles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            url TEXT NOT NULL UNIQUE,
            title TEXT NOT NULL,
            source_name TEXT,
            source_domain TEXT,
            source_url TEXT,
            category TEXT,
            published_date INTEGER,
            created_date INTEGER NOT NULL,
            commentary TEXT,
            commentary_date INTEGER
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_articles_created_date ON articles(created_date)",
    ]),
    (2, [
        "CREATE INDEX IF NOT EXISTS idx_articles_commentary_date ON articles(commentary_date)",
        "CREATE INDEX IF NOT EXISTS idx_articles_category ON articles(category)",
    ]),
]

SCHEMA_VERSION = MIGRATIONS[-1][0]

# Columns returned to callers for a single article
ARTICLE_COLUMNS = (
    "id, url, title, source_name, source_domain, source_url, category, "
    "published_date, created_date, commentary, commentary_date"
)

# Most recent available timestamp first: commentary time, falling back to ingestion time
PUBLISHED_ORDER = "COALESCE(commentary_date, created_date) DESC, id DESC"
# Largest value an SQLite INTEGER column can hold
SQLITE_MAX_INTEGER = 2 ** 63 - 1
HAS_COMMENTARY = "commentary IS NOT NULL AND commentary != ''"


def initialize_database(conn) -> int:
    """Bring the database schema up to date.

    Returns the schema version after migration.
    """
    cursor = conn.cursor()
    try:
        cursor.execute("PRAGMA user_version")
        current = cursor.fetchone()[0]
        if current > SCHEMA_VERSION:
            raise StorageError(
                f"Database schema version {current} is newer than supported version {SCHEMA_VERSION}"
            )
        if current == SCHEMA_VERSION:
            logger.info(f"Database schema is current (version {current})")
            return current

        for version, statements in MIGRATIONS:
            if version <= current:
                continue
            logger.info(f"Applying schema migration {version}")
            for statement in statements:
                cursor.execute(statement)
            # PRAGMA does not accept bound parameters; version is an int from MIGRATIONS
            cursor.execute(f"PRAGMA user_version = {int(version)}")
            conn.commit()
        logger.info(f"Database schema migrated from version {current} to {SCHEMA_VERSION}")
        return SCHEMA_VERSION
    except Error as e:
        conn.rollback()
        logger.error(f"Error initializing database: {e}")
        raise StorageError(f"Schema migration failed: {e}") from e
    finally:
        cursor.close()


def row_to_article(row) -> Optional[Dict[str, Any]]:
    """Convert a database row into the article shape served by the API."""
    if row is None:
        return None
    return {
        'id': row['id'],
        'url': row['url'],
        'title': row['title'],
        'source_name': row['source_name'],
        'source_domain': row['source_domain'] or "",
        'source_url': row['source_url'],
        'category': row['category'],
        'published_at': iso_timestamp(row['published_date']),
        'created_at': iso_timestamp(row['created_date']),
        'commentary': row['commentary'],
        'commentary_at': iso_timestamp(row['commentary_date']),
    }


class DatabaseQueue:
    """A queue for database operations to ensure a single writer per process.

    All operations run serially on one SQLite connection owned by the worker
    coroutine. Failures surface to the awaiting caller as StorageError.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready = Event()
        self._startup_error: Optional[BaseException] = None

    async def start(self) -> None:
        """Start the database worker and wait until the schema is ready."""
        if self.running:
            return

        self.running = True
        self._ready.clear()
        self._startup_error = None
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if self._startup_error is not None:
            self.running = False
            raise StorageError(f"Could not open database {self.db_path}: {self._startup_error}")
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

        self._close()
        logger.info("Database worker stopped")

    def _close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None

        # Wake any waiters so nothing hangs on a stopped worker
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": "Database worker stopped"})
            event.set()
        self.events.clear()

    def _connect(self) -> None:
        directory = path.dirname(path.abspath(self.db_path))
        if directory and not path.isdir(directory):
            makedirs(directory, exist_ok=True)
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        # WAL lets the read path proceed while a stage process is writing
        self.conn.execute("PRAGMA journal_mode = WAL")
        self.conn.execute("PRAGMA synchronous = NORMAL")
        self.conn.execute("PRAGMA busy_timeout = 5000")
        initialize_database(self.conn)

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        try:
            self._connect()
        except (Error, OSError, StorageError) as e:
            logger.error(f"Failed to open database {self.db_path}: {e}")
            self._startup_error = e
            self._ready.set()
            return
        self._ready.set()

        try:
            while self.running:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, f"_op_{operation_name}", None)
                    if method is None:
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    if self.conn is not None:
                        self.conn.rollback()
                    self.results[operation_id] = {"error": f"{operation_name}: {e}"}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()
        except CancelledError:
            logger.debug("Database worker cancelled")
            raise
        finally:
            if self.running:
                # Worker died on its own: fail current and future callers instead of leaving them queued
                logger.error("Database worker exited unexpectedly; marking database unavailable")
                self.running = False
                self._close()

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
        """Execute a database operation on the worker and return its result."""
        if not self.running:
            raise StorageError(f"Database worker is not running (operation {operation_name})")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id, {"error": "No result recorded"})
            if "error" in result:
                raise StorageError(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)
            self.results.pop(operation_id, None)

    # ------------------------------------------------------------------
    # Ingest operations
    # ------------------------------------------------------------------
    def _op_insert_articles(self, articles: List[Dict[str, Any]]) -> int:
        """Insert articles, ignoring URLs that already exist. Returns the inserted count."""
        inserted = 0
        cursor = self.conn.cursor()
        try:
            for article in articles:
                cursor.execute(
                    """
                    INSERT OR IGNORE INTO articles
                        (url, title, source_name, source_domain, source_url, category, published_date, created_date)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        article['url'],
                        article['title'],
                        article.get('source_name'),
                        article.get('source_domain'),
                        article.get('source_url'),
                        article.get('category'),
                        article.get('published_date'),
                        article.get('created_date') or now_ts(),
                    ),
                )
                if cursor.rowcount > 0:
                    inserted += 1
            self.conn.commit()
            return inserted
        finally:
            cursor.close()

    def _op_count_articles(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) FROM articles").fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Summarize operations
    # ------------------------------------------------------------------
    def _op_select_unsummarized(self, limit: int) -> List[Dict[str, Any]]:
        """Newest-first records that still have no commentary."""
        rows = self.conn.execute(
            """
            SELECT id, title, url
            FROM articles
            WHERE commentary IS NULL OR commentary = ''
            ORDER BY created_date DESC, id DESC
            LIMIT ?
            """,
            (int(limit),),
        ).fetchall()
        return [{'id': row['id'], 'title': row['title'], 'url': row['url']} for row in rows]

    def _op_save_commentary(self, article_id: int, commentary: str, commentary_date: Optional[int] = None) -> bool:
        """Attach commentary to a record exactly once.

        Returns False when the record is missing or already has commentary.
        """
        text = (commentary or "").strip()
        if not text:
            raise ValueError("commentary text must not be empty")
        cursor = self.conn.execute(
            """
            UPDATE articles
            SET commentary = ?, commentary_date = ?
            WHERE id = ? AND (commentary IS NULL OR commentary = '')
            """,
            (text, commentary_date or now_ts(), int(article_id)),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Read path operations
    # ------------------------------------------------------------------
    def _op_count_published(self) -> int:
        row = self.conn.execute(f"SELECT COUNT(*) FROM articles WHERE {HAS_COMMENTARY}").fetchone()
        return int(row[0])

    def _op_list_published(self, limit: int, offset: int = 0) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            f"""
            SELECT {ARTICLE_COLUMNS}
            FROM articles
            WHERE {HAS_COMMENTARY}
            ORDER BY {PUBLISHED_ORDER}
            LIMIT ? OFFSET ?
            """,
            (int(limit), max(0, int(offset))),
        ).fetchall()
        return [row_to_article(row) for row in rows]

    def _op_get_published(self, article_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            f"SELECT {ARTICLE_COLUMNS} FROM articles WHERE id = ? AND {HAS_COMMENTARY}",
            (int(article_id),),
        ).fetchone()
        return row_to_article(row)

    def _op_get_stats(self) -> Dict[str, Any]:
        row = self.conn.execute(
            f"""
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN {HAS_COMMENTARY} THEN 1 ELSE 0 END) AS commented,
                   MAX(created_date) AS last_ingested,
                   MAX(commentary_date) AS last_commented
            FROM articles
            """
        ).fetchone()
        total = int(row['total'] or 0)
        commented = int(row['commented'] or 0)
        return {
            'total_articles': total,
            'commented_articles': commented,
            'pending_articles': total - commented,
            'last_ingested_at': iso_timestamp(row['last_ingested']),
            'last_commented_at': iso_timestamp(row['last_commented']),
        }
