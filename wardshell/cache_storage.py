"""SQLite-backed named cache stores for request/response snapshots."""

import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path

from .models import Request, Response

logger = logging.getLogger(__name__)


class CacheError(Exception):
    """Raised when a cache store operation fails."""

    pass


# Headers that describe the original transfer, not the stored body.
_UNSTORED_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "transfer-encoding",
        "content-encoding",
        "content-length",
        "set-cookie",
    }
)


def _row_to_response(row: sqlite3.Row) -> Response:
    return Response(
        status=row["status"],
        body=bytes(row["body"]),
        headers=json.loads(row["headers"]),
        status_text=row["status_text"],
        url=row["url"],
    )


def _storable_headers(headers: dict[str, str]) -> dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in _UNSTORED_HEADERS}


class CacheStore:
    """One named cache store.

    Maps a request identity (method + absolute URL) to a response snapshot.
    Entries are only ever upserted; a store is evicted as a whole.
    """

    def __init__(self, storage: "CacheStorage", name: str) -> None:
        self._storage = storage
        self.name = name

    def __repr__(self) -> str:
        return f"CacheStore({self.name!r})"

    def match(self, request: Request) -> Response | None:
        """Return the stored response for this request, or None if absent."""
        return self._storage._match_in(self.name, request)

    def put(self, request: Request, response: Response) -> None:
        """Store a response for a request, replacing any previous entry.

        Raises:
            CacheError: If the request is not a GET or the write fails.
        """
        self._storage._put_many(self.name, [(request, response)])

    def add_all(self, requests: Iterable[Request], fetch: Callable[[Request], Response]) -> None:
        """Fetch every request and store all responses, or none of them.

        Every response must be 2xx. Nothing is written unless every fetch succeeds.

        Raises:
            CacheError: If any response is not OK or the write fails.
            NetworkError: If any fetch fails.
        """
        pairs: list[tuple[Request, Response]] = []
        for request in requests:
            response = fetch(request)
            if not response.ok:
                raise CacheError(f"Request for {request.url} returned status {response.status}")
            pairs.append((request, response))

        self._storage._put_many(self.name, pairs)

    def keys(self) -> list[str]:
        """Return the URLs stored in this store, in insertion order."""
        return self._storage._keys_in(self.name)


class CacheStorage:
    """The set of named cache stores, persisted in one SQLite database.

    Thread-safe: a single lock serialises access to the shared connection.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def open(self, name: str) -> CacheStore:
        """Return the store with this name, creating it if it does not exist."""
        if not name:
            raise CacheError("Cache name cannot be empty")
        with self._lock:
            try:
                self._ensure_store(name)
                self._conn.commit()
            except sqlite3.Error as e:
                raise CacheError(f"Failed to open cache '{name}': {e}")
        return CacheStore(self, name)

    def has(self, name: str) -> bool:
        """Check whether a store with this name exists."""
        with self._lock:
            cursor = self._conn.execute("SELECT 1 FROM cache_stores WHERE name = ?", (name,))
            return cursor.fetchone() is not None

    def keys(self) -> list[str]:
        """Return the names of all stores in creation order."""
        with self._lock:
            cursor = self._conn.execute("SELECT name FROM cache_stores ORDER BY id")
            return [row["name"] for row in cursor.fetchall()]

    def delete(self, name: str) -> bool:
        """Delete a store and all of its entries.

        Returns:
            True if the store existed, False otherwise.
        """
        with self._lock:
            try:
                self._conn.execute("DELETE FROM cache_entries WHERE cache_name = ?", (name,))
                cursor = self._conn.execute("DELETE FROM cache_stores WHERE name = ?", (name,))
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise CacheError(f"Failed to delete cache '{name}': {e}")
        return cursor.rowcount > 0

    def match(self, request: Request) -> Response | None:
        """Search every store, oldest first, for a response to this request."""
        with self._lock:
            cursor = self._conn.execute(
                """
                SELECT e.* FROM cache_entries e
                JOIN cache_stores s ON s.name = e.cache_name
                WHERE e.method = ? AND e.url = ?
                ORDER BY s.id
                LIMIT 1
                """,
                (request.method.upper(), request.url),
            )
            row = cursor.fetchone()
        return _row_to_response(row) if row is not None else None

    def entry_counts(self) -> dict[str, int]:
        """Return the number of entries per store, in creation order."""
        with self._lock:
            cursor = self._conn.execute(
                """
                SELECT s.name, COUNT(e.url) AS entries
                FROM cache_stores s
                LEFT JOIN cache_entries e ON e.cache_name = s.name
                GROUP BY s.id
                ORDER BY s.id
                """
            )
            return {row["name"]: row["entries"] for row in cursor.fetchall()}

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _ensure_store(self, name: str) -> None:
        self._conn.execute(
            "INSERT OR IGNORE INTO cache_stores (name, created_at) VALUES (?, ?)",
            (name, datetime.now(UTC).isoformat()),
        )

    def _match_in(self, name: str, request: Request) -> Response | None:
        with self._lock:
            cursor = self._conn.execute(
                "SELECT * FROM cache_entries WHERE cache_name = ? AND method = ? AND url = ?",
                (name, request.method.upper(), request.url),
            )
            row = cursor.fetchone()
        return _row_to_response(row) if row is not None else None

    def _keys_in(self, name: str) -> list[str]:
        with self._lock:
            cursor = self._conn.execute(
                "SELECT url FROM cache_entries WHERE cache_name = ? ORDER BY rowid",
                (name,),
            )
            return [row["url"] for row in cursor.fetchall()]

    def _put_many(self, name: str, pairs: list[tuple[Request, Response]]) -> None:
        for request, _ in pairs:
            if request.method.upper() != "GET":
                raise CacheError(f"Only GET requests can be cached (got {request.method} {request.url})")

        stored_at = datetime.now(UTC).isoformat()
        with self._lock:
            try:
                self._ensure_store(name)
                self._conn.executemany(
                    """
                    INSERT OR REPLACE INTO cache_entries (
                        cache_name, method, url, status, status_text, headers, body, stored_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            name,
                            "GET",
                            request.url,
                            response.status,
                            response.status_text,
                            json.dumps(_storable_headers(response.headers)),
                            response.body,
                            stored_at,
                        )
                        for request, response in pairs
                    ],
                )
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise CacheError(f"Failed to write to cache '{name}': {e}")

        logger.debug("Stored %d entr%s in cache '%s'", len(pairs), "y" if len(pairs) == 1 else "ies", name)


def init_storage(db_path: str) -> CacheStorage:
    """Open the cache database, creating tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file, or ":memory:".

    Returns:
        CacheStorage bound to the database.

    Raises:
        CacheError: If database initialization fails.
    """
    try:
        if db_path != ":memory:":
            parent_dir = Path(db_path).parent
            if not parent_dir.exists():
                parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        if db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS cache_stores (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS cache_entries (
                cache_name TEXT NOT NULL,
                method TEXT NOT NULL,
                url TEXT NOT NULL,
                status INTEGER NOT NULL,
                status_text TEXT NOT NULL,
                headers TEXT NOT NULL,
                body BLOB NOT NULL,
                stored_at TEXT NOT NULL,
                PRIMARY KEY (cache_name, method, url)
            )
        """)
        conn.commit()
        return CacheStorage(conn)

    except sqlite3.Error as e:
        raise CacheError(f"Failed to initialize cache database: {e}")
    except OSError as e:
        raise CacheError(f"Failed to create cache directory: {e}")
