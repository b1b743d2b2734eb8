"""Tests for the cache storage module."""

import sqlite3
from pathlib import Path

import pytest

from conftest import ORIGIN, get
from wardshell.cache_storage import CacheError, CacheStorage, init_storage
from wardshell.models import Request, Response
from wardshell.network import NetworkError


class TestInitStorage:
    """Tests for init_storage function."""

    def test_creates_database_file(self, tmp_path: Path) -> None:
        db_path = str(tmp_path / "cache.db")
        storage = init_storage(db_path)
        storage.close()
        assert Path(db_path).exists()

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        nested = str(tmp_path / "nested" / "dir" / "cache.db")
        storage = init_storage(nested)
        storage.close()
        assert Path(nested).exists()

    def test_in_memory_database(self) -> None:
        storage = init_storage(":memory:")
        storage.open("liahonaap-v6")
        assert storage.keys() == ["liahonaap-v6"]
        storage.close()

    def test_enables_wal_mode(self, tmp_path: Path) -> None:
        db_path = str(tmp_path / "cache.db")
        init_storage(db_path).close()
        conn = sqlite3.connect(db_path)
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        conn.close()
        assert mode.lower() == "wal"

    def test_persists_across_connections(self, tmp_path: Path) -> None:
        """Entries survive a restart."""
        db_path = str(tmp_path / "cache.db")
        storage = init_storage(db_path)
        storage.open("liahonaap-v6").put(get("/"), Response(status=200, body=b"shell"))
        storage.close()

        reopened = init_storage(db_path)
        assert reopened.open("liahonaap-v6").match(get("/")).body == b"shell"
        reopened.close()

    def test_unwritable_path_raises(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(CacheError):
            init_storage(str(blocker / "cache.db"))


class TestCacheStorage:
    """Tests for the set of named stores."""

    def test_open_creates_store_once(self, storage: CacheStorage) -> None:
        storage.open("liahonaap-v6")
        storage.open("liahonaap-v6")
        assert storage.keys() == ["liahonaap-v6"]
        assert storage.has("liahonaap-v6")

    def test_keys_in_creation_order(self, storage: CacheStorage) -> None:
        for name in ("b-v1", "a-v2", "c-v3"):
            storage.open(name)
        assert storage.keys() == ["b-v1", "a-v2", "c-v3"]

    def test_open_rejects_empty_name(self, storage: CacheStorage) -> None:
        with pytest.raises(CacheError, match="cannot be empty"):
            storage.open("")

    def test_delete_removes_store_and_entries(self, storage: CacheStorage) -> None:
        store = storage.open("liahonaap-v3")
        store.put(get("/"), Response(status=200, body=b"old"))

        assert storage.delete("liahonaap-v3") is True

        assert not storage.has("liahonaap-v3")
        assert storage.match(get("/")) is None

    def test_delete_missing_store(self, storage: CacheStorage) -> None:
        assert storage.delete("nope") is False

    def test_match_searches_oldest_store_first(self, storage: CacheStorage) -> None:
        storage.open("v1").put(get("/"), Response(status=200, body=b"one"))
        storage.open("v2").put(get("/"), Response(status=200, body=b"two"))

        assert storage.match(get("/")).body == b"one"

    def test_entry_counts(self, storage: CacheStorage) -> None:
        storage.open("empty")
        full = storage.open("full")
        full.put(get("/"), Response(status=200))
        full.put(get("/goals"), Response(status=200))

        assert storage.entry_counts() == {"empty": 0, "full": 2}


class TestCacheStore:
    """Tests for a single named store."""

    def test_put_and_match_round_trip(self, storage: CacheStorage) -> None:
        store = storage.open("liahonaap-v6")
        response = Response(
            status=200,
            body=b"<html></html>",
            headers={"Content-Type": "text/html", "ETag": '"abc"'},
            status_text="OK",
        )

        store.put(get("/"), response)
        cached = store.match(get("/"))

        assert cached.status == 200
        assert cached.body == b"<html></html>"
        assert cached.headers == {"Content-Type": "text/html", "ETag": '"abc"'}
        assert cached.status_text == "OK"
        assert cached.url == ORIGIN + "/"

    def test_query_string_is_part_of_key(self, storage: CacheStorage) -> None:
        store = storage.open("liahonaap-v6")
        store.put(get("/manifest.json?v=6"), Response(status=200, body=b"v6"))

        assert store.match(get("/manifest.json?v=5")) is None
        assert store.match(get("/manifest.json?v=6")).body == b"v6"

    def test_put_overwrites_existing_entry(self, storage: CacheStorage) -> None:
        store = storage.open("liahonaap-v6")
        store.put(get("/"), Response(status=200, body=b"first"))
        store.put(get("/"), Response(status=200, body=b"second"))

        assert store.match(get("/")).body == b"second"
        assert store.keys() == [ORIGIN + "/"]

    def test_put_drops_transfer_headers(self, storage: CacheStorage) -> None:
        store = storage.open("liahonaap-v6")
        store.put(
            get("/"),
            Response(status=200, headers={"Content-Length": "10", "Set-Cookie": "sid=1", "Content-Type": "text/html"}),
        )

        assert store.match(get("/")).headers == {"Content-Type": "text/html"}

    def test_put_rejects_non_get(self, storage: CacheStorage) -> None:
        store = storage.open("liahonaap-v6")
        with pytest.raises(CacheError, match="Only GET"):
            store.put(Request(url=ORIGIN + "/api/goals", method="POST"), Response(status=200))

    def test_stores_are_isolated(self, storage: CacheStorage) -> None:
        storage.open("v1").put(get("/"), Response(status=200, body=b"one"))
        assert storage.open("v2").match(get("/")) is None

    def test_add_all_stores_every_response(self, storage: CacheStorage) -> None:
        store = storage.open("liahonaap-v6")
        requests = [get("/"), get("/favicon.svg")]

        store.add_all(requests, lambda r: Response(status=200, body=r.url.encode()))

        assert store.keys() == [ORIGIN + "/", ORIGIN + "/favicon.svg"]

    def test_add_all_rejects_non_ok_response(self, storage: CacheStorage) -> None:
        store = storage.open("liahonaap-v6")

        def fetch(request: Request) -> Response:
            return Response(status=404 if request.path == "/favicon.svg" else 200)

        with pytest.raises(CacheError, match="status 404"):
            store.add_all([get("/"), get("/favicon.svg")], fetch)
        assert store.keys() == []

    def test_add_all_propagates_network_error(self, storage: CacheStorage) -> None:
        store = storage.open("liahonaap-v6")

        def fetch(request: Request) -> Response:
            raise NetworkError("offline")

        with pytest.raises(NetworkError):
            store.add_all([get("/")], fetch)
        assert store.keys() == []
