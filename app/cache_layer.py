import json
import time
import sqlite3
import hashlib
from contextlib import closing
from pathlib import Path


class CacheLayer:
    """
    Disk cache for SEC responses (ticker map, company facts).

    Rows in ``sec_response_cache`` point at JSON files sharded by key hash;
    each row carries its own TTL. Nothing here is authoritative: a lost cache
    directory only means the next lookup goes back to SEC.
    """

    def __init__(self, root_dir: str = ".cache", db_path: str = "./data/cache.sqlite3", default_ttl_seconds: int = 86400):
        self.root_dir = Path(root_dir)
        self.db_path = db_path
        self.default_ttl_seconds = int(default_ttl_seconds)
        self.root_dir.mkdir(parents=True, exist_ok=True)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with closing(self._conn()) as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS sec_response_cache(
                cache_key TEXT PRIMARY KEY,
                path TEXT NOT NULL,
                fetched_at REAL NOT NULL,
                ttl_seconds INTEGER NOT NULL
            )
            """)

    def _conn(self):
        return sqlite3.connect(self.db_path, isolation_level=None, check_same_thread=False)

    @staticmethod
    def make_key(source: str, resource: str, ident: str = "") -> str:
        return f"{source}:{resource}:{ident}"

    def _file_for(self, cache_key: str) -> Path:
        digest = hashlib.sha256(cache_key.encode("utf-8")).hexdigest()
        shard = self.root_dir / digest[:2]
        shard.mkdir(parents=True, exist_ok=True)
        return shard / f"{digest}.json"

    def get(self, cache_key: str):
        """Return (payload, age_seconds); payload is None when missing, expired or unreadable."""
        with closing(self._conn()) as conn:
            row = conn.execute(
                "SELECT path, fetched_at, ttl_seconds FROM sec_response_cache WHERE cache_key=?",
                (cache_key,),
            ).fetchone()
        if row is None:
            return None, None
        path, fetched_at, ttl_seconds = row
        age = time.time() - float(fetched_at)
        if age > ttl_seconds:
            return None, age
        try:
            return json.loads(Path(path).read_text(encoding="utf-8")), age
        except (OSError, ValueError):
            return None, age

    def set(self, cache_key: str, payload, ttl_seconds: int | None = None):
        path = self._file_for(cache_key)
        path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
        with closing(self._conn()) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sec_response_cache(cache_key, path, fetched_at, ttl_seconds) VALUES(?,?,?,?)",
                (cache_key, str(path), time.time(), int(ttl_seconds or self.default_ttl_seconds)),
            )

    def fetch(self, cache_key: str, fetch_fn, ttl_seconds: int | None = None):
        """Cache-first read; a None from fetch_fn is returned but not stored. Returns (payload, cache_hit)."""
        cached, _age = self.get(cache_key)
        if cached is not None:
            return cached, True
        payload = fetch_fn()
        if payload is not None:
            self.set(cache_key, payload, ttl_seconds)
        return payload, False
