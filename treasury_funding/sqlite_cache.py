"""JSON documents in a SQLite file, keyed by string.

Used to persist transfer jobs and deposit records, so an interrupted
treasury funding run can be resumed by another process.
"""

import json
import sqlite3
from pathlib import Path
from threading import get_ident
from typing import Any, Iterator


class JSONKeyValueStore:
    """SQLite backed string key to JSON value mapping.

    - Keys are strings, values anything :py:func:`json.dumps` accepts
    - Each thread gets its own connection
    - With ``autocommit`` every write is on disk when the call returns

    Example:

    .. code-block:: python

        kv = JSONKeyValueStore(Path("/tmp/state.sqlite"))
        kv["job:1"] = {"status": "pending"}
        assert kv.get("job:1") == {"status": "pending"}
    """

    def __init__(self, filename: Path, autocommit=True):
        """
        :param filename:
            Path to the sqlite database

        :param autocommit:
            Commit after every write
        """
        assert isinstance(filename, Path), f"Expected Path, got {type(filename)}"
        self.autocommit = autocommit
        self.filename = filename
        self.connections: dict[int, sqlite3.Connection] = {}

    def __repr__(self):
        return f"<JSONKeyValueStore {self.filename}>"

    @property
    def conn(self) -> sqlite3.Connection:
        thread_id = get_ident()
        conn = self.connections.get(thread_id)
        if conn is None:
            conn = sqlite3.connect(self.filename)
            conn.execute("CREATE TABLE IF NOT EXISTS documents (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
            self.connections[thread_id] = conn
        return conn

    def close(self):
        """Close the connection of the calling thread."""
        conn = self.connections.pop(get_ident(), None)
        if conn is not None:
            conn.commit()
            conn.close()

    def __setitem__(self, key: str, value: Any):
        assert type(key) == str, f"Only string keys allowed, got {key}"
        self.conn.execute("REPLACE INTO documents (key, value) VALUES (?, ?)", (key, json.dumps(value, sort_keys=True)))
        if self.autocommit:
            self.conn.commit()

    def __contains__(self, key: str) -> bool:
        return self.conn.execute("SELECT 1 FROM documents WHERE key = ?", (key,)).fetchone() is not None

    def __len__(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]

    def get(self, key: str, default=None) -> Any:
        row = self.conn.execute("SELECT value FROM documents WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        return json.loads(row[0])

    def iter_prefix(self, prefix: str) -> Iterator[tuple[str, Any]]:
        """All entries whose key starts with ``prefix``, in key order."""
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = self.conn.execute(
            "SELECT key, value FROM documents WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
            (escaped + "%",),
        )
        for key, value in rows:
            yield key, json.loads(value)
