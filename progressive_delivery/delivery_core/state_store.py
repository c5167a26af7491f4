from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from delivery_core.errors import RolloutNotFound, StoreConflict
from delivery_core.rollout.models import Rollout


@dataclass(slots=True)
class StoredRollout:
    rollout: Rollout
    version: int


class RolloutStore(Protocol):
    def create(self, rollout: Rollout) -> StoredRollout: ...

    def load(self, rollout_id: str) -> StoredRollout: ...

    def save(self, rollout: Rollout, *, expected_version: int) -> StoredRollout: ...

    def list_ids(self) -> list[str]: ...

    def list_active_ids(self) -> list[str]: ...


class InMemoryRolloutStore:
    """Keeps serialized payloads so callers never share a live Rollout object."""

    def __init__(self) -> None:
        self._rows: dict[str, tuple[int, str]] = {}
        self._lock = threading.Lock()

    def create(self, rollout: Rollout) -> StoredRollout:
        payload = json.dumps(rollout.to_dict())
        with self._lock:
            if rollout.id in self._rows:
                raise StoreConflict(f"Rollout {rollout.id} already exists")
            self._rows[rollout.id] = (1, payload)
        return StoredRollout(rollout=Rollout.from_dict(json.loads(payload)), version=1)

    def load(self, rollout_id: str) -> StoredRollout:
        with self._lock:
            row = self._rows.get(rollout_id)
        if row is None:
            raise RolloutNotFound(rollout_id)
        version, payload = row
        return StoredRollout(rollout=Rollout.from_dict(json.loads(payload)), version=version)

    def save(self, rollout: Rollout, *, expected_version: int) -> StoredRollout:
        payload = json.dumps(rollout.to_dict())
        with self._lock:
            row = self._rows.get(rollout.id)
            if row is None:
                raise RolloutNotFound(rollout.id)
            if row[0] != expected_version:
                raise StoreConflict(f"Rollout {rollout.id} version {row[0]} != expected {expected_version}")
            new_version = expected_version + 1
            self._rows[rollout.id] = (new_version, payload)
        return StoredRollout(rollout=rollout, version=new_version)

    def list_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._rows)

    def list_active_ids(self) -> list[str]:
        with self._lock:
            rows = dict(self._rows)
        active: list[str] = []
        for rollout_id, (_, payload) in sorted(rows.items()):
            if json.loads(payload).get("status") not in {"succeeded", "failed"}:
                active.append(rollout_id)
        return active


SCHEMA = """
CREATE TABLE IF NOT EXISTS rollouts (
    id TEXT PRIMARY KEY,
    version INTEGER NOT NULL,
    status TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""


class SqliteRolloutStore:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._init()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init(self) -> None:
        with self._connect() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    def create(self, rollout: Rollout) -> StoredRollout:
        payload = json.dumps(rollout.to_dict())
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO rollouts (id, version, status, payload_json) VALUES (?, 1, ?, ?)",
                    (rollout.id, rollout.status.value, payload),
                )
                conn.commit()
        except sqlite3.IntegrityError as exc:
            raise StoreConflict(f"Rollout {rollout.id} already exists") from exc
        return StoredRollout(rollout=Rollout.from_dict(json.loads(payload)), version=1)

    def load(self, rollout_id: str) -> StoredRollout:
        with self._connect() as conn:
            row = conn.execute("SELECT version, payload_json FROM rollouts WHERE id = ?", (rollout_id,)).fetchone()
        if row is None:
            raise RolloutNotFound(rollout_id)
        return StoredRollout(rollout=Rollout.from_dict(json.loads(row["payload_json"])), version=int(row["version"]))

    def save(self, rollout: Rollout, *, expected_version: int) -> StoredRollout:
        payload = json.dumps(rollout.to_dict())
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE rollouts
                SET version = version + 1, status = ?, payload_json = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND version = ?
                """,
                (rollout.status.value, payload, rollout.id, expected_version),
            )
            conn.commit()
            if cur.rowcount != 1:
                exists = conn.execute("SELECT version FROM rollouts WHERE id = ?", (rollout.id,)).fetchone()
                if exists is None:
                    raise RolloutNotFound(rollout.id)
                raise StoreConflict(
                    f"Rollout {rollout.id} version {exists['version']} != expected {expected_version}"
                )
        return StoredRollout(rollout=rollout, version=expected_version + 1)

    def list_ids(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT id FROM rollouts ORDER BY id").fetchall()
        return [str(row["id"]) for row in rows]

    def list_active_ids(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM rollouts WHERE status NOT IN ('succeeded', 'failed') ORDER BY id"
            ).fetchall()
        return [str(row["id"]) for row in rows]
