import asyncio
import json
import logging
import sqlite3
import threading
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from hashlib import sha256
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from jsonschema import ValidationError, validate

logger = logging.getLogger("gateway.audit")

AUDIT_RECORD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": [
        "event_id",
        "identity",
        "action",
        "resource",
        "client_ip",
        "user_agent",
        "detail",
        "timestamp",
        "prev_hash",
        "payload_hash",
    ],
    "properties": {
        "event_id": {"type": "string", "minLength": 1},
        "identity": {"type": ["string", "null"]},
        "action": {"type": "string", "pattern": "^[A-Z_]+$"},
        "resource": {"type": "string"},
        "client_ip": {"type": "string"},
        "user_agent": {"type": "string"},
        "detail": {"type": ["object", "string", "null"]},
        "timestamp": {"type": "string", "minLength": 1},
        "prev_hash": {"type": "string"},
        "payload_hash": {"type": "string", "pattern": "^[0-9a-f]{64}$"},
    },
    "additionalProperties": False,
}


class AuditValidationError(Exception):
    """Raised when audit payload is invalid."""


@dataclass(frozen=True)
class AuditRecord:
    identity: str | None
    action: str
    resource: str
    client_ip: str
    user_agent: str
    detail: dict[str, Any] | str | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class AuditSink(Protocol):
    backend: str

    def write(self, record: AuditRecord) -> dict[str, Any]:
        """Append one record; raise on failure."""


class JsonlAuditSink:
    """Hash-chained JSONL audit log.

    Each line carries ``prev_hash`` (the previous line's ``payload_hash``)
    and its own ``payload_hash``, so truncation or edits are detectable.
    The chain head is read from the file once and then tracked in memory.
    """

    backend = "jsonl"
    _TAIL_CHUNK_BYTES = 4096

    def __init__(self, path: Path):
        self._log_path = path
        self._lock = threading.Lock()
        self._chain_head: str | None = None

    def write(self, record: AuditRecord) -> dict[str, Any]:
        payload = record.as_dict()
        payload["event_id"] = str(uuid4())

        with self._lock:
            if self._chain_head is None:
                self._chain_head = self._hash_of_last_entry()
            payload["prev_hash"] = self._chain_head
            payload["payload_hash"] = _canonical_hash(payload)

            try:
                validate(instance=payload, schema=AUDIT_RECORD_SCHEMA)
            except ValidationError as exc:
                raise AuditValidationError(str(exc)) from exc

            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with self._log_path.open("a", encoding="utf-8") as file_handle:
                file_handle.write(json.dumps(payload, ensure_ascii=True) + "\n")
            self._chain_head = payload["payload_hash"]

        return payload

    def load(self) -> list[dict[str, Any]]:
        if not self._log_path.exists():
            return []
        with self._log_path.open("r", encoding="utf-8") as file_handle:
            return [json.loads(line) for line in file_handle if line.strip()]

    def _hash_of_last_entry(self) -> str:
        if not self._log_path.exists():
            return ""
        tail = b""
        with self._log_path.open("rb") as file_handle:
            end = file_handle.seek(0, 2)
            offset = end
            # Grow the tail window until it holds one complete line.
            while offset > 0 and tail.strip().count(b"\n") < 1:
                offset = max(0, offset - self._TAIL_CHUNK_BYTES)
                file_handle.seek(offset)
                tail = file_handle.read(end - offset)
        lines = tail.strip().splitlines()
        if not lines:
            return ""
        try:
            last_entry = json.loads(lines[-1])
        except ValueError:
            return ""
        return str(last_entry.get("payload_hash", ""))


def _canonical_hash(payload: dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class SQLiteAuditSink:
    path: Path
    backend: str = "sqlite"

    def __post_init__(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    action TEXT NOT NULL,
                    resource TEXT NOT NULL,
                    ip TEXT NOT NULL,
                    user_agent TEXT NOT NULL,
                    details TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_log_action ON audit_log(action)"
            )
            connection.commit()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.path))
        connection.row_factory = sqlite3.Row
        return connection

    def write(self, record: AuditRecord) -> dict[str, Any]:
        details = (
            json.dumps(record.detail, ensure_ascii=True)
            if isinstance(record.detail, dict)
            else record.detail
        )
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO audit_log (
                    user_id, action, resource, ip, user_agent, details, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.identity,
                    record.action,
                    record.resource,
                    record.client_ip,
                    record.user_agent,
                    details,
                    record.timestamp,
                ),
            )
            connection.commit()
        return record.as_dict()

    def load(self) -> list[dict[str, Any]]:
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT user_id, action, resource, ip, user_agent, details, created_at "
                "FROM audit_log ORDER BY id ASC"
            ).fetchall()
        return [
            {
                "identity": row["user_id"],
                "action": row["action"],
                "resource": row["resource"],
                "client_ip": row["ip"],
                "user_agent": row["user_agent"],
                "detail": row["details"],
                "timestamp": row["created_at"],
            }
            for row in rows
        ]


class AuditRecorder:
    """Best-effort audit channel: failures are logged, never raised."""

    def __init__(self, sink: AuditSink):
        self._sink = sink

    @property
    def sink(self) -> AuditSink:
        return self._sink

    async def record(self, entry: AuditRecord) -> None:
        try:
            await asyncio.to_thread(self._sink.write, entry)
        except Exception as exc:
            logger.warning(
                "audit_write_failed",
                extra={
                    "action": entry.action,
                    "identity": entry.identity,
                    "path": entry.resource,
                    "error": f"{type(exc).__name__}: {exc}",
                },
            )


def create_audit_sink(*, backend: str, jsonl_path: Path, sqlite_path: Path) -> AuditSink:
    normalized_backend = backend.strip().lower()
    if normalized_backend == "jsonl":
        return JsonlAuditSink(path=jsonl_path)
    if normalized_backend == "sqlite":
        return SQLiteAuditSink(path=sqlite_path)
    raise ValueError(f"Unsupported audit backend: {backend}")
