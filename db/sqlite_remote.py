"""
SQLite-backed RemoteSync implementation.

Provides the authoritative store the engine synchronizes with: a single
``applications`` table holding each application's current stage. The
synchronous ``ApplicationsWriter`` owns connections and transactions;
``SqliteRemoteSync`` runs it off the event loop with ``asyncio.to_thread``.
"""

import asyncio
import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from config import Config, get_config
from models.errors import (
    PipelineError,
    create_db_error,
    create_db_not_found_error,
    create_invalid_stage_error,
)
from models.stages import StageSchema
from schemas.common import EntityId
from schemas.remote import RemoteDeleteResult, RemoteStageUpdate
from utils.validation import get_current_utc_timestamp

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS applications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT,
        company TEXT,
        stage TEXT NOT NULL,
        stage_changed_at TEXT,
        payload_json TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT
    )
"""


def resolve_db_path(db_path: Optional[str] = None) -> Path:
    """
    Resolve the database path.

    An explicit path wins; relative paths resolve from the repository root.
    Without one the configured path is used (STAGETRACK_DB, then
    STAGETRACK_ROOT/data/stagetrack.db, then data/stagetrack.db).

    Args:
        db_path: Optional database path override

    Returns:
        Resolved absolute Path to the database
    """
    if db_path is None:
        return Config().db_path

    path = Path(db_path)
    if not path.is_absolute():
        repo_root = Path(__file__).resolve().parents[1]  # db/ -> repo/
        path = repo_root / path
    return path


def _row_to_record(row: sqlite3.Row) -> Dict[str, Any]:
    try:
        payload = json.loads(row["payload_json"] or "{}")
    except json.JSONDecodeError:
        payload = {}
    payload.update({
        "title": row["title"],
        "company": row["company"],
        "created_at": row["created_at"],
    })
    return {
        "id": row["id"],
        "current_stage": row["stage"],
        "stage_changed_at": row["stage_changed_at"],
        "payload": payload,
    }


class ApplicationsWriter:
    """
    Context manager for operations on the applications database.

    Provides transaction management with automatic rollback on exceptions
    and guaranteed connection cleanup.

    Usage:
        with ApplicationsWriter(db_path) as writer:
            writer.update_stage(1, "Interview", timestamp)
            writer.commit()
    """

    def __init__(self, db_path: Optional[str] = None, create: bool = False):
        """
        Initialize writer with database path.

        Args:
            db_path: Optional database path override
            create: Create the database file if it does not exist
        """
        self.db_path = db_path
        self.create = create
        self.resolved_path: Optional[Path] = None
        self.conn: Optional[sqlite3.Connection] = None
        self._in_transaction = False

    def __enter__(self):
        """
        Open connection and begin transaction.

        Raises:
            PipelineError: If database file doesn't exist or connection fails
        """
        self.resolved_path = resolve_db_path(self.db_path)

        if self.create:
            self.resolved_path.parent.mkdir(parents=True, exist_ok=True)
        elif not self.resolved_path.is_file():
            raise create_db_not_found_error(str(self.resolved_path))

        try:
            self.conn = sqlite3.connect(str(self.resolved_path))
            self.conn.row_factory = sqlite3.Row

            self.conn.execute("BEGIN")
            self._in_transaction = True

            return self

        except sqlite3.OperationalError as e:
            error_msg = str(e)
            if "unable to open database" in error_msg.lower():
                raise create_db_not_found_error(str(self.resolved_path)) from e
            raise create_db_error(error_msg, retryable=True, original_error=e) from e

        except sqlite3.Error as e:
            raise create_db_error(str(e), retryable=False, original_error=e) from e

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Rollback on exception, close connection always."""
        try:
            if exc_type is not None and self._in_transaction:
                self.rollback()
        finally:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

        # Don't suppress exceptions
        return False

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise create_db_error("Connection not established", retryable=False)
        return self.conn

    def ensure_schema(self) -> None:
        """Create the applications table if it does not exist."""
        conn = self._require_conn()
        try:
            conn.execute(SCHEMA_SQL)
        except sqlite3.Error as e:
            raise create_db_error(str(e), retryable=False, original_error=e) from e

    def list_applications(self) -> List[Dict[str, Any]]:
        """All applications, newest first."""
        conn = self._require_conn()
        try:
            cursor = conn.execute(
                "SELECT * FROM applications ORDER BY created_at DESC, id DESC"
            )
            return [_row_to_record(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise create_db_error(str(e), retryable=True, original_error=e) from e

    def insert_application(
        self,
        stage: str,
        timestamp: str,
        title: Optional[str] = None,
        company: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Insert one application and return its record."""
        conn = self._require_conn()
        try:
            cursor = conn.execute(
                """
                INSERT INTO applications
                    (title, company, stage, stage_changed_at, payload_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (title, company, stage, timestamp, json.dumps(payload or {}), timestamp, timestamp),
            )
            row = conn.execute(
                "SELECT * FROM applications WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
            return _row_to_record(row)
        except sqlite3.Error as e:
            raise create_db_error(str(e), retryable=False, original_error=e) from e

    def update_stage(self, application_id: EntityId, stage: str, timestamp: str) -> Dict[str, Any]:
        """
        Execute UPDATE for a single application.

        Raises:
            PipelineError: If the row does not exist or the UPDATE fails
        """
        conn = self._require_conn()
        try:
            cursor = conn.execute(
                """
                UPDATE applications
                SET stage = ?,
                    stage_changed_at = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (stage, timestamp, timestamp, application_id),
            )
            if cursor.rowcount == 0:
                raise create_db_error(
                    f"No application found with id {application_id}", retryable=False
                )
        except sqlite3.Error as e:
            raise create_db_error(str(e), retryable=True, original_error=e) from e
        return {"id": application_id, "current_stage": stage, "stage_changed_at": timestamp}

    def delete_application(self, application_id: EntityId) -> bool:
        """Delete one application; False if no row matched."""
        conn = self._require_conn()
        try:
            cursor = conn.execute("DELETE FROM applications WHERE id = ?", (application_id,))
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise create_db_error(str(e), retryable=True, original_error=e) from e

    def commit(self) -> None:
        """Commit the current transaction."""
        conn = self._require_conn()
        try:
            conn.commit()
            self._in_transaction = False
        except sqlite3.Error as e:
            raise create_db_error(str(e), retryable=True, original_error=e) from e

    def rollback(self) -> None:
        """Rollback the current transaction."""
        if self.conn is not None and self._in_transaction:
            try:
                self.conn.rollback()
            finally:
                self._in_transaction = False


class SqliteRemoteSync:
    """
    RemoteSync over a local SQLite database.

    Stage names are validated against the catalog the same way a service
    would validate them, so invalid writes fail asynchronously.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        schema: Optional[StageSchema] = None,
        config: Optional[Config] = None,
    ):
        """
        Args:
            db_path: Database file; defaults to the configured path
            schema: Stage catalog; defaults to the configured catalog
            config: Settings; defaults to the global configuration
        """
        config = config or get_config()
        self.db_path = db_path if db_path is not None else config.get_db_path_str()
        self.schema = schema or config.load_stage_schema()

    def ensure_schema(self) -> None:
        """Create the database file and table if needed."""
        with ApplicationsWriter(self.db_path, create=True) as writer:
            writer.ensure_schema()
            writer.commit()

    def create_application(
        self,
        stage: Optional[str] = None,
        title: Optional[str] = None,
        company: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Insert an application; the record can be handed to ``engine.add_entity``."""
        stage = self.schema.require(stage) if stage is not None else self.schema.default_stage
        with ApplicationsWriter(self.db_path) as writer:
            record = writer.insert_application(
                stage, get_current_utc_timestamp(), title=title, company=company, payload=payload
            )
            writer.commit()
        return record

    def _list_sync(self) -> List[Dict[str, Any]]:
        with ApplicationsWriter(self.db_path) as writer:
            return writer.list_applications()

    def _update_stage_sync(self, entity_id: EntityId, new_stage: str) -> Dict[str, Any]:
        stage = self.schema.normalize(new_stage)
        if stage is None:
            raise create_invalid_stage_error(new_stage)
        with ApplicationsWriter(self.db_path) as writer:
            record = writer.update_stage(entity_id, stage, get_current_utc_timestamp())
            writer.commit()
        return record

    def _delete_many_sync(self, ids: Sequence[EntityId]) -> Dict[str, List[EntityId]]:
        succeeded: List[EntityId] = []
        failed: List[EntityId] = []
        with ApplicationsWriter(self.db_path) as writer:
            for entity_id in ids:
                try:
                    deleted = writer.delete_application(entity_id)
                except PipelineError:
                    deleted = False
                (succeeded if deleted else failed).append(entity_id)
            writer.commit()
        return {"succeeded": succeeded, "failed": failed}

    async def list(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._list_sync)

    async def update_stage(self, entity_id: EntityId, new_stage: str) -> RemoteStageUpdate:
        record = await asyncio.to_thread(self._update_stage_sync, entity_id, new_stage)
        return RemoteStageUpdate.model_validate(record)

    async def delete_many(self, ids: Sequence[EntityId]) -> RemoteDeleteResult:
        report = await asyncio.to_thread(self._delete_many_sync, list(ids))
        return RemoteDeleteResult.model_validate(report)
