#!/usr/bin/env python3

"""
Session Service - persistence of conversations

SessionStore is the contract the controller depends on. SQLiteSessionStore
keeps sessions and their ordered messages in a local SQLite database.
"""

import json
import os
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional, Sequence

import structlog

from ..exceptions import SessionNotFoundError, StorageError
from .export_service import SessionExporter
from .metrics_service import MetricsAggregator
from .models.context_models import ContextItem
from .models.llm_models import MessageRole, TokenUsage
from .models.metrics_models import DiagnosticEvent, DiagnosticEventType
from .models.session_models import (
    ExportFormat, Message, MessageMetadata, Session, SessionFilters,
    SessionMetadata, SessionSummary
)

log = structlog.get_logger(__name__)


class SessionStore(ABC):
    """Storage contract for conversations"""

    @abstractmethod
    def create_session(self, provider_id: str, model_id: str,
                       title: Optional[str] = None) -> Session:
        pass

    @abstractmethod
    def get_session(self, session_id: str) -> Session:
        """Raises SessionNotFoundError when absent"""
        pass

    @abstractmethod
    def get_all_sessions(self, include_archived: bool = True) -> List[SessionSummary]:
        pass

    @abstractmethod
    def get_recent_sessions(self, limit: int = 10) -> List[SessionSummary]:
        pass

    @abstractmethod
    def save_session(self, session: Session) -> None:
        pass

    @abstractmethod
    def save_message(self, message: Message, session_id: str) -> None:
        pass

    @abstractmethod
    def update_session_title(self, session_id: str, title: str) -> None:
        pass

    @abstractmethod
    def search_sessions(self, query: str = "",
                        filters: Optional[SessionFilters] = None) -> List[SessionSummary]:
        pass

    @abstractmethod
    def archive_session(self, session_id: str) -> None:
        pass

    @abstractmethod
    def unarchive_session(self, session_id: str) -> None:
        pass

    @abstractmethod
    def delete_session(self, session_id: str) -> None:
        pass

    @abstractmethod
    def export_session(self, session_id: str, export_format: ExportFormat) -> bytes:
        pass

    @abstractmethod
    def import_session(self, data: bytes, export_format: ExportFormat = ExportFormat.JSON) -> Session:
        pass


def _to_db_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_db_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SQLiteSessionStore(SessionStore):
    """
    SQLite implementation of SessionStore.

    A connection is opened per operation and serialized by a reentrant lock,
    so one store can be shared across threads. Message order is kept in an
    explicit ``message_order`` column.
    """

    def __init__(self, db_path: str, exporter: Optional[SessionExporter] = None,
                 metrics: Optional[MetricsAggregator] = None):
        self._db_path = db_path
        self._db_lock = threading.RLock()
        self._exporter = exporter or SessionExporter()
        self._metrics = metrics

        directory = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(directory, exist_ok=True)
        self._create_tables()
        log.info("sessions.initialized", db_path=db_path)

    @property
    def db_path(self) -> str:
        return self._db_path

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA foreign_keys = ON')
        conn.execute('PRAGMA journal_mode = WAL')
        return conn

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Cursor]:
        """Cursor inside one committed transaction; sqlite failures become StorageError"""
        with self._db_lock:
            conn = self._get_connection()
            try:
                yield conn.cursor()
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                log.error("sessions.storage_failed", action=action, error=str(e))
                raise StorageError(f"Failed to {action}: {e}") from e
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _create_tables(self):
        with self._transaction("create session tables") as cursor:
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    last_modified_at TEXT NOT NULL,
                    is_archived INTEGER NOT NULL DEFAULT 0,
                    provider_id TEXT NOT NULL,
                    model_id TEXT NOT NULL,
                    metadata TEXT
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                    message_order INTEGER NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    token_usage TEXT,
                    context_items TEXT,
                    metadata TEXT
                )
            ''')
            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_messages_session
                ON messages(session_id, message_order)
            ''')
            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_sessions_modified
                ON sessions(last_modified_at)
            ''')

    # Sessions

    def create_session(self, provider_id: str, model_id: str,
                       title: Optional[str] = None) -> Session:
        session = Session(provider_id=provider_id, model_id=model_id, title=title or "New Chat")
        with self._transaction("create session") as cursor:
            self._insert_session(cursor, session)

        log.info("sessions.created", session_id=session.id, provider_id=provider_id, model_id=model_id)
        self._record_event(DiagnosticEventType.SESSION_CREATED, session_id=session.id)
        return session

    def get_session(self, session_id: str) -> Session:
        with self._transaction("load session") as cursor:
            row = self._fetch_session_row(cursor, session_id)
            cursor.execute('''
                SELECT * FROM messages WHERE session_id = ? ORDER BY message_order ASC
            ''', (session_id,))
            messages = tuple(self._row_to_message(r) for r in cursor.fetchall())
        return self._row_to_session(row, messages)

    def get_all_sessions(self, include_archived: bool = True) -> List[SessionSummary]:
        return self.search_sessions("", SessionFilters(include_archived=include_archived))

    def get_recent_sessions(self, limit: int = 10) -> List[SessionSummary]:
        return self.search_sessions("", SessionFilters(include_archived=False))[:max(0, limit)]

    def save_session(self, session: Session) -> None:
        """Write the session row and replace its messages with ``session.messages``"""
        with self._transaction("save session") as cursor:
            cursor.execute('SELECT 1 FROM sessions WHERE id = ?', (session.id,))
            if cursor.fetchone() is None:
                self._insert_session(cursor, session)
            else:
                cursor.execute('''
                    UPDATE sessions
                    SET title = ?, last_modified_at = ?, is_archived = ?,
                        provider_id = ?, model_id = ?, metadata = ?
                    WHERE id = ?
                ''', (session.title, _to_db_time(session.last_modified_at),
                      int(session.is_archived), session.provider_id, session.model_id,
                      json.dumps(session.metadata.to_dict()), session.id))

            cursor.execute('DELETE FROM messages WHERE session_id = ?', (session.id,))
            for order, message in enumerate(session.messages):
                self._insert_message(cursor, message, session.id, order)

        log.debug("sessions.saved", session_id=session.id, messages=len(session.messages))

    def save_message(self, message: Message, session_id: str) -> None:
        """
        Append a message to a session, or update it in place if its id is
        already stored.
        """
        with self._transaction("save message") as cursor:
            self._fetch_session_row(cursor, session_id)

            cursor.execute('SELECT message_order FROM messages WHERE id = ? AND session_id = ?',
                           (message.id, session_id))
            existing = cursor.fetchone()
            if existing is not None:
                cursor.execute('DELETE FROM messages WHERE id = ?', (message.id,))
                order = existing['message_order']
            else:
                cursor.execute('''
                    SELECT COALESCE(MAX(message_order), -1) + 1
                    FROM messages WHERE session_id = ?
                ''', (session_id,))
                order = cursor.fetchone()[0]

            self._insert_message(cursor, message, session_id, order)
            self._touch(cursor, session_id)

        log.debug("sessions.message_saved", session_id=session_id, message_id=message.id,
                  role=message.role.value)

    def update_session_title(self, session_id: str, title: str) -> None:
        with self._transaction("update session title") as cursor:
            cursor.execute('UPDATE sessions SET title = ?, last_modified_at = ? WHERE id = ?',
                           (title, _to_db_time(_utcnow()), session_id))
            if cursor.rowcount == 0:
                raise SessionNotFoundError(session_id)

    def search_sessions(self, query: str = "",
                        filters: Optional[SessionFilters] = None) -> List[SessionSummary]:
        """
        Find sessions whose title or any message contains ``query``
        (case-insensitive), newest first.

        Args:
            query: Substring to look for; empty matches every session
            filters: Provider, date range, archive state and tag constraints.
                Every listed tag must be present on a session.
        """
        filters = filters or SessionFilters()
        clauses: List[str] = []
        params: List[Any] = []

        if query:
            pattern = f"%{query}%"
            clauses.append('''(s.title LIKE ? OR EXISTS (
                SELECT 1 FROM messages m WHERE m.session_id = s.id AND m.content LIKE ?
            ))''')
            params.extend([pattern, pattern])
        if filters.provider_id:
            clauses.append('s.provider_id = ?')
            params.append(filters.provider_id)
        if filters.date_range:
            start, end = filters.date_range
            clauses.append('s.last_modified_at BETWEEN ? AND ?')
            params.extend([_to_db_time(start), _to_db_time(end)])
        if filters.archived_only:
            clauses.append('s.is_archived = 1')
        elif not filters.include_archived:
            clauses.append('s.is_archived = 0')

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._transaction("search sessions") as cursor:
            cursor.execute(f'''
                SELECT s.* FROM sessions s {where}
                ORDER BY s.last_modified_at DESC
            ''', params)
            rows = cursor.fetchall()

            summaries = []
            for row in rows:
                if filters.tags:
                    tags = set(SessionMetadata.from_dict(self._load_json(row['metadata'])).tags)
                    if not set(filters.tags) <= tags:
                        continue
                summaries.append(self._summary_for(cursor, row))
        return summaries

    def archive_session(self, session_id: str) -> None:
        self._set_archived(session_id, True)

    def unarchive_session(self, session_id: str) -> None:
        self._set_archived(session_id, False)

    def delete_session(self, session_id: str) -> None:
        with self._transaction("delete session") as cursor:
            cursor.execute('DELETE FROM sessions WHERE id = ?', (session_id,))
            if cursor.rowcount == 0:
                raise SessionNotFoundError(session_id)

        log.info("sessions.deleted", session_id=session_id)
        self._record_event(DiagnosticEventType.SESSION_DELETED, session_id=session_id)

    def bulk_archive(self, session_ids: Sequence[str]) -> int:
        """Archive every listed session; returns how many existed"""
        if not session_ids:
            return 0
        placeholders = ",".join("?" for _ in session_ids)
        with self._transaction("archive sessions") as cursor:
            cursor.execute(f'''
                UPDATE sessions SET is_archived = 1, last_modified_at = ?
                WHERE id IN ({placeholders})
            ''', [_to_db_time(_utcnow()), *session_ids])
            count = cursor.rowcount
        log.info("sessions.bulk_archived", requested=len(session_ids), archived=count)
        return count

    def bulk_delete(self, session_ids: Sequence[str]) -> int:
        if not session_ids:
            return 0
        placeholders = ",".join("?" for _ in session_ids)
        with self._transaction("delete sessions") as cursor:
            cursor.execute(f'DELETE FROM sessions WHERE id IN ({placeholders})', list(session_ids))
            count = cursor.rowcount
        log.info("sessions.bulk_deleted", requested=len(session_ids), deleted=count)
        for session_id in session_ids:
            self._record_event(DiagnosticEventType.SESSION_DELETED, session_id=session_id)
        return count

    def duplicate_session(self, session_id: str) -> Session:
        original = self.get_session(session_id)
        now = _utcnow()
        copy = replace(
            original,
            id=str(uuid.uuid4()),
            title=f"{original.title} (Copy)",
            created_at=now,
            last_modified_at=now,
            is_archived=False,
            messages=tuple(replace(m, id=str(uuid.uuid4())) for m in original.messages),
        )
        self.save_session(copy)
        log.info("sessions.duplicated", source_id=session_id, session_id=copy.id)
        self._record_event(DiagnosticEventType.SESSION_CREATED, session_id=copy.id)
        return copy

    def merge_messages(self, target_id: str, source_ids: Sequence[str]) -> Session:
        """
        Append copies of every message of ``source_ids`` (in the given order)
        to the target session. Source sessions are left untouched.
        """
        target = self.get_session(target_id)
        merged = list(target.messages)
        for source_id in source_ids:
            if source_id == target_id:
                continue
            source = self.get_session(source_id)
            merged.extend(replace(m, id=str(uuid.uuid4())) for m in source.messages)

        updated = replace(target, messages=tuple(merged), last_modified_at=_utcnow())
        self.save_session(updated)
        log.info("sessions.merged", session_id=target_id, sources=len(source_ids),
                 messages=len(merged))
        return updated

    def export_session(self, session_id: str, export_format: ExportFormat) -> bytes:
        data = self._exporter.export(self.get_session(session_id), export_format)
        self._record_event(DiagnosticEventType.EXPORT_COMPLETED,
                           session_id=session_id, format=export_format.value)
        return data

    def import_session(self, data: bytes, export_format: ExportFormat = ExportFormat.JSON) -> Session:
        """Store an exported session. An id that already exists gets fresh ids."""
        session = self._exporter.import_session(data, export_format)
        with self._transaction("check session") as cursor:
            cursor.execute('SELECT 1 FROM sessions WHERE id = ?', (session.id,))
            taken = cursor.fetchone() is not None
        if taken:
            session = replace(
                session,
                id=str(uuid.uuid4()),
                messages=tuple(replace(m, id=str(uuid.uuid4())) for m in session.messages),
            )

        self.save_session(session)
        log.info("sessions.imported", session_id=session.id, messages=len(session.messages))
        self._record_event(DiagnosticEventType.IMPORT_COMPLETED, session_id=session.id)
        return session

    # Helpers

    def _set_archived(self, session_id: str, archived: bool):
        with self._transaction("archive session" if archived else "unarchive session") as cursor:
            cursor.execute('UPDATE sessions SET is_archived = ?, last_modified_at = ? WHERE id = ?',
                           (int(archived), _to_db_time(_utcnow()), session_id))
            if cursor.rowcount == 0:
                raise SessionNotFoundError(session_id)
        log.info("sessions.archive_changed", session_id=session_id, archived=archived)

    def _fetch_session_row(self, cursor: sqlite3.Cursor, session_id: str) -> sqlite3.Row:
        cursor.execute('SELECT * FROM sessions WHERE id = ?', (session_id,))
        row = cursor.fetchone()
        if row is None:
            raise SessionNotFoundError(session_id)
        return row

    @staticmethod
    def _touch(cursor: sqlite3.Cursor, session_id: str):
        cursor.execute('UPDATE sessions SET last_modified_at = ? WHERE id = ?',
                       (_to_db_time(_utcnow()), session_id))

    @staticmethod
    def _insert_session(cursor: sqlite3.Cursor, session: Session):
        cursor.execute('''
            INSERT INTO sessions
            (id, title, created_at, last_modified_at, is_archived, provider_id, model_id, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (session.id, session.title, _to_db_time(session.created_at),
              _to_db_time(session.last_modified_at), int(session.is_archived),
              session.provider_id, session.model_id, json.dumps(session.metadata.to_dict())))

    @staticmethod
    def _insert_message(cursor: sqlite3.Cursor, message: Message, session_id: str, order: int):
        cursor.execute('''
            INSERT INTO messages
            (id, session_id, message_order, role, content, timestamp,
             token_usage, context_items, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (message.id, session_id, order, message.role.value, message.content,
              _to_db_time(message.timestamp),
              json.dumps(message.token_usage.to_dict()) if message.token_usage else None,
              json.dumps([item.to_dict() for item in message.context_items]),
              json.dumps(message.metadata.to_dict())))

    @staticmethod
    def _load_json(value: Optional[str]) -> Any:
        return json.loads(value) if value else None

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row['id'],
            content=row['content'],
            role=MessageRole(row['role']),
            timestamp=_from_db_time(row['timestamp']),
            token_usage=TokenUsage.from_dict(self._load_json(row['token_usage'])),
            context_items=tuple(ContextItem.from_dict(item)
                                for item in self._load_json(row['context_items']) or []),
            metadata=MessageMetadata.from_dict(self._load_json(row['metadata'])),
        )

    def _row_to_session(self, row: sqlite3.Row, messages=()) -> Session:
        return Session(
            id=row['id'],
            title=row['title'],
            created_at=_from_db_time(row['created_at']),
            last_modified_at=_from_db_time(row['last_modified_at']),
            is_archived=bool(row['is_archived']),
            provider_id=row['provider_id'],
            model_id=row['model_id'],
            messages=tuple(messages),
            metadata=SessionMetadata.from_dict(self._load_json(row['metadata'])),
        )

    def _summary_for(self, cursor: sqlite3.Cursor, row: sqlite3.Row) -> SessionSummary:
        cursor.execute('SELECT token_usage FROM messages WHERE session_id = ?', (row['id'],))
        usages = [r['token_usage'] for r in cursor.fetchall()]
        total = 0
        for raw in usages:
            usage = TokenUsage.from_dict(self._load_json(raw))
            if usage is not None:
                total += usage.total
        return SessionSummary(
            id=row['id'],
            title=row['title'],
            created_at=_from_db_time(row['created_at']),
            last_modified_at=_from_db_time(row['last_modified_at']),
            is_archived=bool(row['is_archived']),
            provider_id=row['provider_id'],
            model_id=row['model_id'],
            message_count=len(usages),
            total_tokens=total,
        )

    def _record_event(self, event_type: DiagnosticEventType, **properties: str):
        if self._metrics is None:
            return
        try:
            self._metrics.record_event(DiagnosticEvent(event_type, properties=properties))
        except Exception as e:
            log.warning("sessions.event_failed", error=str(e))
