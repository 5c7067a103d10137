"""Tests for SQLite session persistence."""

import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from oneshot.exceptions import InvalidFormatError, SessionNotFoundError
from oneshot.services.models.context_models import ContextItem
from oneshot.services.models.llm_models import MessageRole, TokenUsage
from oneshot.services.models.metrics_models import DiagnosticEventType
from oneshot.services.models.session_models import (
    ExportFormat,
    Message,
    MessageMetadata,
    Session,
    SessionFilters,
    SessionMetadata,
)
from oneshot.services.session_service import SQLiteSessionStore

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _session(title: str, minutes: int = 0, provider_id: str = "p1", **kwargs) -> Session:
    when = BASE_TIME + timedelta(minutes=minutes)
    return Session(provider_id=provider_id, model_id="m", title=title,
                   created_at=when, last_modified_at=when, **kwargs)


def test_create_and_load(session_store: SQLiteSessionStore, metrics) -> None:
    session = session_store.create_session("p1", "m1", "First chat")

    loaded = session_store.get_session(session.id)

    assert loaded.title == "First chat"
    assert loaded.provider_id == "p1"
    assert loaded.messages == ()
    assert metrics.get_app_metrics().session_count == 1


def test_default_title(session_store: SQLiteSessionStore) -> None:
    assert session_store.create_session("p1", "m1").title == "New Chat"


def test_missing_session(session_store: SQLiteSessionStore) -> None:
    with pytest.raises(SessionNotFoundError):
        session_store.get_session("missing")
    with pytest.raises(SessionNotFoundError):
        session_store.save_message(Message("hi", MessageRole.USER), "missing")
    with pytest.raises(SessionNotFoundError):
        session_store.delete_session("missing")


def test_messages_keep_order_and_fields(session_store: SQLiteSessionStore, make_item) -> None:
    session = session_store.create_session("p1", "m1")
    user = Message("question", MessageRole.USER, context_items=(make_item("ctx", 5),))
    reply = Message(
        "answer", MessageRole.ASSISTANT,
        token_usage=TokenUsage(input=10, output=3),
        metadata=MessageMetadata(latency=1.25, model="m1", temperature=0.5),
    )
    session_store.save_message(user, session.id)
    session_store.save_message(reply, session.id)

    loaded = session_store.get_session(session.id)

    assert [m.content for m in loaded.messages] == ["question", "answer"]
    assert loaded.messages[0].context_items[0] == make_item("ctx", 5)
    assert loaded.messages[1].token_usage == TokenUsage(input=10, output=3)
    assert loaded.messages[1].metadata.latency == 1.25
    assert loaded.messages[1].timestamp == reply.timestamp
    assert loaded.last_modified_at >= session.last_modified_at


def test_save_message_updates_in_place(session_store: SQLiteSessionStore) -> None:
    session = session_store.create_session("p1", "m1")
    first = Message("draft", MessageRole.ASSISTANT)
    session_store.save_message(first, session.id)
    session_store.save_message(Message("next", MessageRole.USER), session.id)

    session_store.save_message(Message("final", MessageRole.ASSISTANT, id=first.id), session.id)

    assert [m.content for m in session_store.get_session(session.id).messages] == ["final", "next"]


def test_save_session_replaces_messages(session_store: SQLiteSessionStore) -> None:
    session = _session("chat", messages=(
        Message("a", MessageRole.USER), Message("b", MessageRole.ASSISTANT),
    ))
    session_store.save_session(session)
    session_store.save_session(replace(session, messages=session.messages[:1]))

    assert [m.content for m in session_store.get_session(session.id).messages] == ["a"]


def test_update_title(session_store: SQLiteSessionStore) -> None:
    session = session_store.create_session("p1", "m1")
    session_store.update_session_title(session.id, "Renamed")

    assert session_store.get_session(session.id).title == "Renamed"
    with pytest.raises(SessionNotFoundError):
        session_store.update_session_title("missing", "x")


def test_listing_is_newest_first(session_store: SQLiteSessionStore) -> None:
    for n, title in enumerate(["old", "middle", "new"]):
        session_store.save_session(_session(title, minutes=n))

    assert [s.title for s in session_store.get_all_sessions()] == ["new", "middle", "old"]
    assert [s.title for s in session_store.get_recent_sessions(limit=2)] == ["new", "middle"]


def test_archive_hides_from_recent(session_store: SQLiteSessionStore) -> None:
    kept = _session("kept")
    archived = _session("archived", minutes=1)
    session_store.save_session(kept)
    session_store.save_session(archived)

    session_store.archive_session(archived.id)

    assert [s.title for s in session_store.get_recent_sessions()] == ["kept"]
    assert len(session_store.get_all_sessions(include_archived=True)) == 2
    assert [s.title for s in session_store.get_all_sessions(include_archived=False)] == ["kept"]
    assert [s.title for s in session_store.search_sessions(
        filters=SessionFilters(archived_only=True))] == ["archived"]

    session_store.unarchive_session(archived.id)
    assert not session_store.get_session(archived.id).is_archived


def test_search_title_and_content(session_store: SQLiteSessionStore) -> None:
    titled = _session("Python decorators")
    content = _session("Untitled", minutes=1, messages=(Message("How do I use a DECORATOR?", MessageRole.USER),))
    other = _session("Rust lifetimes", minutes=2)
    for session in (titled, content, other):
        session_store.save_session(session)

    results = session_store.search_sessions("decorator")

    assert [s.id for s in results] == [content.id, titled.id]


def test_search_filters(session_store: SQLiteSessionStore) -> None:
    a = _session("a", provider_id="openai", metadata=SessionMetadata(tags=("work", "python")))
    b = _session("b", minutes=10, provider_id="ollama", metadata=SessionMetadata(tags=("work",)))
    c = _session("c", minutes=120, provider_id="openai")
    for session in (a, b, c):
        session_store.save_session(session)

    by_provider = session_store.search_sessions(filters=SessionFilters(provider_id="openai"))
    assert {s.title for s in by_provider} == {"a", "c"}

    by_tags = session_store.search_sessions(filters=SessionFilters(tags=("work", "python")))
    assert [s.title for s in by_tags] == ["a"]

    window = (BASE_TIME - timedelta(minutes=1), BASE_TIME + timedelta(minutes=30))
    by_date = session_store.search_sessions(filters=SessionFilters(date_range=window))
    assert [s.title for s in by_date] == ["b", "a"]


def test_summary_counts(session_store: SQLiteSessionStore) -> None:
    session = _session("chat", messages=(
        Message("q", MessageRole.USER),
        Message("a", MessageRole.ASSISTANT, token_usage=TokenUsage(input=7, output=5)),
    ))
    session_store.save_session(session)

    summary = session_store.get_all_sessions()[0]

    assert summary.message_count == 2
    assert summary.total_tokens == 12


def test_delete_cascades(session_store: SQLiteSessionStore, metrics) -> None:
    session = _session("chat", messages=(Message("q", MessageRole.USER),))
    session_store.save_session(session)

    session_store.delete_session(session.id)

    assert session_store.get_all_sessions() == []
    with pytest.raises(SessionNotFoundError):
        session_store.get_session(session.id)
    events = [event.type for event in metrics.get_recent_events()]
    assert DiagnosticEventType.SESSION_DELETED in events


def test_bulk_operations(session_store: SQLiteSessionStore) -> None:
    sessions = [_session(f"s{n}", minutes=n) for n in range(3)]
    for session in sessions:
        session_store.save_session(session)

    assert session_store.bulk_archive([sessions[0].id, "missing"]) == 1
    assert session_store.bulk_delete([sessions[1].id, sessions[2].id]) == 2
    assert [s.title for s in session_store.get_all_sessions()] == ["s0"]
    assert session_store.bulk_delete([]) == 0


def test_duplicate_session(session_store: SQLiteSessionStore) -> None:
    original = _session("Plan", messages=(Message("q", MessageRole.USER),))
    session_store.save_session(original)

    copy = session_store.duplicate_session(original.id)

    assert copy.id != original.id
    assert copy.title == "Plan (Copy)"
    assert copy.messages[0].content == "q"
    assert copy.messages[0].id != original.messages[0].id
    assert len(session_store.get_all_sessions()) == 2


def test_merge_messages(session_store: SQLiteSessionStore) -> None:
    target = _session("target", messages=(Message("t", MessageRole.USER),))
    first = _session("first", messages=(Message("f1", MessageRole.USER), Message("f2", MessageRole.ASSISTANT)))
    second = _session("second", messages=(Message("s1", MessageRole.USER),))
    for session in (target, first, second):
        session_store.save_session(session)

    merged = session_store.merge_messages(target.id, [second.id, first.id])

    assert [m.content for m in merged.messages] == ["t", "s1", "f1", "f2"]
    assert [m.content for m in session_store.get_session(target.id).messages] == ["t", "s1", "f1", "f2"]
    assert len(session_store.get_session(first.id).messages) == 2


def test_export_and_import(session_store: SQLiteSessionStore, metrics) -> None:
    original = _session("Roundtrip", messages=(Message("hello", MessageRole.USER),))
    session_store.save_session(original)

    data = session_store.export_session(original.id, ExportFormat.JSON)
    assert json.loads(data)['title'] == "Roundtrip"

    # Importing over an existing id yields a new session
    imported = session_store.import_session(data)
    assert imported.id != original.id
    assert imported.messages[0].content == "hello"
    assert len(session_store.get_all_sessions()) == 2

    names = [event.type for event in metrics.get_recent_events()]
    assert DiagnosticEventType.EXPORT_COMPLETED in names
    assert DiagnosticEventType.IMPORT_COMPLETED in names


def test_import_into_fresh_store_keeps_id(session_store: SQLiteSessionStore, tmp_path) -> None:
    original = _session("Portable")
    session_store.save_session(original)
    data = session_store.export_session(original.id, ExportFormat.JSON)

    other = SQLiteSessionStore(str(tmp_path / "other.db"))

    assert other.import_session(data).id == original.id


def test_import_rejects_non_json(session_store: SQLiteSessionStore) -> None:
    with pytest.raises(InvalidFormatError):
        session_store.import_session(b"# hi", ExportFormat.MARKDOWN)


def test_context_item_survives_storage(session_store: SQLiteSessionStore, make_item) -> None:
    item: ContextItem = make_item("ctx", 3, relevance=0.5)
    session = _session("ctx", messages=(Message("q", MessageRole.USER, context_items=(item,)),))
    session_store.save_session(session)

    stored = session_store.get_session(session.id).messages[0].context_items[0]

    assert stored.metadata.relevance == 0.5
    assert stored.last_modified == item.last_modified
