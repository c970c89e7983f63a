"""
Test session management.

Append-only transcripts, TTL expiry and the session limit.
"""

from datetime import datetime, timedelta, timezone

from support_rag.models import ChatRole, DEFAULT_WELCOME_MESSAGE
from support_rag.session_manager import SessionManager


class TestSessionLifecycle:
    """Create, fetch, delete."""

    def test_new_session_has_welcome(self):
        manager = SessionManager()
        sid = manager.create_session()
        messages = manager.get_messages(sid)
        assert len(messages) == 1
        assert messages[0].role == ChatRole.ASSISTANT
        assert messages[0].content == DEFAULT_WELCOME_MESSAGE

    def test_no_welcome(self):
        manager = SessionManager()
        sid = manager.create_session(welcome_message=None)
        assert manager.get_messages(sid) == []

    def test_get_or_create_keeps_requested_id(self):
        manager = SessionManager()
        session = manager.get_or_create("client-chosen-id")
        assert session.session_id == "client-chosen-id"
        assert manager.get_or_create("client-chosen-id") is session

    def test_delete(self):
        manager = SessionManager()
        sid = manager.create_session()
        assert manager.delete_session(sid) is True
        assert manager.get_session(sid) is None
        assert manager.delete_session(sid) is False


class TestTranscript:
    """Messages keep insertion order and are never edited."""

    def test_append_order(self):
        manager = SessionManager()
        sid = manager.create_session(welcome_message=None)
        manager.append_message(sid, ChatRole.USER, "如何安装")
        manager.append_message(sid, ChatRole.ASSISTANT, "先固定支架")
        manager.append_message(sid, ChatRole.USER, "然后呢", image="data:image/png;base64,AA==")

        messages = manager.get_messages(sid)
        assert [m.content for m in messages] == ["如何安装", "先固定支架", "然后呢"]
        assert messages[2].image == "data:image/png;base64,AA=="

    def test_snapshot_is_detached(self):
        manager = SessionManager()
        sid = manager.create_session()
        manager.get_messages(sid).clear()
        assert len(manager.get_messages(sid)) == 1

    def test_append_to_missing_session(self):
        assert SessionManager().append_message("nope", ChatRole.USER, "hi") is None


class TestExpiry:
    """TTL and capacity."""

    def test_expired_session_removed(self):
        manager = SessionManager(ttl_seconds=60)
        sid = manager.create_session()
        manager._sessions[sid].last_accessed = datetime.now(timezone.utc) - timedelta(seconds=120)

        assert manager.get_session(sid) is None

    def test_cleanup_expired(self):
        manager = SessionManager(ttl_seconds=60)
        old = manager.create_session()
        manager.create_session()
        manager._sessions[old].last_accessed = datetime.now(timezone.utc) - timedelta(seconds=120)

        assert manager.cleanup_expired() == 1
        assert manager.get_stats()["active_sessions"] == 1

    def test_oldest_evicted_at_capacity(self):
        manager = SessionManager(max_sessions=2)
        first = manager.create_session()
        manager.create_session()
        manager._sessions[first].last_accessed -= timedelta(seconds=5)
        manager.create_session()

        assert manager.get_session(first) is None
        assert manager.get_stats()["active_sessions"] == 2
