#!/usr/bin/env python3
"""
Session Manager for support conversations.

Each session holds an append-only transcript of ChatMessages. Messages are
never reordered or edited: insertion order is display order. Sessions expire
after a TTL of inactivity and the oldest is evicted when the limit is reached.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from loguru import logger

from support_rag.models import ChatMessage, ChatRole, DEFAULT_WELCOME_MESSAGE


class Session:
    """One conversation."""

    def __init__(self, session_id: str, project_id: Optional[str], ttl_seconds: int):
        now = datetime.now(timezone.utc)
        self.session_id = session_id
        self.project_id = project_id
        self.created_at = now
        self.last_accessed = now
        self.ttl_seconds = ttl_seconds
        self._messages: List[ChatMessage] = []

    @property
    def messages(self) -> List[ChatMessage]:
        """Snapshot of the transcript; mutating it does not touch the session."""
        return list(self._messages)

    def append(self, message: ChatMessage) -> ChatMessage:
        self._messages.append(message)
        return message

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now - self.last_accessed > timedelta(seconds=self.ttl_seconds)


class SessionManager:
    """
    Manage chat sessions with their transcripts.

    Sessions expire after TTL (default: 1 hour) of inactivity.
    """

    def __init__(self, ttl_seconds: int = 3600, max_sessions: int = 1000):
        """
        Initialize session manager.

        Args:
            ttl_seconds: Time-to-live for inactive sessions (default: 1 hour)
            max_sessions: Maximum number of concurrent sessions (default: 1000)
        """
        self._sessions: Dict[str, Session] = {}
        self.ttl_seconds = ttl_seconds
        self.max_sessions = max_sessions
        logger.info(f"SessionManager initialized: ttl={ttl_seconds}s, max_sessions={max_sessions}")

    def create_session(
        self,
        welcome_message: Optional[str] = DEFAULT_WELCOME_MESSAGE,
        project_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        """
        Create a new session, seeded with the assistant's welcome message.

        Returns:
            Session ID
        """
        self.cleanup_expired()

        if len(self._sessions) >= self.max_sessions:
            oldest_id = min(self._sessions, key=lambda sid: self._sessions[sid].last_accessed)
            logger.warning(f"Max sessions reached ({self.max_sessions}), removing oldest: {oldest_id}")
            del self._sessions[oldest_id]

        session_id = session_id or str(uuid.uuid4())
        session = Session(session_id, project_id, self.ttl_seconds)
        if welcome_message:
            session.append(ChatMessage(role=ChatRole.ASSISTANT, content=welcome_message))
        self._sessions[session_id] = session

        logger.info(f"Created session: {session_id} (project={project_id})")
        return session_id

    def get_session(self, session_id: str) -> Optional[Session]:
        """Return a live session and refresh its access time, or None if missing/expired."""
        session = self._sessions.get(session_id)
        if session is None:
            return None

        now = datetime.now(timezone.utc)
        if session.is_expired(now):
            logger.info(f"Session {session_id} expired, removing")
            del self._sessions[session_id]
            return None

        session.last_accessed = now
        return session

    def get_or_create(
        self,
        session_id: Optional[str],
        welcome_message: Optional[str] = DEFAULT_WELCOME_MESSAGE,
        project_id: Optional[str] = None,
    ) -> Session:
        session = self.get_session(session_id) if session_id else None
        if session is None:
            new_id = self.create_session(welcome_message, project_id=project_id, session_id=session_id)
            session = self._sessions[new_id]
        return session

    def append_message(
        self,
        session_id: str,
        role: ChatRole,
        content: str,
        image: Optional[str] = None,
    ) -> Optional[ChatMessage]:
        """
        Append a message at the end of the transcript.

        Returns:
            The stored message, or None if the session does not exist
        """
        session = self.get_session(session_id)
        if session is None:
            logger.warning(f"Cannot append message: session {session_id} not found")
            return None

        message = session.append(ChatMessage(role=role, content=content, image=image))
        logger.debug(
            f"Appended {role.value} message #{len(session.messages)} to session {session_id}: "
            f"'{content[:50]}'"
        )
        return message

    def get_messages(self, session_id: str) -> List[ChatMessage]:
        session = self.get_session(session_id)
        return session.messages if session else []

    def delete_session(self, session_id: str) -> bool:
        if session_id in self._sessions:
            del self._sessions[session_id]
            logger.info(f"Deleted session: {session_id}")
            return True
        return False

    def cleanup_expired(self) -> int:
        """Remove expired sessions; returns how many were removed."""
        now = datetime.now(timezone.utc)
        expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired sessions")
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        total_messages = sum(len(s.messages) for s in self._sessions.values())
        return {
            "active_sessions": len(self._sessions),
            "max_sessions": self.max_sessions,
            "ttl_seconds": self.ttl_seconds,
            "total_messages": total_messages,
        }


_session_manager: Optional[SessionManager] = None


def get_session_manager() -> SessionManager:
    """Get or create the shared session manager."""
    global _session_manager
    if _session_manager is None:
        _session_manager = SessionManager()
    return _session_manager
