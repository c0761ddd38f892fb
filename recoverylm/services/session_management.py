"""
Session lifecycle: create, resume, fork, persist and locate today's session.
"""

import re
import uuid
from datetime import datetime
from typing import Optional

from ..models.core import Session, from_record, to_record
from ..utils.config import SessionConfig, config
from ..utils.logging_config import get_logger
from ..utils.storage_client import StorageClient, StorageError
from ..utils.timestamp_utils import from_millis, now, to_millis

logger = get_logger(__name__)

SESSION_ID_PATTERN = re.compile(r'^session_(\d+)_')


class SessionManagementError(Exception):
    """Custom exception for session management errors."""
    pass


def generate_session_id(moment: Optional[datetime] = None) -> str:
    """Session identifier embedding its creation instant: session_{epoch_millis}_{7 hex chars}."""
    return f'session_{to_millis(moment)}_{uuid.uuid4().hex[:7]}'


def parse_session_timestamp(session_id: str) -> Optional[datetime]:
    """Creation instant embedded in a session id, or None for foreign ids."""
    match = SESSION_ID_PATTERN.match(session_id)
    if not match:
        return None
    return from_millis(int(match.group(1)))


class SessionManager:
    """Manages conversation sessions backed by the storage collaborator."""

    def __init__(self, storage: StorageClient, session_config: Optional[SessionConfig] = None):
        """
        Initialize the session manager.

        Args:
            storage: Storage collaborator
            session_config: SessionConfig instance (optional, uses global config if None)
        """
        self.storage = storage
        self.config = session_config or config.session

    def create(self) -> Session:
        created_at = now()
        session = Session(id=generate_session_id(created_at), created_at=created_at, last_active_at=created_at)
        logger.info(f'Created session {session.id}')
        return session

    def resume(self, session_id: str) -> Optional[Session]:
        """
        Rebuild a session from storage.

        Args:
            session_id: Session identifier

        Returns:
            The session, or None when it has no stored messages or storage fails
        """
        try:
            records = self.storage.get_history(session_id)
        except StorageError as e:
            logger.error(f'Failed to resume session {session_id}: {e}')
            return None

        if not records:
            return None

        messages = [message for message in (from_record(record) for record in records) if message is not None]
        created_at = parse_session_timestamp(session_id) or min(record.timestamp for record in records)
        last_active_at = max(record.timestamp for record in records)

        session = Session(id=session_id,
                          created_at=created_at,
                          last_active_at=last_active_at,
                          message_count=len(messages),
                          messages=messages,
                          persisted_count=len(messages))

        logger.debug(f'Resumed session {session_id} with {len(messages)} messages')
        return session

    def fork(self, session_id: str) -> Session:
        """
        Copy a session's messages under a new identifier.

        The source's stored messages are never modified. A missing source
        yields a fresh empty session.

        Args:
            session_id: Source session identifier

        Returns:
            The forked, not yet persisted, session
        """
        source = self.resume(session_id)
        if source is None:
            logger.info(f'Fork source {session_id} not found, creating a new session')
            return self.create()

        created_at = now()
        session = Session(id=generate_session_id(created_at),
                          created_at=created_at,
                          last_active_at=max(message.timestamp for message in source.messages),
                          message_count=len(source.messages),
                          forked_from=session_id,
                          messages=list(source.messages))

        logger.info(f'Forked session {session_id} into {session.id} ({session.message_count} messages)')
        return session

    def save(self, session: Session) -> None:
        """
        Append the session's unsaved messages to storage.

        Args:
            session: Session to persist

        Raises:
            SessionManagementError: If storage rejects a message
        """
        pending = session.messages[session.persisted_count:]
        try:
            for message in pending:
                self.storage.append_message(to_record(message, session.id))
                session.persisted_count += 1
        except StorageError as e:
            logger.error(f'Failed to save session {session.id} after {session.persisted_count} messages: {e}')
            raise SessionManagementError(f'Failed to save session {session.id}: {e}')
        finally:
            session.message_count = len(session.messages)
            if session.messages:
                session.last_active_at = max(message.timestamp for message in session.messages)

        logger.debug(f'Saved {len(pending)} new messages for session {session.id}')

    def is_from_today(self, session_id: str) -> bool:
        created_at = parse_session_timestamp(session_id)
        return created_at is not None and created_at.date() == now().date()

    def get_today_session(self) -> Optional[Session]:
        """Most recent session started today, looking only at the configured scan window."""
        try:
            session_ids = self.storage.get_recent_session_ids(self.config.today_scan_window)
        except StorageError as e:
            logger.error(f'Failed to list recent sessions: {e}')
            return None

        for session_id in session_ids[:self.config.today_scan_window]:
            if self.is_from_today(session_id):
                session = self.resume(session_id)
                if session is not None:
                    return session
        return None

    def get_or_create_today_session(self) -> Session:
        return self.get_today_session() or self.create()
