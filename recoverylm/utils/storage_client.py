"""
Storage collaborator contract and an in-memory vault implementation.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from ..models.core import ChatRecord, DailyMetric, EmergencyContact, JournalEntry, UserProfile
from .logging_config import get_logger

logger = get_logger(__name__)


class StorageError(Exception):
    """Custom exception for storage errors."""
    pass


@dataclass(frozen=True)
class VaultCredentials:
    """Unlock material for a single vault, passed explicitly to the storage client."""
    vault_id: str
    key: bytes


class StorageClient(ABC):
    """Read/append access to the local encrypted store.

    All listing methods return newest-first unless documented otherwise.
    Implementations raise StorageError on any failure, including a locked vault.
    """

    def __init__(self, credentials: Optional[VaultCredentials] = None):
        self.credentials = credentials

    @property
    def is_unlocked(self) -> bool:
        return self.credentials is not None

    def require_unlocked(self) -> VaultCredentials:
        if self.credentials is None:
            raise StorageError('Vault is locked')
        return self.credentials

    @abstractmethod
    def get_history(self, session_id: str) -> List[ChatRecord]:
        """Messages of a session in timestamp order (oldest first)."""

    @abstractmethod
    def append_message(self, record: ChatRecord) -> None:
        """Append one message record."""

    @abstractmethod
    def get_recent_session_ids(self, limit: int) -> List[str]:
        """Distinct session ids ordered by most recent message activity."""

    @abstractmethod
    def get_metrics(self,
                    after: Optional[str] = None,
                    before: Optional[str] = None,
                    limit: Optional[int] = None) -> List[DailyMetric]:
        """Daily metrics within an inclusive YYYY-MM-DD range."""

    @abstractmethod
    def get_facts(self) -> List[str]:
        """Free-text facts and therapist guidance."""

    @abstractmethod
    def get_profile(self) -> Optional[UserProfile]:
        """Onboarding profile, if the user has completed onboarding."""

    @abstractmethod
    def get_journal_entries(self,
                            tags: Optional[Sequence[str]] = None,
                            after: Optional[datetime] = None,
                            limit: Optional[int] = None) -> List[JournalEntry]:
        """Journal entries matching any of the tags, newer than ``after``."""

    @abstractmethod
    def get_emergency_contact(self) -> Optional[EmergencyContact]:
        """Linked emergency contact, if any."""

    def health_check(self) -> bool:
        """
        Perform a health check on the store.

        Returns:
            True if the store is reachable and unlocked, False otherwise
        """
        try:
            self.get_recent_session_ids(1)
            return True
        except Exception as e:
            logger.error(f'Storage health check failed: {e}')
            return False


class InMemoryStorageClient(StorageClient):
    """Process-local store used for development and tests."""

    def __init__(self, credentials: Optional[VaultCredentials] = None):
        """
        Initialize the in-memory store.

        Args:
            credentials: Unlock material; without it every operation raises StorageError
        """
        super().__init__(credentials)
        self._lock = threading.Lock()
        self._messages: List[ChatRecord] = []
        self._metrics: Dict[str, DailyMetric] = {}
        self._journal: List[JournalEntry] = []
        self._facts: List[str] = []
        self._profile: Optional[UserProfile] = None
        self._emergency_contact: Optional[EmergencyContact] = None

        logger.info(f'Initialized in-memory storage (unlocked: {self.is_unlocked})')

    def get_history(self, session_id: str) -> List[ChatRecord]:
        self.require_unlocked()
        with self._lock:
            records = [record for record in self._messages if record.session_id == session_id]
        return sorted(records, key=lambda record: record.timestamp)

    def append_message(self, record: ChatRecord) -> None:
        self.require_unlocked()
        with self._lock:
            self._messages.append(record)
        logger.debug(f'Stored {record.role} message for session {record.session_id}')

    def get_recent_session_ids(self, limit: int) -> List[str]:
        self.require_unlocked()
        with self._lock:
            records = sorted(self._messages, key=lambda record: record.timestamp, reverse=True)

        session_ids: List[str] = []
        for record in records:
            if record.session_id not in session_ids:
                session_ids.append(record.session_id)
                if len(session_ids) >= limit:
                    break
        return session_ids

    def get_metrics(self,
                    after: Optional[str] = None,
                    before: Optional[str] = None,
                    limit: Optional[int] = None) -> List[DailyMetric]:
        self.require_unlocked()
        with self._lock:
            metrics = sorted(self._metrics.values(), key=lambda metric: metric.date, reverse=True)

        if after:
            metrics = [metric for metric in metrics if metric.date >= after]
        if before:
            metrics = [metric for metric in metrics if metric.date <= before]
        return metrics[:limit] if limit is not None else metrics

    def get_facts(self) -> List[str]:
        self.require_unlocked()
        with self._lock:
            return list(self._facts)

    def get_profile(self) -> Optional[UserProfile]:
        self.require_unlocked()
        return self._profile

    def get_journal_entries(self,
                            tags: Optional[Sequence[str]] = None,
                            after: Optional[datetime] = None,
                            limit: Optional[int] = None) -> List[JournalEntry]:
        self.require_unlocked()
        with self._lock:
            entries = sorted(self._journal, key=lambda entry: entry.timestamp, reverse=True)

        if tags:
            wanted = set(tags)
            entries = [entry for entry in entries if wanted.intersection(entry.tags)]
        if after:
            entries = [entry for entry in entries if entry.timestamp > after]
        return entries[:limit] if limit is not None else entries

    def get_emergency_contact(self) -> Optional[EmergencyContact]:
        self.require_unlocked()
        return self._emergency_contact

    # Write helpers for seeding the store

    def save_metric(self, metric: DailyMetric) -> None:
        """Insert or replace the metric for its date."""
        self.require_unlocked()
        with self._lock:
            self._metrics[metric.date] = metric

    def save_journal_entry(self, entry: JournalEntry) -> None:
        self.require_unlocked()
        with self._lock:
            self._journal.append(entry)

    def add_fact(self, fact: str) -> None:
        self.require_unlocked()
        with self._lock:
            self._facts.append(fact)

    def save_profile(self, profile: UserProfile) -> None:
        self.require_unlocked()
        self._profile = profile

    def save_emergency_contact(self, contact: Optional[EmergencyContact]) -> None:
        self.require_unlocked()
        self._emergency_contact = contact
