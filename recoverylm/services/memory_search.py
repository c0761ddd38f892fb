"""
Keyword and theme based search over journal entries and past chat sessions.
"""

import re
from datetime import timedelta
from typing import Dict, List, Mapping, Optional, Sequence

from ..models.core import MemoryItem
from ..utils.config import ContextConfig, config
from ..utils.logging_config import get_logger
from ..utils.resources import load_json_resource
from ..utils.storage_client import StorageClient, StorageError
from ..utils.timestamp_utils import now

logger = get_logger(__name__)

_NON_WORD = re.compile(r"[^\w\s'-]")
_MIN_KEYWORD_LENGTH = 3
_DEDUP_PREFIX_LENGTH = 80


class MemorySearch:
    """Scores historical journal entries and user messages against the current message."""

    def __init__(self,
                 storage: StorageClient,
                 context_config: Optional[ContextConfig] = None,
                 lexicon: Optional[Mapping[str, object]] = None):
        """
        Initialize memory search.

        Args:
            storage: Storage collaborator
            context_config: ContextConfig instance (optional, uses global config if None)
            lexicon: Dict with 'themes' and 'stop_words' (optional, loaded from JSON if None)
        """
        self.storage = storage
        self.config = context_config or config.context
        if lexicon is None:
            lexicon = load_json_resource('memory_lexicon.json', self.config.lexicon_path)

        self.themes: Dict[str, List[str]] = {theme: list(words) for theme, words in lexicon['themes'].items()}
        self.stop_words = frozenset(lexicon['stop_words'])

        self.max_entries = self.config.max_memory_tokens // self.config.tokens_per_entry
        self.char_limit = self.config.tokens_per_entry * 4

    def extract_keywords(self, message: str) -> List[str]:
        """Lowercased tokens of 3+ characters that are not stop words, deduplicated in order."""
        words = _NON_WORD.sub(' ', message.lower()).split()
        keywords = [word for word in words if len(word) >= _MIN_KEYWORD_LENGTH and word not in self.stop_words]
        return list(dict.fromkeys(keywords))

    def detect_themes(self, message: str) -> List[str]:
        lower = message.lower()
        return [theme for theme, words in self.themes.items() if any(word in lower for word in words)]

    def score_content(self, content: str, keywords: Sequence[str], themes: Sequence[str]) -> float:
        lower = content.lower()
        score = float(sum(1 for keyword in keywords if keyword in lower))
        for theme in themes:
            if any(word in lower for word in self.themes.get(theme, ())):
                score += 0.5
        return score

    def truncate_content(self, content: str) -> str:
        """Cut to the per-entry limit, preferring a sentence boundary in the back half."""
        if len(content) <= self.char_limit:
            return content

        truncated = content[:self.char_limit]
        last_sentence_end = max(truncated.rfind('. '), truncated.rfind('! '), truncated.rfind('? '))
        if last_sentence_end > self.char_limit * 0.5:
            return truncated[:last_sentence_end + 1]
        return truncated + '...'

    def search_relevant_history(self, current_message: str, current_session_id: str) -> List[MemoryItem]:
        """
        Find past content relevant to the current message.

        Args:
            current_message: The user's new message
            current_session_id: Session to exclude from the chat candidates

        Returns:
            Memory items ordered by relevance, deduplicated and capped
        """
        keywords = self.extract_keywords(current_message)
        themes = self.detect_themes(current_message)

        if not keywords and not themes:
            return []

        candidates: List[MemoryItem] = []

        for entry in self._fetch_journal_entries():
            if not entry.content or entry.entry_type != 'user':
                continue
            score = self.score_content(entry.content, keywords, themes)
            if score > 0:
                candidates.append(
                    MemoryItem(source='journal',
                               timestamp=entry.timestamp,
                               content=self.truncate_content(entry.content),
                               relevance_score=score,
                               tags=tuple(entry.tags)))

        for record, session_themes in self._fetch_past_messages(current_session_id):
            if not record.content:
                continue
            score = self.score_content(record.content, keywords, themes)
            if score > 0:
                candidates.append(
                    MemoryItem(source='chat',
                               timestamp=record.timestamp,
                               content=self.truncate_content(record.content),
                               relevance_score=score,
                               session_themes=tuple(session_themes)))

        candidates.sort(key=lambda item: (item.relevance_score, item.timestamp), reverse=True)

        seen = set()
        results = []
        for item in candidates:
            prefix = item.content[:_DEDUP_PREFIX_LENGTH].lower()
            if prefix in seen:
                continue
            seen.add(prefix)
            results.append(item)

        logger.debug(f'Memory search: {len(keywords)} keywords, {len(themes)} themes, '
                     f'{len(candidates)} candidates, {min(len(results), self.max_entries)} selected')
        return results[:self.max_entries]

    def _fetch_journal_entries(self):
        try:
            cutoff = now() - timedelta(days=self.config.journal_lookback_days)
            return self.storage.get_journal_entries(after=cutoff)
        except StorageError as e:
            logger.warning(f'Failed to fetch journal entries for memory search: {e}')
            return []

    def _fetch_past_messages(self, current_session_id: str):
        """User messages of the most recent past sessions, paired with each session's themes."""
        try:
            session_ids = self.storage.get_recent_session_ids(self.config.max_past_sessions + 1)
            past_ids = [sid for sid in session_ids if sid != current_session_id][:self.config.max_past_sessions]

            pairs = []
            for session_id in past_ids:
                user_records = [record for record in self.storage.get_history(session_id) if record.role == 'user']
                session_themes = self.detect_themes(' '.join(record.content for record in user_records))
                pairs.extend((record, session_themes) for record in user_records)
            return pairs

        except StorageError as e:
            logger.warning(f'Failed to fetch past chat messages for memory search: {e}')
            return []
