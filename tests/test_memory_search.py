"""Tests for keyword and theme based memory search."""

import dataclasses
from datetime import timedelta

import pytest

from conftest import seed_session
from recoverylm.models.core import JournalEntry
from recoverylm.services.memory_search import MemorySearch
from recoverylm.utils.timestamp_utils import now

QUERY = 'I had a craving after the argument with my boss'


def _journal(entry_id, content, days_ago, entry_type='user', tags=()):
    return JournalEntry(id=entry_id,
                        timestamp=now() - timedelta(days=days_ago),
                        session_id='session_journal',
                        content=content,
                        entry_type=entry_type,
                        tags=tuple(tags))


@pytest.fixture
def search(storage, context_config):
    return MemorySearch(storage, context_config)


class TestKeywordsAndThemes:

    def test_extract_keywords_drops_stop_words_and_short_tokens(self, search):
        assert search.extract_keywords(QUERY) == ['craving', 'argument', 'boss']

    @pytest.mark.parametrize('message', [
        QUERY,
        "Couldn't sleep; the urge-surfing helped a bit, I'm proud!",
        'Day 3... cravings, cravings and MORE cravings',
    ])
    def test_extract_keywords_is_idempotent(self, search, message):
        keywords = search.extract_keywords(message)

        assert search.extract_keywords(' '.join(keywords)) == keywords
        assert all(len(keyword) >= 3 and keyword not in search.stop_words for keyword in keywords)

    def test_extract_keywords_deduplicates_and_strips_punctuation(self, search):
        assert search.extract_keywords('Craving, craving... CRAVING!') == ['craving']

    def test_detect_themes(self, search):
        assert search.detect_themes(QUERY) == ['craving', 'relationships', 'work']

    def test_score_counts_keywords_and_theme_hits(self, search):
        score = search.score_content('Strong craving after work', ['craving', 'argument'], ['craving', 'work'])
        assert score == 2.0

    def test_truncate_prefers_sentence_boundary(self, search):
        content = 'A' * 400 + '. ' + 'B' * 400

        truncated = search.truncate_content(content)

        assert truncated == 'A' * 400 + '.'

    def test_truncate_without_boundary_adds_ellipsis(self, search):
        truncated = search.truncate_content('x' * 1000)

        assert truncated == 'x' * search.char_limit + '...'


class TestSearchRelevantHistory:
    """Candidate gathering, ranking and deduplication."""

    def test_ranks_chat_and_journal_by_score(self, storage, search):
        storage.save_journal_entry(_journal('j1', 'Had a strong craving after work yesterday.', days_ago=3))
        seed_session(storage,
                     now() - timedelta(days=1), [('user', 'The craving hit after my boss yelled'),
                                                 ('assistant', 'That sounds like a hard craving moment with your boss')])

        results = search.search_relevant_history(QUERY, 'session_current')

        assert [(item.source, item.relevance_score) for item in results] == [('chat', 3.0), ('journal', 2.0)]
        assert results[0].session_themes == ('craving', 'work')

    def test_current_session_is_excluded(self, storage, search):
        seed_session(storage, now(), [('user', 'craving again')], session_id='session_current')

        assert search.search_relevant_history(QUERY, 'session_current') == []

    def test_old_and_non_user_journal_entries_are_ignored(self, storage, search):
        storage.save_journal_entry(_journal('old', 'craving from long ago', days_ago=90))
        storage.save_journal_entry(_journal('sys', 'craving reminder', days_ago=1, entry_type='system'))

        assert search.search_relevant_history(QUERY, 'session_current') == []

    def test_duplicate_prefixes_are_collapsed(self, storage, search):
        storage.save_journal_entry(_journal('a', 'Craving after the argument. Went for a walk.', days_ago=2))
        storage.save_journal_entry(_journal('b', 'craving after the argument. went for a walk.', days_ago=1))

        results = search.search_relevant_history(QUERY, 'session_current')

        assert len(results) == 1

    def test_result_count_is_capped_by_memory_budget(self, storage, context_config):
        search = MemorySearch(storage, dataclasses.replace(context_config, max_memory_tokens=300))
        for index in range(5):
            storage.save_journal_entry(_journal(f'j{index}', f'Entry {index}: craving after work', days_ago=index + 1))

        assert len(search.search_relevant_history(QUERY, 'session_current')) == 2

    def test_message_without_signal_returns_nothing(self, storage, search):
        storage.save_journal_entry(_journal('j1', 'hello there', days_ago=1))

        assert search.search_relevant_history('hi there', 'session_current') == []

    def test_locked_vault_degrades_to_empty(self, locked_storage, context_config):
        search = MemorySearch(locked_storage, context_config)

        assert search.search_relevant_history(QUERY, 'session_current') == []

    def test_repeated_search_is_stable(self, storage, search):
        storage.save_journal_entry(_journal('j1', 'Had a strong craving after work yesterday.', days_ago=3))
        seed_session(storage, now() - timedelta(days=2), [('user', 'My boss again')])

        first = search.search_relevant_history(QUERY, 'session_current')
        second = search.search_relevant_history(QUERY, 'session_current')

        assert first == second
