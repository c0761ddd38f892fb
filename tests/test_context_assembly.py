"""Tests for context window assembly and budget enforcement."""

import dataclasses
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from conftest import make_metric, seed_session
from recoverylm.models.core import ContextWindow, MemoryItem, UserMessage, UserProfile
from recoverylm.services.context_assembly import (MIN_CURRENT_MESSAGE_CHARS, ContextAssembler,
                                                  build_temporal_context, detect_leading_indicators)
from recoverylm.services.memory_search import MemorySearch
from recoverylm.services.prompt_builder import estimate_window_tokens
from recoverylm.utils.timestamp_utils import now

# A Friday
FRIDAY_NIGHT = datetime(2026, 3, 6, 23, 30, 0)


class TestLeadingIndicators:
    """Drift signals derived from recent metrics."""

    def test_no_metrics(self):
        assert detect_leading_indicators([]) == ['No metrics logged recently - tracking gaps can indicate drift']

    def test_healthy_week_has_no_indicators(self):
        metrics = [make_metric(f'2026-03-0{day}') for day in range(6, 0, -1)]
        assert detect_leading_indicators(metrics, today='2026-03-06') == []

    def test_missed_habits(self):
        metrics = [
            make_metric('2026-03-06', exercise=False, meditation=False),
            make_metric('2026-03-05', exercise=False),
            make_metric('2026-03-04', meditation=False),
        ]

        indicators = detect_leading_indicators(metrics, today='2026-03-06')

        assert 'Exercise missed 2+ days - potential drift indicator' in indicators
        assert 'Meditation missed 2+ days - potential drift indicator' in indicators

    def test_mood_trending_down(self):
        moods = [3.0, 4.0, 3.0, 8.0, 8.0, 7.0]
        metrics = [make_metric(f'2026-03-0{6 - index}', mood_score=mood) for index, mood in enumerate(moods)]

        assert 'Mood trending downward over past week' in detect_leading_indicators(metrics, today='2026-03-06')

    def test_logging_gap_and_sobriety_break(self):
        metrics = [make_metric('2026-03-02'), make_metric('2026-03-01', sobriety_maintained=False)]

        indicators = detect_leading_indicators(metrics, today='2026-03-06')

        assert 'No metrics logged for 4 days' in indicators
        assert 'Sobriety break noted on 2026-03-01' in indicators


class TestTemporalContext:

    def test_friday_late_night(self):
        profile = UserProfile(display_name='Alex', created_at=FRIDAY_NIGHT - timedelta(days=10),
                              sobriety_start_date='2026-02-04')
        metrics = [make_metric('2026-03-06'), make_metric('2026-03-05'), make_metric('2026-03-04', sobriety_maintained=False)]

        temporal = build_temporal_context(profile, metrics, FRIDAY_NIGHT)

        assert temporal.local_time == 'Friday, 11:30 PM'
        assert temporal.days_sober == 30
        assert temporal.days_since_signup == 10
        assert temporal.current_streak.days == 2
        assert temporal.time_patterns == [
            'Late night - historically higher risk period for many', 'Weekend - often higher social pressure'
        ]

    def test_without_profile(self):
        temporal = build_temporal_context(None, [], datetime(2026, 3, 3, 9, 5, 0))

        assert temporal.local_time == 'Tuesday, 9:05 AM'
        assert temporal.days_sober == 0
        assert temporal.days_since_signup == 0
        assert temporal.current_streak.start_date == '2026-03-03'
        assert temporal.time_patterns == []


class TestContextAssembler:
    """Source loading and graceful degradation."""

    def test_build_collects_all_sources(self, storage, context_config):
        storage.save_profile(
            UserProfile(display_name='Alex', created_at=now() - timedelta(days=20), commitment_statement='Stay present',
                        substances_of_focus=('alcohol',)))
        storage.add_fact('Sponsor is Dana')
        storage.save_metric(make_metric('2026-03-01'))
        session_id = seed_session(storage, now() - timedelta(minutes=30), [('user', 'morning'), ('assistant', 'hi!')])
        assembler = ContextAssembler(storage, context_config=context_config, system_prompt='Base prompt')

        window = assembler.build('Thinking about the evening', session_id)

        assert window.system_prompt == 'Base prompt'
        assert window.commitment_statement == 'Stay present'
        assert window.substances_of_focus == ['alcohol']
        assert window.facts == ['Sponsor is Dana']
        assert [metric.date for metric in window.recent_metrics] == ['2026-03-01']
        assert [message.content for message in window.recent_conversation] == ['morning', 'hi!']
        assert window.estimated_tokens == estimate_window_tokens(window)

    def test_recent_conversation_is_limited(self, storage, context_config):
        config = dataclasses.replace(context_config, recent_message_limit=3)
        session_id = seed_session(storage, now() - timedelta(hours=1), [('user', f'message {i}') for i in range(6)])
        assembler = ContextAssembler(storage, context_config=config, system_prompt='Base prompt')

        window = assembler.build('next', session_id)

        assert [message.content for message in window.recent_conversation] == ['message 3', 'message 4', 'message 5']

    def test_locked_vault_degrades_to_empty_slices(self, locked_storage, context_config):
        assembler = ContextAssembler(locked_storage, context_config=context_config, system_prompt='Base prompt')

        window = assembler.build('hello', 'session_1')

        assert window.current_message == 'hello'
        assert window.facts == []
        assert window.recent_metrics == []
        assert window.recent_conversation == []
        assert window.relevant_history == []
        assert window.commitment_statement == ''

    def test_failing_memory_search_is_isolated(self, storage, context_config):
        memory_search = MagicMock(spec=MemorySearch)
        memory_search.search_relevant_history.side_effect = RuntimeError('index corrupted')
        storage.add_fact('Sponsor is Dana')
        assembler = ContextAssembler(storage, memory_search, context_config, system_prompt='Base prompt')

        window = assembler.build('hello', 'session_1')

        assert window.relevant_history == []
        assert window.facts == ['Sponsor is Dana']

    @pytest.mark.parametrize('start_date', ['03/01/2024', '2024/03/01', 'last spring'])
    def test_unparsable_sobriety_date_degrades_temporal_context(self, storage, context_config, start_date):
        storage.save_profile(
            UserProfile(display_name='Alex', created_at=now() - timedelta(days=20), commitment_statement='Stay present',
                        sobriety_start_date=start_date))
        assembler = ContextAssembler(storage, context_config=context_config, system_prompt='Base prompt')

        window = assembler.build('I feel tempted tonight', 'session_1')

        assert window.commitment_statement == 'Stay present'
        assert window.temporal_context.days_sober == 0
        assert window.temporal_context.days_since_signup == 0
        assert window.current_message == 'I feel tempted tonight'

    def test_bundled_system_prompt_is_loaded(self, storage, context_config):
        assembler = ContextAssembler(storage, context_config=context_config)
        assert assembler.system_prompt.strip()


class TestBudget:
    """Trimming order when the window exceeds the token ceiling."""

    @pytest.fixture
    def full_window(self, storage, context_config):
        temporal = build_temporal_context(None, [], datetime(2026, 3, 3, 12, 0, 0))

        def make(**overrides):
            values = dict(system_prompt='Base prompt',
                          current_message='How do I get through tonight?',
                          temporal_context=temporal,
                          facts=[f'Fact number {i} about the user' for i in range(5)],
                          recent_conversation=[UserMessage(content=f'earlier message {i} ' * 5) for i in range(4)],
                          relevant_history=[
                              MemoryItem(source='journal',
                                         timestamp=datetime(2026, 2, 1),
                                         content=f'Past entry {i} ' * 10,
                                         relevance_score=1.0) for i in range(4)
                          ])
            values.update(overrides)
            return ContextWindow(**values)

        return make

    def _assembler(self, storage, context_config, limit):
        return ContextAssembler(storage,
                                context_config=dataclasses.replace(context_config, max_context_tokens=limit),
                                system_prompt='Base prompt')

    def test_history_is_trimmed_first(self, storage, context_config, full_window):
        limit = estimate_window_tokens(full_window(relevant_history=[]))
        window = full_window()

        self._assembler(storage, context_config, limit).enforce_budget(window)

        assert window.relevant_history == []
        assert len(window.recent_conversation) == 4
        assert len(window.facts) == 5
        assert window.estimated_tokens <= limit

    def test_recent_conversation_is_trimmed_oldest_first(self, storage, context_config, full_window):
        limit = estimate_window_tokens(
            full_window(relevant_history=[], recent_conversation=[UserMessage(content='earlier message 3 ' * 5)]))
        window = full_window()

        self._assembler(storage, context_config, limit).enforce_budget(window)

        assert window.relevant_history == []
        assert [message.content for message in window.recent_conversation] == ['earlier message 3 ' * 5]
        assert len(window.facts) == 5

    def test_current_message_is_truncated_last(self, storage, context_config, full_window):
        bare = dict(facts=[], recent_conversation=[], relevant_history=[])
        limit = estimate_window_tokens(full_window(current_message='x' * MIN_CURRENT_MESSAGE_CHARS, **bare))
        window = full_window(current_message='x' * 5000, **bare)

        self._assembler(storage, context_config, limit).enforce_budget(window)

        assert window.current_message == 'x' * MIN_CURRENT_MESSAGE_CHARS
        assert window.estimated_tokens <= limit

    def test_current_message_never_cut_below_minimum(self, storage, context_config, full_window):
        window = full_window(current_message='y' * 1000, facts=[], recent_conversation=[], relevant_history=[])

        self._assembler(storage, context_config, 1).enforce_budget(window)

        assert len(window.current_message) == MIN_CURRENT_MESSAGE_CHARS
        assert window.estimated_tokens > 1
