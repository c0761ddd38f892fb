"""Tests for rendering context windows into Converse requests."""

from datetime import datetime

import pytest

from recoverylm.models.core import (AssistantMessage, ContextWindow, CrisisAction, CrisisAssessment, CrisisLevel,
                                    MemoryItem, StreakInfo, SystemMessage, TemporalContext, ToolCall, UserMessage)
from recoverylm.services.prompt_builder import (assistant_tool_use_message, build_conversation_messages,
                                                build_system_prompt, estimate_tokens, tool_results_message)

T0 = datetime(2026, 3, 3, 15, 0, 0)


@pytest.fixture
def temporal():
    return TemporalContext(local_time='Tuesday, 3:00 PM',
                           day_of_week='Tuesday',
                           days_sober=42,
                           days_since_signup=30,
                           current_streak=StreakInfo(type='sobriety', days=12, start_date='2026-01-20'),
                           time_patterns=[])


def _window(temporal, **overrides):
    values = dict(system_prompt='You are a recovery companion.', current_message='How am I doing?',
                  temporal_context=temporal)
    values.update(overrides)
    return ContextWindow(**values)


class TestEstimateTokens:

    def test_rounds_up(self):
        assert estimate_tokens('') == 0
        assert estimate_tokens('abcd') == 1
        assert estimate_tokens('abcde') == 2


class TestSystemPrompt:
    """Context sections appended to the base prompt."""

    def test_base_prompt_comes_first(self, temporal):
        prompt = build_system_prompt(_window(temporal))

        assert prompt.startswith('You are a recovery companion.\n\n---\n\n# Current Session Context')
        assert '- Days sober: 42' in prompt
        assert '- Current streak: 12 days' in prompt
        assert 'This user is new' not in prompt

    def test_profile_sections(self, temporal):
        prompt = build_system_prompt(
            _window(temporal,
                    commitment_statement='One day at a time',
                    vulnerability_pattern='craving',
                    substances_of_focus=['alcohol', 'nicotine']))

        assert '"One day at a time"' in prompt
        assert 'primarily struggles with: craving' in prompt
        assert 'in recovery from: alcohol, nicotine' in prompt

    def test_new_user_note(self, temporal):
        fresh = TemporalContext(local_time='Tuesday, 3:00 PM',
                                day_of_week='Tuesday',
                                days_sober=0,
                                days_since_signup=0,
                                current_streak=StreakInfo(type='sobriety', days=0, start_date='2026-03-03'),
                                time_patterns=['Late night - historically higher risk period for many'])

        prompt = build_system_prompt(_window(fresh))

        assert 'just signed up today' in prompt
        assert '- Late night - historically higher risk period for many' in prompt

    def test_history_and_facts(self, temporal):
        prompt = build_system_prompt(
            _window(temporal,
                    facts=['Sponsor is Dana'],
                    leading_indicators=['Exercise missed 2+ days - potential drift indicator'],
                    relevant_history=[
                        MemoryItem(source='journal',
                                   timestamp=T0,
                                   content='Walked it off',
                                   relevance_score=2.0,
                                   tags=('craving',))
                    ]))

        assert '## Known Facts and Guidance\n- Sponsor is Dana' in prompt
        assert '## Leading Indicators (Risk Signals)' in prompt
        assert '- [2026-03-03] (journal, tags: craving) Walked it off' in prompt

    def test_safety_note_for_flagged_message(self, temporal):
        assessment = CrisisAssessment(level=CrisisLevel.CONCERN,
                                      triggers=['relapsed'],
                                      recommended_action=CrisisAction.SHOW_RESOURCES,
                                      timestamp=T0)

        prompt = build_system_prompt(_window(temporal, crisis_context=assessment))

        assert 'flagged this message at level "concern"' in prompt
        assert 'check in on their wellbeing' in prompt


class TestConversationMessages:
    """Converse message sequence rules."""

    def test_leading_assistant_turns_are_dropped_and_roles_merged(self, temporal):
        window = _window(temporal,
                         current_message='d',
                         recent_conversation=[
                             AssistantMessage(content='welcome', timestamp=T0),
                             UserMessage(content='a', timestamp=T0),
                             UserMessage(content='b', timestamp=T0),
                             SystemMessage(content='ignored', timestamp=T0),
                             AssistantMessage(content='c', timestamp=T0),
                         ])

        messages = build_conversation_messages(window)

        assert messages == [
            {'role': 'user', 'content': [{'text': 'a\n\nb'}]},
            {'role': 'assistant', 'content': [{'text': 'c'}]},
            {'role': 'user', 'content': [{'text': 'd'}]},
        ]

    def test_current_message_merges_into_trailing_user_turn(self, temporal):
        window = _window(temporal, current_message='second', recent_conversation=[UserMessage(content='first')])

        assert build_conversation_messages(window) == [{'role': 'user', 'content': [{'text': 'first\n\nsecond'}]}]


class TestToolMessages:

    def test_assistant_tool_use_without_text(self):
        message = assistant_tool_use_message('  ', [ToolCall(id='t-1', name='get_metrics', input={'limit': 3})])

        assert message == {
            'role': 'assistant',
            'content': [{'toolUse': {'toolUseId': 't-1', 'name': 'get_metrics', 'input': {'limit': 3}}}]
        }

    def test_tool_results_carry_status(self):
        message = tool_results_message([
            {'tool_call_id': 't-1', 'text': '{}', 'success': True},
            {'tool_call_id': 't-2', 'text': 'Error: nope', 'success': False},
        ])

        assert message['role'] == 'user'
        assert [block['toolResult']['status'] for block in message['content']] == ['success', 'error']
        assert message['content'][1]['toolResult']['content'] == [{'text': 'Error: nope'}]
