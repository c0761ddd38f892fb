"""
Rendering of a context window into the Bedrock Converse system prompt and messages.
"""

import math
from typing import Any, Dict, List, Sequence

from ..models.core import AssistantMessage, ContextWindow, CrisisLevel, ToolCall, UserMessage

CHARS_PER_TOKEN = 4

_SAFETY_NOTES = {
    CrisisLevel.URGENT: 'Please engage supportively and offer appropriate resources.',
    CrisisLevel.CONCERN: 'Please check in on their wellbeing.',
}


def estimate_tokens(text: str) -> int:
    """Token-equivalent size of a text (ceil of chars / 4)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _new_user_note(days_since_signup: int) -> str:
    if days_since_signup == 0:
        since = 'just signed up today'
    else:
        since = f"only {days_since_signup} day{'' if days_since_signup == 1 else 's'} ago"
    return (f"Note: This user is new ({since}). Be welcoming and patient while they learn the app and build "
            f"their routine. Don't shame them for missed check-ins or habits that aren't established yet.")


def build_context_sections(window: ContextWindow) -> List[str]:
    """Per-turn context sections appended to the base system prompt."""
    sections = []

    if window.commitment_statement:
        sections.append(f"## User's Commitment Statement\n\"{window.commitment_statement}\"")

    if window.vulnerability_pattern:
        sections.append(f'## Vulnerability Pattern\nThis user primarily struggles with: {window.vulnerability_pattern}')

    if window.substances_of_focus:
        sections.append(f"## Substance(s) of Focus\nThis user is in recovery from: {', '.join(window.substances_of_focus)}. "
                        f'Tailor your support to their specific recovery journey.')

    temporal = window.temporal_context
    lines = [
        '## Current Context',
        f'- Local time: {temporal.local_time}',
        f'- Days sober: {temporal.days_sober}',
        f'- Current streak: {temporal.current_streak.days} days',
        f'- Days since signup: {temporal.days_since_signup}',
    ]
    lines.extend(f'- {pattern}' for pattern in temporal.time_patterns)
    block = '\n'.join(lines)
    if temporal.days_since_signup <= 7:
        block += '\n\n' + _new_user_note(temporal.days_since_signup)
    sections.append(block)

    if window.facts:
        sections.append('## Known Facts and Guidance\n' + '\n'.join(f'- {fact}' for fact in window.facts))

    if window.leading_indicators:
        sections.append('## Leading Indicators (Risk Signals)\n' +
                        '\n'.join(f'- {indicator}' for indicator in window.leading_indicators))

    if window.recent_metrics:
        metrics = window.recent_metrics[:7]
        days = len(metrics)
        avg_mood = sum(metric.mood_score for metric in metrics) / days
        sections.append(f'## Recent Metrics (last {days} days)\n'
                        f'- Sober: {sum(1 for m in metrics if m.sobriety_maintained)}/{days} days\n'
                        f'- Exercise: {sum(1 for m in metrics if m.exercise)}/{days} days\n'
                        f'- Meditation: {sum(1 for m in metrics if m.meditation)}/{days} days\n'
                        f'- Average mood: {avg_mood:.1f}/10')

    if window.relevant_history:
        entries = []
        for item in window.relevant_history:
            label = item.source
            if item.tags:
                label += f", tags: {', '.join(item.tags)}"
            entries.append(f"- [{item.timestamp.strftime('%Y-%m-%d')}] ({label}) {item.content}")
        sections.append('## Relevant History\n' + '\n'.join(entries))

    crisis = window.crisis_context
    if crisis is not None and crisis.level != CrisisLevel.NONE:
        note = _SAFETY_NOTES.get(crisis.level, 'Monitor for escalation.')
        sections.append(f'## Safety Note\nThe safety gate has flagged this message at level "{crisis.level.value}". {note}')

    return sections


def build_system_prompt(window: ContextWindow) -> str:
    """Base system prompt followed by the current session context."""
    sections = build_context_sections(window)
    if not sections:
        return window.system_prompt
    return window.system_prompt + '\n\n---\n\n# Current Session Context\n\n' + '\n\n'.join(sections)


def text_message(role: str, text: str) -> Dict[str, Any]:
    return {'role': role, 'content': [{'text': text}]}


def build_conversation_messages(window: ContextWindow) -> List[Dict[str, Any]]:
    """
    Render recent conversation plus the current message as Converse messages.

    Only user and assistant text is included. Consecutive same-role turns are
    merged and leading assistant turns dropped, since Converse requires the
    sequence to start with a user turn and alternate roles.

    Args:
        window: Assembled context window

    Returns:
        List of Bedrock Converse message dictionaries
    """
    turns = []
    for message in window.recent_conversation:
        if isinstance(message, (UserMessage, AssistantMessage)) and message.content.strip():
            turns.append((message.role, message.content))
    turns.append(('user', window.current_message))

    merged: List[List[str]] = []
    for role, content in turns:
        if merged and merged[-1][0] == role:
            merged[-1][1] += '\n\n' + content
        elif merged or role == 'user':
            merged.append([role, content])

    return [text_message(role, content) for role, content in merged]


def assistant_tool_use_message(text: str, tool_calls: Sequence[ToolCall]) -> Dict[str, Any]:
    """Assistant turn carrying the round text and its tool-use blocks."""
    content: List[Dict[str, Any]] = []
    if text.strip():
        content.append({'text': text})
    for call in tool_calls:
        content.append({'toolUse': {'toolUseId': call.id, 'name': call.name, 'input': call.input}})
    return {'role': 'assistant', 'content': content}


def tool_results_message(results: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """
    User turn returning tool results to the model.

    Args:
        results: Dicts with 'tool_call_id', 'text' and 'success' keys

    Returns:
        Converse message with one toolResult block per result
    """
    return {
        'role': 'user',
        'content': [{
            'toolResult': {
                'toolUseId': result['tool_call_id'],
                'content': [{'text': result['text']}],
                'status': 'success' if result['success'] else 'error'
            }
        } for result in results]
    }


def estimate_window_tokens(window: ContextWindow) -> int:
    """Estimated size of everything the window contributes to a request."""
    total = estimate_tokens(build_system_prompt(window))
    for message in build_conversation_messages(window):
        total += sum(estimate_tokens(block['text']) for block in message['content'])
    return total
