"""
Local tools the model can call during the agentic loop.

Each tool declares a JSON-object input schema, validated with jsonschema before
its handler runs. Handlers only see the storage collaborator.
"""

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import jsonschema

from ..models.core import DailyMetric, ToolCall, ToolOutput
from ..utils.logging_config import get_logger
from ..utils.storage_client import StorageClient
from ..utils.timestamp_utils import format_date, from_millis
from .session_management import parse_session_timestamp

logger = get_logger(__name__)

_DATE_PATTERN = r'^\d{4}-\d{2}-\d{2}$'

RECENT_SESSION_SCAN = 20
MAX_MATCHING_MESSAGES = 5
PREVIEW_CHARS = 100
MESSAGE_CHARS = 300
JOURNAL_CHARS = 500

# Lets natural-language queries like "dichotomy of control" find W_STOIC completions
WIDGET_SEARCH_TERMS = {
    'W_DENTS': ['dents', 'urge', 'craving', 'delay', 'escape'],
    'W_TAPE': ['tape', 'play the tape', 'consequences'],
    'W_STOIC': ['stoic', 'dichotomy', 'control'],
    'W_EVIDENCE': ['evidence', 'cbt', 'thought', 'distortion'],
    'W_URGESURF': ['urge surf', 'urgesurf', 'meditation', 'riding', 'surfing'],
    'W_CHECKIN': ['check-in', 'checkin', 'daily'],
    'W_COMMITMENT': ['commitment', 'statement'],
    'W_NETWORK': ['network', 'support', 'contacts'],
}

JOURNAL_TAGS = [
    'craving', 'rationalization', 'trigger', 'gratitude', 'relapse', 'victory', 'therapy-prep', 'urge-surfed',
    'distortion-caught'
]

ToolHandler = Callable[[StorageClient, Dict[str, Any]], Any]


@dataclass(frozen=True)
class ToolDefinition:
    """Declaration of a local tool and its handler."""
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: ToolHandler

    def apply_defaults(self, tool_input: Dict[str, Any]) -> Dict[str, Any]:
        params = dict(tool_input)
        for key, prop in self.input_schema.get('properties', {}).items():
            if key not in params and 'default' in prop:
                params[key] = prop['default']
        return params


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + ('...' if len(text) > limit else '')


def keyword_matches_widget(keyword: str, widget_id: str) -> bool:
    """Match a keyword against a widget id or its search terms."""
    keyword = keyword.lower()
    if keyword in widget_id.lower():
        return True
    return any(keyword in term or term in keyword for term in WIDGET_SEARCH_TERMS.get(widget_id, ()))


def search_conversations(storage: StorageClient, params: Dict[str, Any]) -> List[Dict[str, Any]]:
    keyword = params.get('keyword')
    after_date = params.get('after_date')
    before_date = params.get('before_date')
    limit = params['limit']

    results = []
    for session_id in storage.get_recent_session_ids(RECENT_SESSION_SCAN):
        if len(results) >= limit:
            break

        created_at = parse_session_timestamp(session_id)
        if created_at is None:
            continue
        session_date = format_date(created_at)
        if after_date and session_date < after_date:
            continue
        if before_date and session_date > before_date:
            continue

        records = [record for record in storage.get_history(session_id) if record.role in ('user', 'assistant')]
        if not records:
            continue

        matching = records
        if keyword:
            lower_keyword = keyword.lower()
            matching = [
                record for record in records if lower_keyword in record.content.lower() or
                any(keyword_matches_widget(keyword, widget.id) for widget in record.widgets)
            ]
            if not matching:
                continue

        first_user = next((record for record in records if record.role == 'user'), None)
        results.append({
            'session_id': session_id,
            'date': session_date,
            'message_count': len(records),
            'preview': _truncate(first_user.content, PREVIEW_CHARS) if first_user else '',
            'matching_messages': [{
                'role': record.role,
                'content': _truncate(record.content, MESSAGE_CHARS),
                'timestamp': record.timestamp.isoformat(),
                'widgets': [widget.id for widget in record.widgets]
            } for record in matching[:MAX_MATCHING_MESSAGES]]
        })

    return results


def calculate_trends(metrics: Sequence[DailyMetric]) -> Dict[str, Any]:
    """
    Summarize metrics (newest first) into trend figures.

    Args:
        metrics: Non-empty list of daily metrics, newest first

    Returns:
        Dict with avg_mood, mood_trend, sobriety_streak, exercise_days,
        meditation_days and craving_frequency
    """
    avg_mood = sum(metric.mood_score for metric in metrics) / len(metrics)

    midpoint = len(metrics) // 2
    newer, older = metrics[:midpoint], metrics[midpoint:]
    newer_avg = sum(m.mood_score for m in newer) / len(newer) if newer else avg_mood
    older_avg = sum(m.mood_score for m in older) / len(older) if older else avg_mood

    diff = newer_avg - older_avg
    mood_trend = 'stable'
    if diff > 0.5:
        mood_trend = 'improving'
    elif diff < -0.5:
        mood_trend = 'declining'

    streak = 0
    for metric in metrics:
        if not metric.sobriety_maintained:
            break
        streak += 1

    return {
        'avg_mood': round(avg_mood, 1),
        'mood_trend': mood_trend,
        'sobriety_streak': streak,
        'exercise_days': sum(1 for m in metrics if m.exercise),
        'meditation_days': sum(1 for m in metrics if m.meditation),
        'craving_frequency': sum(1 for m in metrics if m.craving_intensity is not None and m.craving_intensity > 3)
    }


def get_metrics(storage: StorageClient, params: Dict[str, Any]) -> Dict[str, Any]:
    metrics = storage.get_metrics(after=params.get('after_date'),
                                  before=params.get('before_date'),
                                  limit=params['limit'])

    result: Dict[str, Any] = {
        'metrics': [{
            'date': metric.date,
            'mood_score': metric.mood_score,
            'sobriety_maintained': metric.sobriety_maintained,
            'exercise': metric.exercise,
            'meditation': metric.meditation,
            'craving_intensity': metric.craving_intensity,
            'notes': metric.notes
        } for metric in metrics]
    }
    if params['analyze_trends'] and metrics:
        result['trends'] = calculate_trends(metrics)
    return result


def search_journal(storage: StorageClient, params: Dict[str, Any]) -> Dict[str, Any]:
    after = params.get('after_timestamp')
    entries = storage.get_journal_entries(tags=params.get('tags'),
                                          after=from_millis(after) if after is not None else None,
                                          limit=params['limit'])
    return {
        'entries': [{
            'id': entry.id,
            'timestamp': entry.timestamp.isoformat(),
            'content': _truncate(entry.content, JOURNAL_CHARS),
            'tags': list(entry.tags),
            'sentiment': entry.sentiment
        } for entry in entries]
    }


DEFAULT_TOOLS = [
    ToolDefinition(
        name='search_conversations',
        description=('Search past chat conversations by keyword or date range. This includes previous discussions '
                     'and completed exercises (DENTS, Play the Tape, Evidence Examination, Dichotomy of Control, '
                     'Urge Surfing, etc.). Use this whenever the user asks about past exercises, techniques they '
                     'have tried, or previous conversations.'),
        input_schema={
            'type': 'object',
            'properties': {
                'keyword': {
                    'type': 'string',
                    'description': 'Text to search for in user and assistant messages.'
                },
                'after_date': {
                    'type': 'string',
                    'pattern': _DATE_PATTERN,
                    'description': 'Only sessions on or after this date (YYYY-MM-DD).'
                },
                'before_date': {
                    'type': 'string',
                    'pattern': _DATE_PATTERN,
                    'description': 'Only sessions on or before this date (YYYY-MM-DD).'
                },
                'limit': {
                    'type': 'integer',
                    'minimum': 1,
                    'default': 5,
                    'description': 'Maximum number of sessions to return. Defaults to 5.'
                }
            }
        },
        handler=search_conversations),
    ToolDefinition(
        name='get_metrics',
        description=('Retrieve daily metrics and habit tracking data: mood trends, sobriety streaks, exercise '
                     'habits and meditation practice over time.'),
        input_schema={
            'type': 'object',
            'properties': {
                'after_date': {
                    'type': 'string',
                    'pattern': _DATE_PATTERN,
                    'description': 'Only metrics on or after this date (YYYY-MM-DD).'
                },
                'before_date': {
                    'type': 'string',
                    'pattern': _DATE_PATTERN,
                    'description': 'Only metrics on or before this date (YYYY-MM-DD).'
                },
                'limit': {
                    'type': 'integer',
                    'minimum': 1,
                    'default': 14,
                    'description': 'Maximum number of days to return. Defaults to 14.'
                },
                'analyze_trends': {
                    'type': 'boolean',
                    'default': False,
                    'description': 'Include trend analysis (average mood, mood trend, streak, habit days).'
                }
            }
        },
        handler=get_metrics),
    ToolDefinition(
        name='search_journal',
        description=('Search journal entries by tags. Use this to find entries about cravings, triggers, '
                     'victories, gratitude, or other tagged content.'),
        input_schema={
            'type': 'object',
            'properties': {
                'tags': {
                    'type': 'array',
                    'items': {
                        'type': 'string',
                        'enum': JOURNAL_TAGS
                    },
                    'description': f"Filter by tags. Available tags: {', '.join(JOURNAL_TAGS)}."
                },
                'after_timestamp': {
                    'type': 'number',
                    'description': 'Unix timestamp in milliseconds. Only entries after this time.'
                },
                'limit': {
                    'type': 'integer',
                    'minimum': 1,
                    'default': 10,
                    'description': 'Maximum number of entries to return. Defaults to 10.'
                }
            }
        },
        handler=search_journal),
]


def format_tool_result(output: ToolOutput) -> str:
    """Text returned to the model for a tool execution."""
    if not output.success:
        return f'Error: {output.error}'
    return json.dumps(output.data, indent=2, default=str)


class ToolRegistry:
    """Fixed set of tools exposed to the model for a turn."""

    def __init__(self, storage: StorageClient, tools: Optional[Sequence[ToolDefinition]] = None):
        """
        Initialize the registry.

        Args:
            storage: Storage collaborator handed to every handler
            tools: Tool definitions (optional, defaults to the built-in tools)
        """
        self.storage = storage
        self.tools: Dict[str, ToolDefinition] = {tool.name: tool for tool in (tools or DEFAULT_TOOLS)}

    @property
    def names(self) -> List[str]:
        return list(self.tools)

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self.tools.get(name)

    def to_tool_config(self) -> Dict[str, Any]:
        """Bedrock Converse toolConfig for the registered tools."""
        return {
            'tools': [{
                'toolSpec': {
                    'name': tool.name,
                    'description': tool.description,
                    'inputSchema': {
                        'json': tool.input_schema
                    }
                }
            } for tool in self.tools.values()]
        }

    def execute(self, call: ToolCall) -> ToolOutput:
        """
        Run a tool call. Never raises.

        Args:
            call: Tool invocation requested by the model

        Returns:
            ToolOutput; unknown tools, invalid input and handler failures become failures
        """
        tool = self.tools.get(call.name)
        if tool is None:
            logger.warning(f'Model requested unknown tool: {call.name}')
            return ToolOutput.fail(f'Unknown tool: {call.name}')

        try:
            jsonschema.validate(call.input, tool.input_schema)
        except jsonschema.ValidationError as e:
            logger.warning(f'Invalid input for tool {call.name}: {e.message}')
            return ToolOutput.fail(f'Invalid input: {e.message}')

        try:
            data = tool.handler(self.storage, tool.apply_defaults(call.input))
        except Exception as e:
            logger.warning(f'Tool {call.name} failed: {e}')
            return ToolOutput.fail(str(e) or f'{call.name} failed')

        logger.debug(f'Tool {call.name} succeeded')
        return ToolOutput.ok(data)
