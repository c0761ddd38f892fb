"""
Parser for inline widget commands embedded in model output.

Command format: [WIDGET:<ID>|<flat json object>]
"""

import json
import re
from typing import Any, Callable, Dict, List

from ..models.core import ParsedResponse, WidgetCommand
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

WIDGET_PATTERN = re.compile(r'\[WIDGET:(\w+)\|(\{[^}]*\})\]')
_EXCESS_NEWLINES = re.compile(r'\n{3,}')


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _optional_str(params: Dict[str, Any], key: str) -> bool:
    return key not in params or isinstance(params[key], str)


WIDGET_VALIDATORS: Dict[str, Callable[[Dict[str, Any]], bool]] = {
    'W_DENTS': lambda p: isinstance(p.get('trigger'), str) and _is_number(p.get('intensity')) and
               1 <= p['intensity'] <= 10,
    'W_TAPE': lambda p: isinstance(p.get('trigger'), str) and _optional_str(p, 'currentThought'),
    'W_STOIC': lambda p: isinstance(p.get('situation'), str),
    'W_EVIDENCE': lambda p: isinstance(p.get('thought'), str) and _optional_str(p, 'distortion'),
    'W_URGESURF': lambda p: _is_number(p.get('duration')) and 0 < p['duration'] <= 3600,
    'W_CHECKIN': lambda p: _optional_str(p, 'date'),
    'W_COMMITMENT': lambda p: p.get('mode') in ('view', 'edit'),
    'W_NETWORK': lambda p: p.get('action') in ('view', 'notify', 'edit'),
    'W_THOUGHTLOG': lambda p: _optional_str(p, 'situation'),
    'W_GRATITUDE': lambda p: True,
    'W_SELFAPPRECIATION': lambda p: True,
}


def is_valid_widget_id(widget_id: str) -> bool:
    return widget_id in WIDGET_VALIDATORS


def render_widget_command(widget: WidgetCommand) -> str:
    """Render a widget back to its inline command form."""
    return f'[WIDGET:{widget.id}|{json.dumps(widget.params, separators=(",", ":"))}]'


def parse_widget_commands(response: str) -> ParsedResponse:
    """
    Extract widget commands from model output.

    Every command token is removed from the text. Valid commands are
    returned as widgets; unknown ids, malformed JSON and invalid parameters
    are reported in ``errors``.

    Args:
        response: Raw model text

    Returns:
        ParsedResponse with cleaned text, widgets and errors
    """
    widgets: List[WidgetCommand] = []
    errors: List[str] = []

    for match in WIDGET_PATTERN.finditer(response):
        widget_id, params_json = match.group(1), match.group(2)

        if not is_valid_widget_id(widget_id):
            errors.append(f'Unknown widget: {widget_id}')
            continue

        try:
            params = json.loads(params_json)
        except json.JSONDecodeError:
            errors.append(f'Failed to parse widget command: {match.group(0)}')
            continue

        if not isinstance(params, dict) or not WIDGET_VALIDATORS[widget_id](params):
            errors.append(f'Invalid params for {widget_id}: {json.dumps(params)}')
            continue

        widgets.append(WidgetCommand(id=widget_id, params=params))

    if errors:
        logger.warning(f'Widget parsing errors: {errors}')

    text = WIDGET_PATTERN.sub('', response)
    text = _EXCESS_NEWLINES.sub('\n\n', text).strip()

    return ParsedResponse(text=text, widgets=widgets, errors=errors)
