"""
Core data models for the conversational dispatch core.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import total_ordering
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import now

logger = get_logger(__name__)


@total_ordering
class CrisisLevel(Enum):
    """Ordered severity classification of a user message."""
    NONE = 'none'
    MONITOR = 'monitor'
    CONCERN = 'concern'
    URGENT = 'urgent'
    EMERGENCY = 'emergency'

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def escalated(self) -> 'CrisisLevel':
        """Next tier up; emergency is the ceiling."""
        return _LEVEL_ORDER[min(self.rank + 1, len(_LEVEL_ORDER) - 1)]

    def __lt__(self, other):
        if not isinstance(other, CrisisLevel):
            return NotImplemented
        return self.rank < other.rank


_LEVEL_ORDER = [CrisisLevel.NONE, CrisisLevel.MONITOR, CrisisLevel.CONCERN, CrisisLevel.URGENT, CrisisLevel.EMERGENCY]


class CrisisAction(Enum):
    """Action recommended to the caller for a crisis level."""
    PROCEED = 'proceed'
    INJECT_CONTEXT = 'inject-context'
    SHOW_RESOURCES = 'show-resources'
    PAUSE_AND_CONNECT = 'pause-and-connect'
    EMERGENCY_PROTOCOL = 'emergency-protocol'


@dataclass(frozen=True)
class CrisisAssessment:
    """Result of evaluating one outbound message."""
    level: CrisisLevel
    triggers: List[str]  # Matched cue text, in tier order
    recommended_action: CrisisAction
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'level': self.level.value,
            'triggers': list(self.triggers),
            'recommended_action': self.recommended_action.value,
            'timestamp': self.timestamp.isoformat()
        }


@dataclass(frozen=True)
class EmergencyContact:
    """Emergency contact linked by the user; never contacted by the core."""
    name: str
    relationship: str
    phone: str
    email: Optional[str] = None


@dataclass(frozen=True)
class CrisisResources:
    """Fixed resource bundle exposed on urgent and emergency levels."""
    national_suicide_prevention: str
    crisis_text_line: str
    samhsa_helpline: str
    emergency_contact: Optional[EmergencyContact] = None

    def to_dict(self) -> Dict[str, Any]:
        resources = {
            'national_suicide_prevention': self.national_suicide_prevention,
            'crisis_text_line': self.crisis_text_line,
            'samhsa_helpline': self.samhsa_helpline
        }
        if self.emergency_contact:
            resources['emergency_contact'] = {
                'name': self.emergency_contact.name,
                'relationship': self.emergency_contact.relationship,
                'phone': self.emergency_contact.phone,
                'email': self.emergency_contact.email
            }
        return resources


@dataclass(frozen=True)
class ToolCall:
    """Tool invocation requested by the inference provider."""
    id: str
    name: str
    input: Dict[str, Any]


@dataclass(frozen=True)
class ToolOutput:
    """Structured result of a local tool execution."""
    success: bool
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any) -> 'ToolOutput':
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> 'ToolOutput':
        return cls(success=False, error=error)


@dataclass(frozen=True)
class WidgetCommand:
    """Inline instruction for the presentation layer to render an exercise."""
    id: str
    params: Dict[str, Any]


@dataclass(frozen=True)
class ParsedResponse:
    """Assistant text with widget commands stripped out."""
    text: str
    widgets: List[WidgetCommand]
    errors: List[str]


@dataclass(frozen=True)
class UserMessage:
    role: ClassVar[str] = 'user'
    content: str
    timestamp: datetime = field(default_factory=now)
    crisis_level: Optional[CrisisLevel] = None


@dataclass(frozen=True)
class AssistantMessage:
    role: ClassVar[str] = 'assistant'
    content: str
    timestamp: datetime = field(default_factory=now)
    tool_calls: Tuple[ToolCall, ...] = ()
    widgets: Tuple[WidgetCommand, ...] = ()


@dataclass(frozen=True)
class SystemMessage:
    role: ClassVar[str] = 'system'
    content: str
    timestamp: datetime = field(default_factory=now)


@dataclass(frozen=True)
class ToolResultMessage:
    role: ClassVar[str] = 'tool_result'
    content: str  # Result text as sent back to the provider
    timestamp: datetime = field(default_factory=now)
    tool_call_id: str = ''
    result: ToolOutput = field(default_factory=lambda: ToolOutput(success=True))


Message = Union[UserMessage, AssistantMessage, SystemMessage, ToolResultMessage]


@dataclass
class Session:
    """Append-only, identity-bearing sequence of messages.

    The creation instant is embedded in the identifier (``session_{millis}_{suffix}``).
    ``persisted_count`` is the number of leading messages already written to storage.
    """
    id: str
    created_at: datetime
    last_active_at: datetime
    message_count: int = 0
    forked_from: Optional[str] = None
    messages: List[Message] = field(default_factory=list)
    persisted_count: int = 0

    def append(self, message: Message) -> None:
        self.messages.append(message)
        self.message_count = len(self.messages)
        if message.timestamp > self.last_active_at:
            self.last_active_at = message.timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'last_active_at': self.last_active_at.isoformat(),
            'message_count': self.message_count,
            'forked_from': self.forked_from,
            'messages': [{
                'role': message.role,
                'content': message.content,
                'timestamp': message.timestamp.isoformat()
            } for message in self.messages]
        }


@dataclass(frozen=True)
class ChatRecord:
    """Persisted shape of a message as exchanged with the storage collaborator."""
    id: str
    session_id: str
    role: str  # user | assistant | system | tool_result
    content: str
    timestamp: datetime
    crisis_level: Optional[str] = None
    tool_calls: Tuple[ToolCall, ...] = ()
    tool_call_id: Optional[str] = None
    tool_output: Optional[ToolOutput] = None
    widgets: Tuple[WidgetCommand, ...] = ()


def to_record(message: Message, session_id: str) -> ChatRecord:
    """Convert a message into its storage record."""
    base = {'id': str(uuid.uuid4()), 'session_id': session_id, 'content': message.content, 'timestamp': message.timestamp}

    if isinstance(message, UserMessage):
        return ChatRecord(role='user', crisis_level=message.crisis_level.value if message.crisis_level else None, **base)
    if isinstance(message, AssistantMessage):
        return ChatRecord(role='assistant', tool_calls=message.tool_calls, widgets=message.widgets, **base)
    if isinstance(message, SystemMessage):
        return ChatRecord(role='system', **base)
    if isinstance(message, ToolResultMessage):
        return ChatRecord(role='tool_result', tool_call_id=message.tool_call_id, tool_output=message.result, **base)
    raise TypeError(f'Unknown message type: {type(message).__name__}')


def from_record(record: ChatRecord) -> Optional[Message]:
    """Rebuild a message from its storage record; unknown roles yield None."""
    if record.role == 'user':
        level = None
        if record.crisis_level:
            try:
                level = CrisisLevel(record.crisis_level)
            except ValueError:
                logger.warning(f'Ignoring unknown crisis level {record.crisis_level!r} on message {record.id}')
        return UserMessage(content=record.content, timestamp=record.timestamp, crisis_level=level)
    if record.role == 'assistant':
        return AssistantMessage(content=record.content,
                                timestamp=record.timestamp,
                                tool_calls=tuple(record.tool_calls),
                                widgets=tuple(record.widgets))
    if record.role == 'system':
        return SystemMessage(content=record.content, timestamp=record.timestamp)
    if record.role == 'tool_result':
        return ToolResultMessage(content=record.content,
                                 timestamp=record.timestamp,
                                 tool_call_id=record.tool_call_id or '',
                                 result=record.tool_output or ToolOutput(success=True))
    return None


@dataclass(frozen=True)
class DailyMetric:
    """One day of habit tracking."""
    date: str  # YYYY-MM-DD
    sobriety_maintained: bool
    exercise: bool
    meditation: bool
    mood_score: float  # 1-10
    craving_intensity: Optional[float] = None  # 0-10, 0 = none
    sleep_quality: Optional[float] = None
    anxiety_level: Optional[float] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class JournalEntry:
    """Free-text journal entry."""
    id: str
    timestamp: datetime
    session_id: str
    content: str
    entry_type: str  # user | assistant | system
    tags: Tuple[str, ...] = ()
    sentiment: Optional[str] = None


@dataclass(frozen=True)
class UserProfile:
    """Static profile facts captured at onboarding."""
    display_name: str
    created_at: datetime
    commitment_statement: str = ''
    vulnerability_pattern: str = 'both'  # craving | rationalization | both
    substances_of_focus: Tuple[str, ...] = ()
    sobriety_start_date: Optional[str] = None  # YYYY-MM-DD


@dataclass(frozen=True)
class MemoryItem:
    """Scored historical item selected for the context window."""
    source: str  # journal | chat
    timestamp: datetime
    content: str
    relevance_score: float
    tags: Tuple[str, ...] = ()
    session_themes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StreakInfo:
    type: str
    days: int
    start_date: str


@dataclass(frozen=True)
class TemporalContext:
    """Time-derived facts about the user's situation."""
    local_time: str  # "Tuesday, 11:47 PM"
    day_of_week: str
    days_sober: int
    days_since_signup: int
    current_streak: StreakInfo
    time_patterns: List[str]


@dataclass
class ContextWindow:
    """Ephemeral, size-bounded payload assembled for one turn. Never persisted."""
    system_prompt: str
    current_message: str
    temporal_context: TemporalContext
    commitment_statement: str = ''
    vulnerability_pattern: str = 'both'
    substances_of_focus: List[str] = field(default_factory=list)
    facts: List[str] = field(default_factory=list)
    recent_metrics: List[DailyMetric] = field(default_factory=list)
    leading_indicators: List[str] = field(default_factory=list)
    recent_conversation: List[Message] = field(default_factory=list)
    relevant_history: List[MemoryItem] = field(default_factory=list)
    crisis_context: Optional[CrisisAssessment] = None
    estimated_tokens: int = 0
