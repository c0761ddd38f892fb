"""
Agentic loop state machine and stream event models.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional, Union

from .core import AssistantMessage, CrisisAssessment, CrisisResources, Message, ToolOutput, WidgetCommand


class AgentStateError(Exception):
    """Custom exception for illegal agent loop state transitions."""
    pass


@dataclass(frozen=True)
class Idle:
    name: ClassVar[str] = 'idle'


@dataclass(frozen=True)
class Thinking:
    name: ClassVar[str] = 'thinking'
    iteration: int


@dataclass(frozen=True)
class Streaming:
    name: ClassVar[str] = 'streaming'
    iteration: int
    accumulated_text: str = ''


@dataclass(frozen=True)
class ToolExecuting:
    name: ClassVar[str] = 'tool_executing'
    iteration: int
    tool_name: str
    tool_call_id: str


@dataclass(frozen=True)
class Continuing:
    name: ClassVar[str] = 'continuing'
    iteration: int


@dataclass(frozen=True)
class Complete:
    name: ClassVar[str] = 'complete'
    total_iterations: int


@dataclass(frozen=True)
class Error:
    name: ClassVar[str] = 'error'
    error: str


AgentLoopState = Union[Idle, Thinking, Streaming, ToolExecuting, Continuing, Complete, Error]

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    'idle': frozenset({'thinking'}),
    'thinking': frozenset({'streaming', 'tool_executing', 'complete', 'error'}),
    'streaming': frozenset({'streaming', 'tool_executing', 'complete', 'error'}),
    'tool_executing': frozenset({'tool_executing', 'continuing', 'error'}),
    'continuing': frozenset({'thinking', 'complete', 'error'}),
    'complete': frozenset(),
    'error': frozenset(),
}

TERMINAL_STATES = frozenset({'complete', 'error'})


def is_terminal(state: AgentLoopState) -> bool:
    return state.name in TERMINAL_STATES


def can_transition(current: AgentLoopState, target: AgentLoopState) -> bool:
    return target.name in TRANSITIONS[current.name]


def transition(current: AgentLoopState, target: AgentLoopState) -> AgentLoopState:
    """
    Move the loop to a new state.

    Args:
        current: State the loop is in
        target: Requested next state

    Returns:
        The target state

    Raises:
        AgentStateError: If the transition is not in the transition table
    """
    if not can_transition(current, target):
        raise AgentStateError(f'Illegal agent state transition: {current.name} -> {target.name}')
    return target


@dataclass(frozen=True)
class TokenEvent:
    type: ClassVar[str] = 'token'
    text: str


@dataclass(frozen=True)
class StateChangeEvent:
    type: ClassVar[str] = 'state_change'
    state: AgentLoopState


@dataclass(frozen=True)
class ToolStartEvent:
    type: ClassVar[str] = 'tool_start'
    id: str
    name: str
    input: Dict[str, Any]


@dataclass(frozen=True)
class ToolEndEvent:
    type: ClassVar[str] = 'tool_end'
    id: str
    result: ToolOutput


@dataclass(frozen=True)
class CompleteEvent:
    """Terminal success event. ``transcript`` holds every message the turn produced."""
    type: ClassVar[str] = 'complete'
    message: AssistantMessage
    widgets: List[WidgetCommand] = field(default_factory=list)
    transcript: List[Message] = field(default_factory=list)


@dataclass(frozen=True)
class ErrorEvent:
    """Terminal failure event carrying the fallback message shown to the user."""
    type: ClassVar[str] = 'error'
    error: str
    message: AssistantMessage
    transcript: List[Message] = field(default_factory=list)


@dataclass(frozen=True)
class CrisisEvent:
    type: ClassVar[str] = 'crisis'
    assessment: CrisisAssessment
    resources: Optional[CrisisResources] = None


StreamEvent = Union[TokenEvent, StateChangeEvent, ToolStartEvent, ToolEndEvent, CompleteEvent, ErrorEvent, CrisisEvent]
