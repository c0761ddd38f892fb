"""
Conversation service running one user turn end to end: gate, assemble, run, persist.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from ..models.agent import CompleteEvent, CrisisEvent, ErrorEvent, StreamEvent
from ..models.core import (AssistantMessage, CrisisAssessment, CrisisResources, Message, Session, UserMessage,
                           WidgetCommand)
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig, config
from ..utils.logging_config import get_logger
from ..utils.storage_client import StorageClient, StorageError
from ..utils.timestamp_utils import now
from .agent_runner import AgentRunner
from .agent_tools import ToolRegistry
from .context_assembly import ContextAssembler
from .crisis_assessment import (AssessmentContext, SafetyGate, get_crisis_resources, should_block_normal_flow,
                                should_inject_context, should_show_resources)
from .session_management import SessionManagementError, SessionManager

logger = get_logger(__name__)

VELOCITY_WINDOW = timedelta(seconds=60)

EMERGENCY_RESPONSE = ("I'm really concerned about what you just shared, and your safety matters most right now. "
                      "Please reach out for immediate support: call or text 988 (Suicide & Crisis Lifeline), "
                      "text HOME to 741741, or call 911 if you are in immediate danger. "
                      "You don't have to go through this alone.")


@dataclass
class TurnResult:
    """Outcome of a completed turn."""
    session_id: str
    assessment: CrisisAssessment
    message: AssistantMessage
    widgets: List[WidgetCommand] = field(default_factory=list)
    events: List[StreamEvent] = field(default_factory=list)
    resources: Optional[CrisisResources] = None
    error: Optional[str] = None
    persisted: bool = False


class ConversationService:
    """Wires the safety gate, context assembler, agent runner and session manager."""

    def __init__(self,
                 storage: StorageClient,
                 llm: Optional[BedrockLLM] = None,
                 app_config: Optional[AppConfig] = None,
                 safety_gate: Optional[SafetyGate] = None,
                 assembler: Optional[ContextAssembler] = None,
                 runner: Optional[AgentRunner] = None,
                 session_manager: Optional[SessionManager] = None):
        """
        Initialize the conversation service.

        Args:
            storage: Storage collaborator
            llm: Bedrock client (optional, created from config if None and no runner is given)
            app_config: AppConfig instance (optional, uses global config if None)
            safety_gate: SafetyGate instance (optional)
            assembler: ContextAssembler instance (optional)
            runner: AgentRunner instance (optional)
            session_manager: SessionManager instance (optional)
        """
        self.config = app_config or config
        self.storage = storage
        self.safety_gate = safety_gate or SafetyGate(self.config.safety)
        self.assembler = assembler or ContextAssembler(storage, context_config=self.config.context)
        self.sessions = session_manager or SessionManager(storage, self.config.session)
        if runner is None:
            runner = AgentRunner(llm or BedrockLLM(self.config.bedrock_llm), ToolRegistry(storage), self.config.agent)
        self.runner = runner

        logger.info('Initialized ConversationService')

    def message_velocity(self, session: Session, moment: Optional[datetime] = None) -> float:
        """User messages per minute, counting the incoming one and those sent in the last 60 seconds."""
        moment = moment or now()
        cutoff = moment - VELOCITY_WINDOW
        count = 1
        for message in reversed(session.messages):
            if message.timestamp < cutoff:
                break
            if isinstance(message, UserMessage):
                count += 1
        return float(count)

    def crisis_resources(self) -> CrisisResources:
        try:
            contact = self.storage.get_emergency_contact()
        except StorageError as e:
            logger.warning(f'Emergency contact unavailable: {e}')
            contact = None
        return get_crisis_resources(contact)

    def assess(self, session: Session, content: str, moment: Optional[datetime] = None) -> CrisisAssessment:
        moment = moment or now()
        context = AssessmentContext(recent_velocity=self.message_velocity(session, moment), time_of_day=moment.hour)
        return self.safety_gate.assess(content, context)

    def stream_turn(self, session: Session, content: str) -> Iterator[StreamEvent]:
        """
        Run one turn, yielding events as they happen.

        The session is updated and saved just before the terminal event is
        yielded; abandoning the iterator earlier persists nothing.

        Args:
            session: Session the turn belongs to
            content: User message text

        Returns:
            Iterator of stream events ending in CompleteEvent or ErrorEvent

        Raises:
            ValueError: If content is empty
        """
        self._validate(content)
        return self._turn(session, content, {})

    def send_message(self, session: Session, content: str) -> TurnResult:
        """
        Run one turn to completion.

        Args:
            session: Session the turn belongs to
            content: User message text

        Returns:
            TurnResult with the final message, events and persistence outcome

        Raises:
            ValueError: If content is empty
        """
        self._validate(content)
        outcome = {}
        events = list(self._turn(session, content, outcome))

        crisis = next((event for event in events if isinstance(event, CrisisEvent)), None)
        terminal = events[-1]

        return TurnResult(session_id=session.id,
                          assessment=outcome['assessment'],
                          message=terminal.message,
                          widgets=terminal.widgets if isinstance(terminal, CompleteEvent) else [],
                          events=events,
                          resources=crisis.resources if crisis else None,
                          error=terminal.error if isinstance(terminal, ErrorEvent) else None,
                          persisted=outcome.get('persisted', False))

    @staticmethod
    def _validate(content: str) -> None:
        if not isinstance(content, str) or not content.strip():
            raise ValueError('Message content is required')

    def _turn(self, session: Session, content: str, outcome: Dict[str, Any]) -> Iterator[StreamEvent]:
        moment = now()
        assessment = self.assess(session, content, moment)
        outcome['assessment'] = assessment
        user_message = UserMessage(content=content, timestamp=moment, crisis_level=assessment.level)

        if should_show_resources(assessment.level):
            yield CrisisEvent(assessment=assessment, resources=self.crisis_resources())

        if should_block_normal_flow(assessment.level):
            logger.warning(f'Emergency protocol for session {session.id}; skipping inference')
            reply = AssistantMessage(content=EMERGENCY_RESPONSE)
            transcript: List[Message] = [user_message, reply]
            outcome['persisted'] = self._persist(session, transcript)
            yield CompleteEvent(message=reply, widgets=[], transcript=transcript)
            return

        crisis_context = assessment if should_inject_context(assessment.level) else None
        window = self.assembler.build(content, session.id, crisis_context)

        for event in self.runner.run(user_message, window):
            if isinstance(event, (CompleteEvent, ErrorEvent)):
                outcome['persisted'] = self._persist(session, event.transcript)
            yield event

    def _persist(self, session: Session, transcript: List[Message]) -> bool:
        for message in transcript:
            session.append(message)
        try:
            self.sessions.save(session)
            return True
        except SessionManagementError as e:
            logger.error(f'Turn for session {session.id} was not persisted: {e}')
            return False
