"""
Agentic loop runner interleaving streamed model text with local tool execution.
"""

from contextlib import closing
from dataclasses import dataclass, field
from typing import Iterator, List, Optional

from ..models.agent import (AgentLoopState, AgentStateError, Complete, CompleteEvent, Continuing, Error, ErrorEvent,
                            Idle, StateChangeEvent, StreamEvent, Streaming, Thinking, ToolEndEvent, ToolExecuting,
                            ToolStartEvent, TokenEvent, can_transition, transition)
from ..models.core import AssistantMessage, ContextWindow, Message, ToolResultMessage, UserMessage, WidgetCommand
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError, RoundRestart, RoundResult, TextDelta
from ..utils.config import AgentConfig, config
from ..utils.logging_config import get_logger
from .agent_tools import ToolRegistry, format_tool_result
from .prompt_builder import (assistant_tool_use_message, build_conversation_messages, build_system_prompt,
                             tool_results_message)
from .widget_parser import parse_widget_commands

logger = get_logger(__name__)

FALLBACK_MESSAGE = ("I'm having trouble connecting right now. Please try again in a moment. "
                    "If you're in crisis, remember you can always call or text 988.")


@dataclass
class AgentRunResult:
    """Outcome of a drained run."""
    message: AssistantMessage
    state: AgentLoopState
    events: List[StreamEvent] = field(default_factory=list)
    widgets: List[WidgetCommand] = field(default_factory=list)
    transcript: List[Message] = field(default_factory=list)


class AgentRunner:
    """Bounded-iteration loop against the inference provider."""

    def __init__(self, llm: BedrockLLM, tools: ToolRegistry, agent_config: Optional[AgentConfig] = None):
        """
        Initialize the runner.

        Args:
            llm: Inference provider client
            tools: Tool registry offered to the model on every round
            agent_config: AgentConfig instance (optional, uses global config if None)
        """
        self.llm = llm
        self.tools = tools
        self.config = agent_config or config.agent

    @property
    def max_iterations(self) -> int:
        return max(1, self.config.max_iterations)

    def run(self, user_message: UserMessage, context: ContextWindow) -> Iterator[StreamEvent]:
        """
        Drive the loop, yielding events as they happen.

        The last event is always a CompleteEvent or an ErrorEvent. Provider
        failures end the loop with the fallback message instead of raising.
        Closing the generator early closes the provider stream; nothing is
        persisted here.

        Args:
            user_message: The user's message opening this turn
            context: Assembled context window for the turn

        Yields:
            Stream events

        Raises:
            AgentStateError: On an illegal state transition
        """
        state: AgentLoopState = Idle()
        system_prompt = build_system_prompt(context)
        history = build_conversation_messages(context)
        tool_config = self.tools.to_tool_config()

        transcript: List[Message] = [user_message]
        widgets: List[WidgetCommand] = []
        last_text = ''
        iteration = 0

        try:
            while True:
                iteration += 1
                state = transition(state, Thinking(iteration=iteration))
                yield StateChangeEvent(state)

                round_text = ''
                result: Optional[RoundResult] = None

                with closing(self.llm.stream_round(system_prompt, history, tool_config)) as chunks:
                    for chunk in chunks:
                        if isinstance(chunk, TextDelta):
                            if round_text == '' and not isinstance(state, Streaming):
                                state = transition(state, Streaming(iteration=iteration))
                                yield StateChangeEvent(state)
                            round_text += chunk.text
                            yield TokenEvent(chunk.text)
                        elif isinstance(chunk, RoundRestart):
                            logger.info(f'Provider restarted round {iteration} after partial output')
                            round_text = ''
                            if isinstance(state, Streaming):
                                state = transition(state, Streaming(iteration=iteration))
                                yield StateChangeEvent(state)
                        elif isinstance(chunk, RoundResult):
                            result = chunk

                if result is None:
                    raise BedrockLLMError('Provider stream ended without a result')

                logger.debug(f'Round {iteration}: stop_reason={result.stop_reason}, '
                             f'tool_calls={len(result.tool_calls)}, usage={result.usage}')

                parsed = parse_widget_commands(result.text)
                widgets.extend(parsed.widgets)
                if parsed.text:
                    last_text = parsed.text

                wants_tools = result.stop_reason == 'tool_use' and bool(result.tool_calls)

                if wants_tools and iteration < self.max_iterations:
                    outputs = []
                    for call in result.tool_calls:
                        state = transition(state, ToolExecuting(iteration=iteration,
                                                                tool_name=call.name,
                                                                tool_call_id=call.id))
                        yield StateChangeEvent(state)
                        yield ToolStartEvent(id=call.id, name=call.name, input=call.input)
                        output = self.tools.execute(call)
                        outputs.append((call, output))
                        yield ToolEndEvent(id=call.id, result=output)

                    state = transition(state, Continuing(iteration=iteration))
                    yield StateChangeEvent(state)

                    transcript.append(
                        AssistantMessage(content=parsed.text,
                                         tool_calls=tuple(result.tool_calls),
                                         widgets=tuple(parsed.widgets)))
                    rendered = []
                    for call, output in outputs:
                        text = format_tool_result(output)
                        transcript.append(ToolResultMessage(content=text, tool_call_id=call.id, result=output))
                        rendered.append({'tool_call_id': call.id, 'text': text, 'success': output.success})

                    history.append(assistant_tool_use_message(result.text, result.tool_calls))
                    history.append(tool_results_message(rendered))
                    continue

                if wants_tools:
                    logger.warning(f'Reached max iterations ({self.max_iterations}) with '
                                   f'{len(result.tool_calls)} pending tool calls; completing without executing them')

                final = AssistantMessage(content=parsed.text or last_text, widgets=tuple(widgets))
                transcript.append(final)

                state = transition(state, Complete(total_iterations=iteration))
                yield StateChangeEvent(state)
                yield CompleteEvent(message=final, widgets=list(widgets), transcript=list(transcript))
                return

        except AgentStateError:
            raise
        except BedrockLLMError as e:
            logger.error(f'Agent loop failed on round {iteration}: {e}')
            error = str(e)
        except Exception as e:
            logger.error(f'Unexpected error in agent loop on round {iteration}: {e}')
            error = f'Unexpected error: {e}'

        fallback = AssistantMessage(content=FALLBACK_MESSAGE)
        transcript.append(fallback)
        if can_transition(state, Error(error=error)):
            state = transition(state, Error(error=error))
            yield StateChangeEvent(state)
        yield ErrorEvent(error=error, message=fallback, transcript=list(transcript))

    def run_to_completion(self, user_message: UserMessage, context: ContextWindow) -> AgentRunResult:
        """Drain ``run`` and collect its outcome."""
        events: List[StreamEvent] = []
        state: AgentLoopState = Idle()

        for event in self.run(user_message, context):
            events.append(event)
            if isinstance(event, StateChangeEvent):
                state = event.state

        terminal = events[-1]
        if isinstance(terminal, CompleteEvent):
            return AgentRunResult(message=terminal.message,
                                  state=state,
                                  events=events,
                                  widgets=terminal.widgets,
                                  transcript=terminal.transcript)
        return AgentRunResult(message=terminal.message, state=state, events=events, transcript=terminal.transcript)
