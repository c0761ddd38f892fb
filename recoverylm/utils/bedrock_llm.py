"""
Amazon Bedrock LLM client wrapper for streaming tool-use rounds with retry logic.
"""

import json
import random
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Union

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (BotoCoreError, ClientError, ConnectionClosedError, ConnectTimeoutError,
                                 EndpointConnectionError, ReadTimeoutError)

from ..models.core import ToolCall
from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)

# Transient error codes, matched case-insensitively so stream event keys
# ('throttlingException') and API error codes ('ThrottlingException') agree.
RETRYABLE_ERROR_CODES = frozenset(
    code.lower() for code in ('ThrottlingException', 'ServiceUnavailableException', 'InternalServerException',
                              'ModelNotReadyException', 'ModelStreamErrorException'))

TRANSIENT_CONNECTION_ERRORS = (EndpointConnectionError, ConnectionClosedError, ConnectTimeoutError, ReadTimeoutError)


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""

    def __init__(self, message: str, retryable: bool = False, code: Optional[str] = None):
        super().__init__(message)
        self.retryable = retryable
        self.code = code


@dataclass(frozen=True)
class TextDelta:
    """Incremental text produced during a round."""
    text: str


@dataclass(frozen=True)
class RoundRestart:
    """Emitted before a retry that follows partial output; consumers discard the round text."""
    attempt: int


@dataclass(frozen=True)
class RoundResult:
    """Final outcome of one provider round."""
    text: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    stop_reason: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)


RoundChunk = Union[TextDelta, RoundRestart, RoundResult]


def is_retryable_code(code: Optional[str]) -> bool:
    """Check whether a Bedrock error code denotes a transient failure."""
    return bool(code) and code.lower() in RETRYABLE_ERROR_CODES


def _parse_tool_input(raw: str) -> Dict[str, Any]:
    """Parse accumulated tool input JSON; empty or malformed input becomes an empty dict."""
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f'Malformed tool input from model, using empty input: {e}')
        return {}
    return parsed if isinstance(parsed, dict) else {}


class BedrockLLM:
    """Amazon Bedrock LLM client streaming Converse rounds with retry logic."""

    def __init__(self, config: BedrockLLMConfig, client: Optional[Any] = None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (optional, created from config if None)
        """
        self.config = config
        self.model_id = config.model_id

        # Create Bedrock runtime client with timeout configuration
        self.bedrock_runtime = client or boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=600,
                read_timeout=600,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def stream_round(self,
                     system_prompt: str,
                     messages: List[Dict[str, Any]],
                     tool_config: Optional[Dict[str, Any]] = None,
                     max_tokens: Optional[int] = None,
                     temperature: Optional[float] = None) -> Iterator[RoundChunk]:
        """
        Stream one model round with retry logic.

        Args:
            system_prompt: System prompt for the conversation
            messages: List of message dictionaries in Bedrock Converse format
            tool_config: Bedrock toolConfig (optional)
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)

        Yields:
            TextDelta chunks, a RoundRestart before any retry that follows partial
            output, and finally exactly one RoundResult

        Raises:
            BedrockLLMError: On a non-retryable failure or when all retry attempts fail
        """
        request = {
            'modelId': self.model_id,
            'messages': messages,
            'system': [{'text': system_prompt}],
            'inferenceConfig': {
                'maxTokens': max_tokens or self.config.max_tokens,
                'temperature': self.config.temperature if temperature is None else temperature,
            }
        }
        if tool_config:
            request['toolConfig'] = tool_config

        attempts = max(1, self.config.retry_attempts)
        emitted = False
        last_error: Optional[BedrockLLMError] = None

        for attempt in range(attempts):
            if emitted:
                yield RoundRestart(attempt=attempt)
                emitted = False

            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{attempts}')
                stream = self.bedrock_runtime.converse_stream(**request).get('stream')

                try:
                    for chunk in self._read_stream(stream):
                        if isinstance(chunk, TextDelta):
                            emitted = True
                        yield chunk
                finally:
                    if stream is not None and hasattr(stream, 'close'):
                        stream.close()
                return

            except BedrockLLMError as e:
                last_error = e
            except ClientError as e:
                code = e.response.get('Error', {}).get('Code')
                last_error = BedrockLLMError(f'Bedrock LLM request failed: {e}',
                                             retryable=is_retryable_code(code),
                                             code=code)
            except TRANSIENT_CONNECTION_ERRORS as e:
                last_error = BedrockLLMError(f'Bedrock LLM connection error: {e}',
                                             retryable=True,
                                             code=type(e).__name__)
            except BotoCoreError as e:
                last_error = BedrockLLMError(f'Bedrock LLM client error: {e}', code=type(e).__name__)

            if not last_error.retryable:
                logger.error(f'Bedrock LLM non-retryable error ({last_error.code}): {last_error}')
                raise last_error

            logger.warning(f'Bedrock LLM attempt {attempt + 1}/{attempts} failed: {last_error}')

            if attempt < attempts - 1:
                # Exponential backoff with jitter
                delay = self.config.retry_delay * (2**attempt) + random.uniform(0, self.config.retry_jitter)
                time.sleep(delay)

        logger.error(f'Bedrock LLM failed after {attempts} attempts: {last_error}')
        raise BedrockLLMError(f'Bedrock LLM failed after {attempts} attempts: {last_error}',
                              retryable=True,
                              code=last_error.code if last_error else None)

    def _read_stream(self, stream: Optional[Any]) -> Iterator[Union[TextDelta, RoundResult]]:
        """Translate Converse stream events into round chunks."""
        text_parts: List[str] = []
        tool_blocks: Dict[int, Dict[str, Any]] = {}
        tool_calls: List[ToolCall] = []
        stop_reason = None
        usage: Dict[str, Any] = {}

        for event in stream or []:
            error_key = next((key for key in event if key.lower().endswith('exception')), None)
            if error_key:
                detail = event[error_key]
                message = detail.get('message', detail) if isinstance(detail, dict) else detail
                raise BedrockLLMError(f'Bedrock stream error {error_key}: {message}',
                                      retryable=is_retryable_code(error_key),
                                      code=error_key)

            if 'contentBlockStart' in event:
                block = event['contentBlockStart']
                tool_use = block.get('start', {}).get('toolUse')
                if tool_use:
                    tool_blocks[block.get('contentBlockIndex', 0)] = {
                        'id': tool_use['toolUseId'],
                        'name': tool_use['name'],
                        'input_parts': []
                    }

            elif 'contentBlockDelta' in event:
                block = event['contentBlockDelta']
                delta = block.get('delta', {})
                if 'text' in delta:
                    if delta['text']:
                        text_parts.append(delta['text'])
                        yield TextDelta(text=delta['text'])
                elif 'toolUse' in delta:
                    pending = tool_blocks.get(block.get('contentBlockIndex', 0))
                    if pending is not None:
                        pending['input_parts'].append(delta['toolUse'].get('input', ''))

            elif 'contentBlockStop' in event:
                pending = tool_blocks.pop(event['contentBlockStop'].get('contentBlockIndex', 0), None)
                if pending is not None:
                    tool_calls.append(
                        ToolCall(id=pending['id'],
                                 name=pending['name'],
                                 input=_parse_tool_input(''.join(pending['input_parts']))))

            elif 'messageStop' in event:
                stop_reason = event['messageStop'].get('stopReason')

            elif 'metadata' in event:
                usage = dict(event['metadata'].get('usage', {}))

        # Blocks the stream never closed still count as requested calls
        for pending in tool_blocks.values():
            tool_calls.append(
                ToolCall(id=pending['id'], name=pending['name'],
                         input=_parse_tool_input(''.join(pending['input_parts']))))

        logger.debug(f'Bedrock LLM round finished (stop_reason: {stop_reason}, '
                     f'length: {sum(len(part) for part in text_parts)}, tool_calls: {len(tool_calls)})')
        yield RoundResult(text=''.join(text_parts), tool_calls=tool_calls, stop_reason=stop_reason, usage=usage)

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_messages = [{'role': 'user', 'content': [{'text': 'Hi'}]}]
            result = None
            for chunk in self.stream_round(system_prompt="You are a helpful assistant. Respond with just 'OK'.",
                                           messages=test_messages,
                                           max_tokens=10,
                                           temperature=0.0):
                if isinstance(chunk, RoundResult):
                    result = chunk
            return result is not None and len(result.text.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
