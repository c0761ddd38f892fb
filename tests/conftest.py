"""Shared fixtures: configs, in-memory storage and a scripted inference provider."""

import copy
import itertools
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

import pytest

from recoverylm.models.core import ChatRecord, DailyMetric, ToolCall
from recoverylm.services.session_management import generate_session_id
from recoverylm.utils.bedrock_llm import RoundResult, TextDelta
from recoverylm.utils.config import (AgentConfig, AppConfig, BedrockLLMConfig, ContextConfig, MCPConfig, SafetyConfig,
                                     SessionConfig, StorageConfig)
from recoverylm.utils.storage_client import InMemoryStorageClient, VaultCredentials

_record_ids = itertools.count(1)


class ScriptedLLM:
    """Stands in for BedrockLLM; each call to stream_round plays the next scripted round."""

    def __init__(self, rounds: Sequence[Sequence[Any]]):
        self.rounds = [list(script) for script in rounds]
        self.calls: List[Dict[str, Any]] = []
        self.closed = 0

    @staticmethod
    def text_round(text: str, stop_reason: str = 'end_turn') -> List[Any]:
        return [TextDelta(text), RoundResult(text=text, stop_reason=stop_reason)]

    @staticmethod
    def tool_round(name: str, tool_input: Optional[Dict[str, Any]] = None, call_id: str = 'tool-1',
                   text: str = '') -> List[Any]:
        chunks: List[Any] = [TextDelta(text)] if text else []
        chunks.append(
            RoundResult(text=text,
                        tool_calls=[ToolCall(id=call_id, name=name, input=tool_input or {})],
                        stop_reason='tool_use'))
        return chunks

    def stream_round(self, system_prompt, messages, tool_config=None):
        self.calls.append({
            'system_prompt': system_prompt,
            'messages': copy.deepcopy(messages),
            'tool_config': tool_config
        })
        script = self.rounds.pop(0) if self.rounds else self.text_round('')
        return self._play(script)

    def _play(self, script):
        try:
            for item in script:
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.closed += 1


def make_metric(date: str, **overrides) -> DailyMetric:
    values = dict(date=date, sobriety_maintained=True, exercise=True, meditation=True, mood_score=7.0)
    values.update(overrides)
    return DailyMetric(**values)


def seed_session(storage: InMemoryStorageClient,
                 started_at: datetime,
                 messages: Sequence[tuple],
                 session_id: Optional[str] = None) -> str:
    """Store (role, content) pairs one minute apart and return the session id."""
    session_id = session_id or generate_session_id(started_at)
    for offset, (role, content) in enumerate(messages):
        storage.append_message(
            ChatRecord(id=f'record-{next(_record_ids)}',
                       session_id=session_id,
                       role=role,
                       content=content,
                       timestamp=started_at + timedelta(minutes=offset)))
    return session_id


@pytest.fixture
def credentials():
    return VaultCredentials(vault_id='test-vault', key=b'test-key')


@pytest.fixture
def storage(credentials):
    """Unlocked in-memory vault."""
    return InMemoryStorageClient(credentials)


@pytest.fixture
def locked_storage():
    return InMemoryStorageClient()


@pytest.fixture
def safety_config():
    return SafetyConfig(velocity_threshold=5, late_night_start_hour=23, late_night_end_hour=4, patterns_path=None)


@pytest.fixture
def context_config():
    return ContextConfig(recent_message_limit=10,
                         max_context_tokens=6000,
                         max_memory_tokens=2400,
                         tokens_per_entry=150,
                         journal_lookback_days=60,
                         max_past_sessions=5,
                         metrics_window_days=7,
                         lexicon_path=None,
                         system_prompt_path=None)


@pytest.fixture
def agent_config():
    return AgentConfig(max_iterations=5)


@pytest.fixture
def session_config():
    return SessionConfig(today_scan_window=10)


@pytest.fixture
def llm_config():
    return BedrockLLMConfig(region='us-east-1',
                            model_id='test-model',
                            max_tokens=256,
                            temperature=0.5,
                            retry_attempts=3,
                            retry_delay=1.0,
                            retry_jitter=1.0)


@pytest.fixture
def scripted_llm():
    """Factory for ScriptedLLM instances; also exposes the round builders."""
    return ScriptedLLM


@pytest.fixture
def app_config(llm_config, safety_config, context_config, agent_config, session_config):
    return AppConfig(environment='test',
                     log_level='INFO',
                     bedrock_llm=llm_config,
                     safety=safety_config,
                     context=context_config,
                     agent=agent_config,
                     session=session_config,
                     storage=StorageConfig(vault_id='test-vault', vault_key='test-key'),
                     mcp=MCPConfig(transport='stdio', host='127.0.0.1', port=8000))
