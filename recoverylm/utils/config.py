"""
Configuration management for the inference provider and dispatch core settings.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    retry_jitter: float


@dataclass
class SafetyConfig:
    """Configuration for the pre-dispatch safety gate."""
    velocity_threshold: float
    late_night_start_hour: int
    late_night_end_hour: int
    patterns_path: Optional[str]


@dataclass
class ContextConfig:
    """Configuration for context window assembly."""
    recent_message_limit: int
    max_context_tokens: int
    max_memory_tokens: int
    tokens_per_entry: int
    journal_lookback_days: int
    max_past_sessions: int
    metrics_window_days: int
    lexicon_path: Optional[str]
    system_prompt_path: Optional[str]


@dataclass
class AgentConfig:
    """Configuration for the agentic loop runner."""
    max_iterations: int


@dataclass
class SessionConfig:
    """Configuration for session discovery."""
    today_scan_window: int


@dataclass
class StorageConfig:
    """Configuration for the local vault."""
    vault_id: str
    vault_key: str  # Empty means the vault stays locked


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    safety: SafetyConfig
    context: ContextConfig
    agent: AgentConfig
    session: SessionConfig
    storage: StorageConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID',
                                                             'anthropic.claude-3-5-sonnet-20240620-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '2048')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.7')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
                                          retry_jitter=float(os.getenv('BEDROCK_LLM_RETRY_JITTER', '1.0')))

    # Safety gate configuration
    safety_config = SafetyConfig(velocity_threshold=float(os.getenv('SAFETY_VELOCITY_THRESHOLD', '5')),
                                 late_night_start_hour=int(os.getenv('SAFETY_LATE_NIGHT_START_HOUR', '23')),
                                 late_night_end_hour=int(os.getenv('SAFETY_LATE_NIGHT_END_HOUR', '4')),
                                 patterns_path=os.getenv('SAFETY_PATTERNS_PATH'))

    # Context assembly configuration
    context_config = ContextConfig(recent_message_limit=int(os.getenv('CONTEXT_RECENT_MESSAGES', '10')),
                                   max_context_tokens=int(os.getenv('CONTEXT_MAX_TOKENS', '6000')),
                                   max_memory_tokens=int(os.getenv('CONTEXT_MAX_MEMORY_TOKENS', '2400')),
                                   tokens_per_entry=int(os.getenv('CONTEXT_TOKENS_PER_ENTRY', '150')),
                                   journal_lookback_days=int(os.getenv('CONTEXT_JOURNAL_LOOKBACK_DAYS', '60')),
                                   max_past_sessions=int(os.getenv('CONTEXT_MAX_PAST_SESSIONS', '5')),
                                   metrics_window_days=int(os.getenv('CONTEXT_METRICS_WINDOW_DAYS', '7')),
                                   lexicon_path=os.getenv('MEMORY_LEXICON_PATH'),
                                   system_prompt_path=os.getenv('SYSTEM_PROMPT_PATH'))

    agent_config = AgentConfig(max_iterations=int(os.getenv('AGENT_MAX_ITERATIONS', '5')))

    session_config = SessionConfig(today_scan_window=int(os.getenv('SESSION_TODAY_SCAN_WINDOW', '10')))

    storage_config = StorageConfig(vault_id=os.getenv('VAULT_ID', 'default'), vault_key=os.getenv('VAULT_KEY', ''))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     safety=safety_config,
                     context=context_config,
                     agent=agent_config,
                     session=session_config,
                     storage=storage_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
