"""
Context window assembly from profile, metrics, conversation and memory sources.
"""

from datetime import datetime
from typing import List, Optional

from ..models.core import (AssistantMessage, ContextWindow, CrisisAssessment, DailyMetric, Message, StreakInfo,
                           TemporalContext, UserMessage, UserProfile, from_record)
from ..utils.config import ContextConfig, config
from ..utils.logging_config import get_logger
from ..utils.resources import load_text_resource
from ..utils.storage_client import StorageClient
from ..utils.timestamp_utils import days_between, format_date, now
from .memory_search import MemorySearch
from .prompt_builder import CHARS_PER_TOKEN, estimate_window_tokens

logger = get_logger(__name__)

# The current message is never cut below this many characters
MIN_CURRENT_MESSAGE_CHARS = 200


def detect_leading_indicators(metrics: List[DailyMetric], today: Optional[str] = None) -> List[str]:
    """
    Derive early drift signals from recent metrics.

    Args:
        metrics: Daily metrics, newest first
        today: Reference date as YYYY-MM-DD (optional, defaults to the local date)

    Returns:
        Human-readable indicator strings
    """
    if not metrics:
        return ['No metrics logged recently - tracking gaps can indicate drift']

    today = today or format_date(now())
    indicators = []
    last_3_days = metrics[:3]
    last_7_days = metrics[:7]

    if sum(1 for metric in last_3_days if not metric.exercise) >= 2:
        indicators.append('Exercise missed 2+ days - potential drift indicator')
    if sum(1 for metric in last_3_days if not metric.meditation) >= 2:
        indicators.append('Meditation missed 2+ days - potential drift indicator')

    recent_moods = [metric.mood_score for metric in last_7_days[:3]]
    older_moods = [metric.mood_score for metric in last_7_days[3:]]
    if len(last_7_days) >= 3 and older_moods:
        recent_avg = sum(recent_moods) / len(recent_moods)
        older_avg = sum(older_moods) / len(older_moods)
        if recent_avg < older_avg - 1.5:
            indicators.append('Mood trending downward over past week')

    days_since = days_between(metrics[0].date, today)
    if days_since >= 2:
        indicators.append(f'No metrics logged for {days_since} days')

    relapse = next((metric for metric in last_7_days if not metric.sobriety_maintained), None)
    if relapse:
        indicators.append(f'Sobriety break noted on {relapse.date}')

    return indicators


def build_temporal_context(profile: Optional[UserProfile],
                           metrics: List[DailyMetric],
                           moment: Optional[datetime] = None) -> TemporalContext:
    """Time-derived facts: local time, sobriety counters, streak and risky time patterns."""
    moment = moment or now()
    today = format_date(moment)
    day_of_week = moment.strftime('%A')
    local_time = f"{day_of_week}, {moment.strftime('%I:%M %p').lstrip('0')}"

    sobriety_start = profile.sobriety_start_date if profile else None
    days_sober = days_between(sobriety_start, today) if sobriety_start else 0
    days_since_signup = days_between(format_date(profile.created_at), today) if profile else 0

    streak = 0
    for metric in metrics:
        if not metric.sobriety_maintained:
            break
        streak += 1

    time_patterns = []
    if moment.hour >= 22 or moment.hour <= 5:
        time_patterns.append('Late night - historically higher risk period for many')
    if day_of_week in ('Friday', 'Saturday'):
        time_patterns.append('Weekend - often higher social pressure')

    return TemporalContext(local_time=local_time,
                           day_of_week=day_of_week,
                           days_sober=days_sober,
                           days_since_signup=days_since_signup,
                           current_streak=StreakInfo(type='sobriety', days=streak, start_date=sobriety_start or today),
                           time_patterns=time_patterns)


class ContextAssembler:
    """Builds the size-bounded context window for one turn."""

    def __init__(self,
                 storage: StorageClient,
                 memory_search: Optional[MemorySearch] = None,
                 context_config: Optional[ContextConfig] = None,
                 system_prompt: Optional[str] = None):
        """
        Initialize the context assembler.

        Args:
            storage: Storage collaborator
            memory_search: MemorySearch instance (optional, built from storage if None)
            context_config: ContextConfig instance (optional, uses global config if None)
            system_prompt: Base system prompt (optional, loaded from the configured file if None)
        """
        self.storage = storage
        self.config = context_config or config.context
        self.memory_search = memory_search or MemorySearch(storage, self.config)
        self.system_prompt = system_prompt if system_prompt is not None else load_text_resource(
            'system_prompt.md', self.config.system_prompt_path)

    def build(self,
              current_message: str,
              session_id: str,
              crisis_context: Optional[CrisisAssessment] = None) -> ContextWindow:
        """
        Assemble the context window.

        Each source is loaded independently; a failing source leaves its slice
        empty and is logged. The result never exceeds the configured token ceiling
        unless the current message alone cannot be cut further.

        Args:
            current_message: The user's new message
            session_id: Current session identifier
            crisis_context: Gate assessment to surface to the model (optional)

        Returns:
            ContextWindow for this turn
        """
        profile = self._load('profile', self.storage.get_profile, None)
        facts = self._load('facts', self.storage.get_facts, [])
        metrics = self._load('metrics', lambda: self.storage.get_metrics(limit=self.config.metrics_window_days), [])
        recent = self._load('recent conversation', lambda: self._recent_conversation(session_id), [])
        history = self._load('relevant history',
                             lambda: self.memory_search.search_relevant_history(current_message, session_id), [])
        indicators = self._load('leading indicators', lambda: detect_leading_indicators(metrics), [])
        temporal = self._load('temporal context', lambda: build_temporal_context(profile, metrics), None)
        if temporal is None:
            # Unparsable profile dates fall back to counters without the profile
            temporal = build_temporal_context(None, metrics)

        window = ContextWindow(system_prompt=self.system_prompt,
                               current_message=current_message,
                               temporal_context=temporal,
                               commitment_statement=profile.commitment_statement if profile else '',
                               vulnerability_pattern=profile.vulnerability_pattern if profile else 'both',
                               substances_of_focus=list(profile.substances_of_focus) if profile else [],
                               facts=list(facts),
                               recent_metrics=list(metrics),
                               leading_indicators=indicators,
                               recent_conversation=recent,
                               relevant_history=list(history),
                               crisis_context=crisis_context)

        self.enforce_budget(window)

        logger.debug(f'Built context window for session {session_id}: {window.estimated_tokens} tokens, '
                     f'{len(window.recent_conversation)} recent messages, {len(window.relevant_history)} memories')
        return window

    def enforce_budget(self, window: ContextWindow) -> ContextWindow:
        """Trim the window in place until its estimate fits the token ceiling."""
        limit = self.config.max_context_tokens
        tokens = estimate_window_tokens(window)

        while tokens > limit:
            if window.relevant_history:
                window.relevant_history.pop()
            elif window.recent_conversation:
                window.recent_conversation.pop(0)
            elif window.facts:
                window.facts.pop()
            else:
                overflow_chars = (tokens - limit) * CHARS_PER_TOKEN
                keep = max(len(window.current_message) - overflow_chars, MIN_CURRENT_MESSAGE_CHARS)
                if keep >= len(window.current_message):
                    logger.warning(f'Context window exceeds budget ({tokens} > {limit}) with nothing left to trim')
                    break
                logger.warning(f'Truncating current message from {len(window.current_message)} to {keep} chars')
                window.current_message = window.current_message[:keep]
            tokens = estimate_window_tokens(window)

        window.estimated_tokens = tokens
        return window

    def _recent_conversation(self, session_id: str) -> List[Message]:
        messages = [from_record(record) for record in self.storage.get_history(session_id)]
        messages = [message for message in messages if isinstance(message, (UserMessage, AssistantMessage))]
        return messages[-self.config.recent_message_limit:] if self.config.recent_message_limit > 0 else []

    def _load(self, name: str, loader, default):
        try:
            return loader()
        except Exception as e:
            logger.warning(f'Context source {name} unavailable: {e}')
            return default
