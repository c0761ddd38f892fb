"""
Pre-dispatch safety gate classifying every outbound user message by crisis level.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Pattern, Sequence, Tuple

from ..models.core import CrisisAction, CrisisAssessment, CrisisLevel, CrisisResources, EmergencyContact
from ..utils.config import SafetyConfig, config
from ..utils.logging_config import get_logger
from ..utils.resources import load_json_resource
from ..utils.timestamp_utils import now

logger = get_logger(__name__)

# Tiers are evaluated from most to least severe
TIER_ORDER = (CrisisLevel.EMERGENCY, CrisisLevel.URGENT, CrisisLevel.CONCERN, CrisisLevel.MONITOR)

RECOMMENDED_ACTIONS = {
    CrisisLevel.NONE: CrisisAction.PROCEED,
    CrisisLevel.MONITOR: CrisisAction.INJECT_CONTEXT,
    CrisisLevel.CONCERN: CrisisAction.SHOW_RESOURCES,
    CrisisLevel.URGENT: CrisisAction.PAUSE_AND_CONNECT,
    CrisisLevel.EMERGENCY: CrisisAction.EMERGENCY_PROTOCOL,
}


@dataclass
class AssessmentContext:
    """Optional signals that can escalate a pattern-matched level."""
    recent_velocity: Optional[float] = None  # Messages per minute
    time_of_day: Optional[int] = None  # Caller's local hour, 0-23
    history: List[str] = field(default_factory=list)  # Accepted, never scanned


def get_recommended_action(level: CrisisLevel) -> CrisisAction:
    return RECOMMENDED_ACTIONS[level]


def should_block_normal_flow(level: CrisisLevel) -> bool:
    """Only an emergency suppresses the normal inference call."""
    return level == CrisisLevel.EMERGENCY


def should_show_resources(level: CrisisLevel) -> bool:
    return level in (CrisisLevel.URGENT, CrisisLevel.EMERGENCY)


def should_inject_context(level: CrisisLevel) -> bool:
    return level in (CrisisLevel.MONITOR, CrisisLevel.CONCERN, CrisisLevel.URGENT)


def get_crisis_resources(emergency_contact: Optional[EmergencyContact] = None) -> CrisisResources:
    """Fixed crisis resource bundle, with the user's linked emergency contact when known."""
    return CrisisResources(national_suicide_prevention='988',
                           crisis_text_line='Text HOME to 741741',
                           samhsa_helpline='1-800-662-4357',
                           emergency_contact=emergency_contact)


def compile_patterns(table: Mapping[str, Sequence[str]]) -> Dict[CrisisLevel, List[Pattern]]:
    """
    Compile a tier -> regex list table.

    Args:
        table: Mapping of level name ('emergency', 'urgent', 'concern', 'monitor') to regex strings

    Returns:
        Compiled case-insensitive patterns per level

    Raises:
        ValueError: If the table names an unknown tier
    """
    compiled: Dict[CrisisLevel, List[Pattern]] = {level: [] for level in TIER_ORDER}
    for name, patterns in table.items():
        try:
            level = CrisisLevel(name)
        except ValueError:
            raise ValueError(f'Unknown crisis tier in pattern table: {name}')
        if level not in compiled:
            raise ValueError(f'Crisis tier cannot carry patterns: {name}')
        compiled[level] = [re.compile(pattern, re.IGNORECASE) for pattern in patterns]
    return compiled


class SafetyGate:
    """Deterministic rule layer run before any inference call."""

    def __init__(self,
                 safety_config: Optional[SafetyConfig] = None,
                 patterns: Optional[Mapping[str, Sequence[str]]] = None):
        """
        Initialize the safety gate.

        Args:
            safety_config: SafetyConfig instance (optional, uses global config if None)
            patterns: Tier -> regex table (optional, loaded from the configured JSON file if None)
        """
        self.config = safety_config or config.safety
        if patterns is None:
            patterns = load_json_resource('crisis_patterns.json', self.config.patterns_path)
        self.patterns = compile_patterns(patterns)

        logger.info(f'Initialized SafetyGate with {sum(len(p) for p in self.patterns.values())} patterns')

    def assess(self, message: str, context: Optional[AssessmentContext] = None) -> CrisisAssessment:
        """
        Classify a message.

        Never raises: empty input and internal failures both yield level 'none'.

        Args:
            message: Outbound user text
            context: Velocity and time-of-day signals (optional)

        Returns:
            CrisisAssessment with level, triggers and recommended action
        """
        try:
            if not isinstance(message, str) or not message.strip():
                return self._build(CrisisLevel.NONE, [])

            level, triggers = self.match(message)
            adjusted = self.escalate(level, context)

            if adjusted != CrisisLevel.NONE:
                logger.info(f'Crisis assessment: {adjusted.value} (base: {level.value}, triggers: {len(triggers)})')
            return self._build(adjusted, triggers)

        except Exception as e:
            logger.warning(f'Crisis assessment failed, treating message as none: {e}')
            return self._build(CrisisLevel.NONE, [])

    def match(self, message: str) -> Tuple[CrisisLevel, List[str]]:
        """Return the most severe tier with a matching cue and the matched text."""
        for level in TIER_ORDER:
            triggers = []
            for pattern in self.patterns[level]:
                found = pattern.search(message)
                if found:
                    triggers.append(found.group(0))
                    if level == CrisisLevel.EMERGENCY:
                        return level, triggers
            if triggers:
                return level, triggers
        return CrisisLevel.NONE, []

    def escalate(self, level: CrisisLevel, context: Optional[AssessmentContext]) -> CrisisLevel:
        """Apply velocity and late-night adjustments; the result is never below ``level``."""
        if context is None:
            return level

        adjusted = level

        if context.recent_velocity is not None and context.recent_velocity > self.config.velocity_threshold:
            if level in (CrisisLevel.NONE, CrisisLevel.MONITOR):
                adjusted = max(adjusted, level.escalated())

        if context.time_of_day is not None and self.is_late_night(context.time_of_day):
            if level in (CrisisLevel.MONITOR, CrisisLevel.CONCERN):
                adjusted = max(adjusted, adjusted.escalated())

        return adjusted

    def is_late_night(self, hour: int) -> bool:
        start, end = self.config.late_night_start_hour, self.config.late_night_end_hour
        if start <= end:
            return start <= hour <= end
        return hour >= start or hour <= end

    def _build(self, level: CrisisLevel, triggers: List[str]) -> CrisisAssessment:
        return CrisisAssessment(level=level,
                                triggers=triggers,
                                recommended_action=get_recommended_action(level),
                                timestamp=now())
