"""
RecoveryLM dispatch core.

Gates, contextualizes, runs and persists conversational turns against an
inference provider. Importing the package configures its logger from LOG_LEVEL.
"""

from .utils.logging_config import setup_logging

__version__ = '1.0.0'

setup_logging()
