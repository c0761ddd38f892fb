"""
Loading of the static tables shipped with the package.
"""

import json
from pathlib import Path
from typing import Any, Optional

from .logging_config import get_logger

logger = get_logger(__name__)

RESOURCE_DIR = Path(__file__).resolve().parent.parent / 'resources'


def resource_path(name: str, override: Optional[str] = None) -> Path:
    """Path of a bundled resource, or of the override file when one is configured."""
    return Path(override) if override else RESOURCE_DIR / name


def load_json_resource(name: str, override: Optional[str] = None) -> Any:
    """
    Load a JSON table.

    Args:
        name: File name under the bundled resources directory
        override: Path to a replacement file (optional)

    Returns:
        Parsed JSON document
    """
    path = resource_path(name, override)
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    logger.debug(f'Loaded resource {path}')
    return data


def load_text_resource(name: str, override: Optional[str] = None) -> str:
    """Load a text resource such as the base system prompt."""
    path = resource_path(name, override)
    return path.read_text(encoding='utf-8')
