"""
Health check utilities for the application.
"""

from typing import Any, Dict, Optional

from .. import __version__
from .bedrock_llm import BedrockLLM
from .config import config
from .logging_config import get_logger
from .storage_client import StorageClient

logger = get_logger(__name__)


def check_health(storage: Optional[StorageClient] = None, llm: Optional[BedrockLLM] = None) -> bool:
    """Check the health of all system components.

    Args:
        storage: Storage client to probe (optional, reported unconfigured if None)
        llm: Bedrock client to probe (optional, created from config if None)

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(storage, llm)

        # Check if all components are healthy
        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def get_health_status(storage: Optional[StorageClient] = None, llm: Optional[BedrockLLM] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Returns:
        Dictionary with health status of each component
    """
    health_status = {}

    # Check Bedrock LLM
    try:
        llm = llm or BedrockLLM(config.bedrock_llm)
        health_status['bedrock_llm'] = {
            'healthy': llm.health_check(),
            'service': 'Amazon Bedrock LLM',
            'model': llm.model_id
        }
    except Exception as e:
        health_status['bedrock_llm'] = {'healthy': False, 'service': 'Amazon Bedrock LLM', 'error': str(e)}

    # Check storage
    if storage is None:
        health_status['storage'] = {'healthy': False, 'service': 'Local vault', 'error': 'Storage not configured'}
    else:
        health_status['storage'] = {
            'healthy': storage.health_check(),
            'service': 'Local vault',
            'backend': type(storage).__name__,
            'unlocked': storage.is_unlocked
        }

    return health_status


def get_system_info(storage: Optional[StorageClient] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'RecoveryLM',
        'version': __version__,
        'configuration': {
            'bedrock_llm_model': config.bedrock_llm.model_id,
            'aws_region': config.bedrock_llm.region,
            'max_iterations': config.agent.max_iterations,
            'max_context_tokens': config.context.max_context_tokens
        },
        'health_status': get_health_status(storage)
    }
