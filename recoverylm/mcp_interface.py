"""
MCP Interface Layer using fastmcp to expose the conversational dispatch core.

Run with `python -m recoverylm.mcp_interface` or the installed `recoverylm-mcp`
script; the module uses package-relative imports and cannot run as a plain file.
"""
from typing import Any, Dict, Optional

from fastmcp import FastMCP

from .models.core import AssistantMessage, Session, WidgetCommand
from .services.conversation import ConversationService
from .services.crisis_assessment import AssessmentContext
from .services.session_management import SessionManagementError
from .utils.config import config
from .utils.logging_config import get_logger
from .utils.storage_client import InMemoryStorageClient, VaultCredentials
from .utils.timestamp_utils import now

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('RecoveryLM')

credentials = None
if config.storage.vault_key:
    credentials = VaultCredentials(vault_id=config.storage.vault_id, key=config.storage.vault_key.encode('utf-8'))
else:
    logger.warning('VAULT_KEY is not set; vault is locked and turns will not be persisted')

storage = InMemoryStorageClient(credentials)
conversation_service = ConversationService(storage)


def _widget_to_dict(widget: WidgetCommand) -> Dict[str, Any]:
    return {'id': widget.id, 'params': widget.params}


def _session_to_dict(session: Session) -> Dict[str, Any]:
    data = session.to_dict()
    for entry, message in zip(data['messages'], session.messages):
        if isinstance(message, AssistantMessage):
            entry['widgets'] = [_widget_to_dict(widget) for widget in message.widgets]
    return data


@mcp.tool()
def assess_message(message: str) -> Dict[str, Any]:
    """Classify a message with the safety gate without sending it anywhere.

    Args:
        message: User message text

    Returns:
        Assessment with level, triggers and recommended action
    """
    assessment = conversation_service.safety_gate.assess(message, AssessmentContext(time_of_day=now().hour))
    return assessment.to_dict()


@mcp.tool()
def send_message(message: str, session_id: Optional[str] = None) -> Dict[str, Any]:
    """Run one conversational turn.

    Args:
        message: User message text
        session_id: Session to continue (optional, defaults to today's session or a new one)

    Returns:
        Final assistant message, widgets, crisis data and persistence outcome

    Raises:
        Exception: If the message is empty
    """
    try:
        session = None
        if session_id:
            session = conversation_service.sessions.resume(session_id)
            if session is None:
                logger.info(f'Session {session_id} not found, using today\'s session')
        session = session or conversation_service.sessions.get_or_create_today_session()

        result = conversation_service.send_message(session, message)

        logger.debug(f'MCP turn finished for session {session.id} (persisted: {result.persisted})')
        return {
            'session_id': result.session_id,
            'message': result.message.content,
            'widgets': [_widget_to_dict(widget) for widget in result.widgets],
            'assessment': result.assessment.to_dict(),
            'resources': result.resources.to_dict() if result.resources else None,
            'error': result.error,
            'persisted': result.persisted
        }

    except ValueError as e:
        logger.error(f'Invalid MCP send_message request: {e}')
        raise Exception(f'Send message failed: {e}')


@mcp.tool()
def get_today_session() -> Optional[Dict[str, Any]]:
    """Return today's most recent session, if any.

    Returns:
        Session with its messages, or None
    """
    session = conversation_service.sessions.get_today_session()
    return _session_to_dict(session) if session else None


@mcp.tool()
def fork_session(session_id: str) -> Dict[str, Any]:
    """Copy a session's messages into a new session.

    Args:
        session_id: Source session

    Returns:
        The new session

    Raises:
        Exception: If the fork cannot be saved
    """
    try:
        session = conversation_service.sessions.fork(session_id)
        conversation_service.sessions.save(session)
        return _session_to_dict(session)

    except SessionManagementError as e:
        logger.error(f'Session management error in MCP fork: {e}')
        raise Exception(f'Fork failed: {e}')


@mcp.tool()
def get_crisis_resources() -> Dict[str, Any]:
    """Crisis hotlines plus the user's emergency contact when one is linked.

    Returns:
        Crisis resources
    """
    return conversation_service.crisis_resources().to_dict()


def main():
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)


if __name__ == '__main__':
    main()
