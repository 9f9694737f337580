class CodeAgentError(Exception):
    """Base error of the agent core"""


class ToolRegistrationError(CodeAgentError):
    """A tool definition was rejected at registration"""


class ConversationBusyError(CodeAgentError):
    """A run is already active for this conversation"""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation {conversation_id} already has an active run")
        self.conversation_id = conversation_id


class ConversationNotFoundError(CodeAgentError):
    """No state exists for this conversation"""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id
