from __future__ import annotations


class ChatError(RuntimeError):
    pass


class StreamOpenError(ChatError):
    """The stream could not be opened: connection failure or a non-success status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code: int | None = status_code


class ConversationNotFoundError(LookupError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"conversation not found: {conversation_id}")
        self.conversation_id: str = conversation_id
