from __future__ import annotations


class ChatServiceError(Exception):
    code = "internal_error"
    user_message = "Something went wrong while answering. Please try again."

    def __init__(self, message: str = "", *, cause: BaseException | None = None) -> None:
        super().__init__(message or self.code)
        self.cause = cause


class IdentityStoreFailure(ChatServiceError):
    code = "identity_store_failure"
    user_message = "Could not open your conversation right now."


class HistorySerializationFailure(ChatServiceError):
    code = "history_serialization_failure"


class RetrievalFailure(ChatServiceError):
    code = "retrieval_failure"
    user_message = "Search is unavailable right now, please retry shortly."


class GenerationFailure(ChatServiceError):
    code = "generation_failure"
    user_message = "The assistant stopped responding. Please try again."


class SessionStateMissing(ChatServiceError):
    code = "session_state_missing"
    user_message = "The response was lost before it completed."


def user_facing_message(exc: BaseException) -> str:
    if isinstance(exc, ChatServiceError):
        return exc.user_message
    return ChatServiceError.user_message


def error_code(exc: BaseException) -> str:
    if isinstance(exc, ChatServiceError):
        return exc.code
    return ChatServiceError.code
