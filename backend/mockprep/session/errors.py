from __future__ import annotations


GENERIC_RETRY_MESSAGE = "Something went wrong, please retry."


class SessionError(Exception):
    """Base class for everything the session engine raises."""

    user_message = GENERIC_RETRY_MESSAGE


class InsufficientBalance(SessionError):
    user_message = "You're out of interview preps."

    def __init__(self, user_id: str, remaining: int = 0):
        super().__init__(f"insufficient balance for user {user_id} (remaining={remaining})")
        self.user_id = user_id
        self.remaining = remaining


class PersistenceFailure(SessionError):
    user_message = "We couldn't save your progress. Retrying..."

    def __init__(self, operation: str, cause: Exception | None = None):
        detail = f"{operation} failed"
        if cause is not None:
            detail = f"{detail}: {cause}"
        super().__init__(detail)
        self.operation = operation
        self.cause = cause


class ContractViolation(SessionError):
    """Caller broke the engine protocol. Logged, never shown verbatim."""


class SessionAlreadyActive(ContractViolation):
    def __init__(self, user_id: str, session_id: str | None = None):
        super().__init__(f"user {user_id} already has a live session {session_id or ''}".rstrip())
        self.user_id = user_id
        self.session_id = session_id


class RecordingAlreadyActive(ContractViolation):
    def __init__(self, active_index: int, requested_index: int):
        super().__init__(f"recording for question {active_index} not stopped before question {requested_index}")
        self.active_index = active_index
        self.requested_index = requested_index


class RecordingNotActive(ContractViolation):
    pass


class AtEnd(ContractViolation):
    def __init__(self, index: int):
        super().__init__(f"sequencer already at last question (index={index})")
        self.index = index


class IllegalAction(ContractViolation):
    def __init__(self, action: str, state: str):
        super().__init__(f"action '{action}' not allowed in state '{state}'")
        self.action = action
        self.state = state
