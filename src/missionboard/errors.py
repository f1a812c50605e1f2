from __future__ import annotations

from typing import Any

EXIT_CODES: dict[str, int] = {
    "SERVER_ERROR": 1,
    "VALIDATION_ERROR": 11,
    "DUPLICATE_ID": 12,
    "ITEM_NOT_FOUND": 20,
    "INVALID_TRANSITION": 21,
    "WIP_LIMIT_EXCEEDED": 22,
    "ALREADY_CLAIMED": 23,
    "DEPENDENCY_BLOCKED": 24,
    "AGENT_REQUIRED": 25,
    "INVALID_STAGE": 26,
    "INVALID_AGENT": 27,
    "DEPENDENCY_CYCLE": 28,
    "LOCK_TIMEOUT": 30,
    "BOARD_NOT_FOUND": 40,
    "EXISTING_MISSION": 41,
}


class BoardError(RuntimeError):
    """Raised when a board operation is rejected.

    Every subclass carries a stable ``code``; the CLI maps it to an exit status
    through ``EXIT_CODES``.
    """

    code = "SERVER_ERROR"
    retriable = False

    def __init__(
        self,
        message: str,
        *,
        item_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.item_id = item_id
        self.details = details or {}

    @property
    def exit_code(self) -> int:
        return EXIT_CODES.get(self.code, 1)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.item_id is not None:
            payload["itemId"] = self.item_id
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(BoardError):
    """Raised when request input is malformed."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, errors: list[str] | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", None) or {}
        if errors:
            details["errors"] = list(errors)
        super().__init__(message, details=details, **kwargs)
        self.errors = list(errors or [])


class DuplicateIdError(BoardError):
    code = "DUPLICATE_ID"


class ItemNotFoundError(BoardError):
    code = "ITEM_NOT_FOUND"

    def __init__(self, item_id: str) -> None:
        super().__init__(f"Item not found: {item_id}", item_id=item_id)


class BoardNotFoundError(BoardError):
    code = "BOARD_NOT_FOUND"


class ExistingMissionError(BoardError):
    code = "EXISTING_MISSION"


class InvalidTransitionError(BoardError):
    code = "INVALID_TRANSITION"


class InvalidStageError(BoardError):
    code = "INVALID_STAGE"


class WipLimitExceededError(BoardError):
    code = "WIP_LIMIT_EXCEEDED"


class AlreadyClaimedError(BoardError):
    code = "ALREADY_CLAIMED"


class InvalidAgentError(BoardError):
    code = "INVALID_AGENT"


class AgentRequiredError(BoardError):
    code = "AGENT_REQUIRED"


class DependencyBlockedError(BoardError):
    code = "DEPENDENCY_BLOCKED"


class DependencyCycleError(BoardError):
    code = "DEPENDENCY_CYCLE"


class LockTimeoutError(BoardError):
    """Raised when the store lock cannot be acquired in time. Safe to retry."""

    code = "LOCK_TIMEOUT"
    retriable = True


class StoreCorruptedError(BoardError):
    """Raised when the board document or an item file cannot be parsed."""

    code = "SERVER_ERROR"
