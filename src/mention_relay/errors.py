"""Exception taxonomy shared by the mention stores, processor and responder clients."""

from __future__ import annotations

from typing import Any, Optional


class MentionRelayError(Exception):
    def __init__(self, error_type: str, message: str, *, recoverable: bool = True, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.error_type = error_type
        self.recoverable = recoverable
        self.data = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "type": self.error_type,
                "message": str(self),
                "recoverable": self.recoverable,
                "data": self.data,
            }
        }


class PersistenceError(MentionRelayError):
    """Raised when a write to the backing database fails."""

    def __init__(self, message: str, *, data: Optional[dict[str, Any]] = None):
        super().__init__("PERSISTENCE_ERROR", message, recoverable=False, data=data)


class NotFoundError(MentionRelayError):
    """Raised when a row addressed by id no longer exists."""

    def __init__(self, message: str, *, data: Optional[dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, recoverable=True, data=data)


class ResponderError(MentionRelayError):
    """Raised when the external responder fails or returns nothing usable."""

    def __init__(self, message: str, *, data: Optional[dict[str, Any]] = None):
        super().__init__("RESPONDER_ERROR", message, recoverable=False, data=data)


class ResponderTimeoutError(ResponderError):
    pass
