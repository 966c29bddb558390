from __future__ import annotations

from typing import Any, Dict, Optional


class ConsoleError(Exception):
    """Base error for the service console core."""

    code = "console_error"
    status_code = 500

    def __init__(self, detail: str, *, meta: Optional[Dict[str, Any]] = None):
        super().__init__(detail)
        self.detail = detail
        self.meta: Dict[str, Any] = dict(meta or {})


class NotFoundError(ConsoleError):
    """Unknown service/rule/dashboard id, including operations after removal."""

    code = "not_found"
    status_code = 404


class TransientNetworkError(ConsoleError):
    """Timeout, transport failure or 5xx from a collaborator; safe to retry."""

    code = "transient_network"
    status_code = 503


class ValidationError(ConsoleError):
    """Malformed payload, unknown enum token or missing required field."""

    code = "validation_error"
    status_code = 400


class ConflictError(ConsoleError):
    """Duplicate unique identifier."""

    code = "conflict"
    status_code = 409


class StateError(ConsoleError):
    """Operation invalid for the current lifecycle state."""

    code = "invalid_state"
    status_code = 409
