"""Error type shared by the survey ledger modules."""

from __future__ import annotations

from typing import Any, Dict

VALIDATION = "validation"
STATE = "state"
AUTHORIZATION = "authorization"
DUPLICATE = "duplicate"
CUSTODY = "custody"
CONFIG = "config"
CAPABILITY = "capability"


class LedgerError(Exception):
    """A rejected ledger call. Raising one rolls back the enclosing transaction."""

    def __init__(self, code: str, message: str, **details: Any):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details

    def to_response(self) -> Dict[str, Any]:
        response: Dict[str, Any] = {"error": self.message, "code": self.code}
        response.update(self.details)
        return response
