"""
Exception types raised by the adaptive stage engine.

All failures are surfaced to the caller; nothing in the engine retries or
relaxes constraints on its own.
"""
from typing import Any, Dict, Optional


class CATError(Exception):
    """Base exception for adaptive testing errors."""

    def __init__(  # noqa: D107
        self,
        message: str,
        original_error: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.original_error = original_error
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        msg = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            msg = f"{msg} (context: {ctx_str})"
        if self.original_error:
            msg = f"{msg} - caused by: {str(self.original_error)}"
        return msg


class InfeasibleTestConfigError(CATError):
    """The shadow-test solver could not satisfy the hard constraints."""


class CATConfigurationError(CATError, ValueError):
    """Programming or configuration misuse detected before solving."""
