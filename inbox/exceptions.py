"""
Exceptions raised by the ingestion and unsubscribe pipeline.

Each carries optional context so log lines can say which account, message
or link was involved without the caller re-assembling it.
"""

from typing import Any, Dict, Optional


class InboxError(Exception):
    """Base class for pipeline errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}

    def __str__(self) -> str:
        base_message = super().__str__()
        if self.context:
            context_info = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{base_message} ({context_info})"
        return base_message


class CredentialError(InboxError):
    """The mailbox credentials are missing, expired or could not be refreshed."""


class ExtractionError(InboxError):
    """A provider payload could not be turned into a ParsedMessage."""


class ActionPlanError(InboxError):
    """The model returned something that is not a usable action plan."""


class UnsubscribeError(InboxError):
    """A single unsubscribe link could not be completed."""
