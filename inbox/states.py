"""
Unsubscribe state of a stored message.

The state lives in the ``unsubscribe`` key of ``Email.status`` as a small
tagged dict; these classes are the in-memory view of it.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union


@dataclass(frozen=True)
class NotAttempted:
    kind = "not_attempted"


@dataclass(frozen=True)
class MailDeferred:
    link: str
    kind = "mail_deferred"


@dataclass(frozen=True)
class Automated:
    date: datetime
    link: str = ""
    kind = "automated"


@dataclass(frozen=True)
class Failed:
    reason: str
    kind = "failed"


UnsubscribeState = Union[NotAttempted, MailDeferred, Automated, Failed]


def dump_state(state: UnsubscribeState) -> dict:
    if isinstance(state, MailDeferred):
        return {"kind": state.kind, "link": state.link}
    if isinstance(state, Automated):
        return {"kind": state.kind, "date": state.date.isoformat(), "link": state.link}
    if isinstance(state, Failed):
        return {"kind": state.kind, "reason": state.reason}
    return {"kind": NotAttempted.kind}


def load_state(data: Optional[dict]) -> UnsubscribeState:
    """Rebuild a state from its stored form; anything unrecognised is NotAttempted."""
    if not isinstance(data, dict):
        return NotAttempted()
    kind = data.get("kind")
    if kind == MailDeferred.kind:
        return MailDeferred(link=data.get("link", ""))
    if kind == Automated.kind:
        try:
            date = datetime.fromisoformat(data["date"])
        except (KeyError, TypeError, ValueError):
            return NotAttempted()
        return Automated(date=date, link=data.get("link", ""))
    if kind == Failed.kind:
        return Failed(reason=data.get("reason", ""))
    return NotAttempted()
