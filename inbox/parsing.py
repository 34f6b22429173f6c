import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import List

from bs4 import BeautifulSoup

from .exceptions import ExtractionError

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"<([^<>]+)>")

UNSUBSCRIBE_URL_TOKENS = ("unsubscribe", "opt out", "opt-out", "optout", "remove")
LINK_SCHEMES = ("http://", "https://", "mailto:")


@dataclass
class ParsedMessage:
    id: str
    thread_id: str = ""
    sender: str = ""
    recipient: str = ""
    subject: str = ""
    snippet: str = ""
    text_body: str = ""
    html_body: str = ""
    received_at: datetime = None
    unsubscribe_links: List[str] = field(default_factory=list)


def normalize_address(value):
    """
    Returns the bracketed address of a ``"Display Name <addr>"`` header value,
    or the value unchanged when it has no brackets.
    """
    if not value:
        return ""
    m = _ADDRESS_RE.search(value)
    if m:
        return m.group(1).strip()
    return value.strip()


def decode_body(data):
    """
    Decodes a Gmail base64url body, repairing missing padding.
    """
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError) as e:
        raise ExtractionError(f"Undecodable body data: {e}") from e
    return raw.decode("utf-8", errors="replace")


def _iter_leaves(part):
    """Depth-first walk over the MIME tree, yielding parts without children."""
    children = part.get("parts") or []
    if not children:
        yield part
        return
    for child in children:
        yield from _iter_leaves(child)


def extract_bodies(payload):
    """
    Returns (text_body, html_body) from a Gmail payload.

    Every text/plain and text/html leaf is decoded; when several leaves share a
    type the last one seen wins, since providers usually put the primary content
    last. A single-part payload is routed by its own MIME type.
    """
    text_body = ""
    html_body = ""
    for leaf in _iter_leaves(payload):
        data = (leaf.get("body") or {}).get("data")
        if not data:
            continue
        mime = (leaf.get("mimeType") or "").lower()
        if mime == "text/html":
            html_body = decode_body(data)
        elif mime == "text/plain" or leaf is payload:
            text_body = decode_body(data)
    return text_body, html_body


def header_map(payload):
    return {h.get("name", "").lower(): h.get("value", "") for h in payload.get("headers", [])}


def parse_list_unsubscribe(value):
    """
    Splits a List-Unsubscribe header into its http(s)/mailto URIs.
    """
    links = []
    for chunk in (value or "").split(","):
        link = chunk.strip().strip("<>").strip()
        if link.lower().startswith(LINK_SCHEMES):
            links.append(link)
    return links


def extract_unsubscribe_links(html):
    """
    Extracts unsubscribe-looking anchor targets from an HTML body.

    Args:
        html (str): The HTML content to parse.

    Returns:
        list: hrefs with an http(s)/mailto scheme whose URL mentions
        unsubscribe, opt out or remove, in document order.
    """
    if not html:
        return []
    soup = BeautifulSoup(html, "html.parser")
    links = []
    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        lowered = href.lower()
        if not lowered.startswith(LINK_SCHEMES):
            continue
        if any(token in lowered for token in UNSUBSCRIBE_URL_TOKENS):
            links.append(href)
    return links


def collect_unsubscribe_links(headers, html):
    """Header links first, then HTML anchors, deduplicated by exact match."""
    links = []
    for link in parse_list_unsubscribe(headers.get("list-unsubscribe")) + extract_unsubscribe_links(html):
        if link not in links:
            links.append(link)
    return links


def _received_at(date_str):
    if date_str:
        try:
            received_at = parsedate_to_datetime(date_str)
            if received_at.tzinfo is None:
                received_at = received_at.replace(tzinfo=timezone.utc)
            return received_at
        except (TypeError, ValueError):
            logger.debug("Unparseable Date header %r", date_str)
    return datetime.now(timezone.utc)


def parse_message(full_message):
    """
    Parses a full Gmail API message into a ParsedMessage.

    Args:
        full_message: The full Gmail message (API dict, format='full').

    Raises:
        ExtractionError: when the payload is missing or cannot be decoded.
    """
    if not isinstance(full_message, dict) or not full_message.get("id"):
        raise ExtractionError("Message has no id")
    payload = full_message.get("payload")
    if not isinstance(payload, dict):
        raise ExtractionError("Message has no payload", {"id": full_message["id"]})

    headers = header_map(payload)
    text_body, html_body = extract_bodies(payload)

    return ParsedMessage(
        id=full_message["id"],
        thread_id=full_message.get("threadId") or "",
        sender=normalize_address(headers.get("from", "")),
        recipient=normalize_address(headers.get("to", "")),
        subject=headers.get("subject", ""),
        snippet=full_message.get("snippet") or "",
        text_body=text_body,
        html_body=html_body,
        received_at=_received_at(headers.get("date")),
        unsubscribe_links=collect_unsubscribe_links(headers, html_body),
    )
