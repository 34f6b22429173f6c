import base64
from datetime import timedelta

import pytest
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.utils import timezone
from rest_framework.test import APIClient

from inbox.models import EmailCategory, GmailAccount


User = get_user_model()


LOCMEM_CACHES = {"default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"}}


@pytest.fixture(autouse=True)
def clear_cache(settings):
    settings.CACHES = LOCMEM_CACHES
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def user(db):
    from uuid import uuid4
    username = f"testuser_{uuid4().hex[:8]}"
    return User.objects.create_user(username=username, password="testpass")


@pytest.fixture
def client(user):
    client = APIClient()
    client.login(username=user.username, password="testpass")
    return client


@pytest.fixture
def account(user):
    return GmailAccount.objects.create(
        user=user,
        email="test@example.com",
        access_token="access",
        refresh_token="refresh",
        expires_at=timezone.now() + timedelta(hours=1),
    )


@pytest.fixture
def categories(user):
    return [
        EmailCategory.objects.create(user=user, name="Newsletters", description="Marketing and digests"),
        EmailCategory.objects.create(user=user, name="Work", description="Job stuff"),
    ]


def b64(text):
    # Gmail sends base64url, frequently without padding
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def gmail_message(msg_id, subject="Hello", sender="Shop <news@shop.com>", to="Me <me@example.com>",
                  text=None, html=None, extra_headers=None, snippet="", thread_id="t-1"):
    headers = [
        {"name": "From", "value": sender},
        {"name": "To", "value": to},
        {"name": "Subject", "value": subject},
        {"name": "Date", "value": "Tue, 14 Oct 2025 09:30:00 +0000"},
    ]
    for name, value in (extra_headers or {}).items():
        headers.append({"name": name, "value": value})

    parts = []
    if text is not None:
        parts.append({"mimeType": "text/plain", "body": {"data": b64(text)}})
    if html is not None:
        parts.append({"mimeType": "text/html", "body": {"data": b64(html)}})

    return {
        "id": msg_id,
        "threadId": thread_id,
        "snippet": snippet,
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": headers,
            "parts": parts,
            "body": {"size": 0},
        },
    }


class FakeModel:
    """Returns canned completions in order; an Exception entry is raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def complete(self, system, user, temperature=0.3):
        self.calls.append({"system": system, "user": user, "temperature": temperature})
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeMailbox:
    def __init__(self, messages=None, list_error=None, archive_error=None):
        self.messages = dict(messages or {})
        self.list_error = list_error
        self.archive_error = archive_error
        self.list_calls = []
        self.fetched = []
        self.archived = []
        self.deleted = []

    def list_candidates(self, since, limit):
        self.list_calls.append((since, limit))
        if self.list_error:
            raise self.list_error
        return list(self.messages)[:limit]

    def fetch_full(self, message_id):
        self.fetched.append(message_id)
        message = self.messages[message_id]
        if isinstance(message, Exception):
            raise message
        return message

    def archive(self, message_id):
        if self.archive_error:
            raise self.archive_error
        self.archived.append(message_id)

    def delete_message(self, message_id):
        self.deleted.append(message_id)


class RecordingNotifier:
    def __init__(self):
        self.ingested = []
        self.reports = []

    def email_ingested(self, account, email):
        self.ingested.append(email.message_id)

    def cycle_finished(self, account, report):
        self.reports.append(report)


class FakeSession:
    def __init__(self, html="<html><body><button id='go'>Unsubscribe</button></body></html>",
                 goto_error=None, missing_selectors=()):
        self.html = html
        self.goto_error = goto_error
        self.missing_selectors = set(missing_selectors)
        self.visited = []
        self.performed = []
        self.closed = 0

    async def goto(self, url, timeout_ms):
        self.visited.append(url)
        if self.goto_error:
            raise self.goto_error

    async def content(self):
        return self.html

    async def wait_for_selector(self, selector, timeout_ms):
        if selector in self.missing_selectors:
            raise TimeoutError(f"Timeout waiting for {selector}")

    async def click(self, selector):
        self.performed.append(("click", selector))

    async def fill(self, selector, value):
        self.performed.append(("input", selector, value))

    async def select(self, selector, value):
        self.performed.append(("select", selector, value))

    async def wait_for_network_idle(self, timeout_ms):
        pass

    async def close(self):
        self.closed += 1


class FakeBrowser:
    """Hands out the given sessions in order, one per launch."""

    def __init__(self, *sessions):
        self.pending = list(sessions)
        self.launched = []

    async def launch(self):
        session = self.pending.pop(0) if self.pending else FakeSession()
        self.launched.append(session)
        return session
