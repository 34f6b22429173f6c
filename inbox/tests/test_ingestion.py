import asyncio
from datetime import timedelta

import pytest
from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.core.cache import cache
from django.core.cache.backends.db import DatabaseCache
from django.core.management import call_command
from django.db import DatabaseError
from django.utils import timezone
from google.auth.exceptions import TransportError
from googleapiclient.errors import HttpError

from inbox.exceptions import CredentialError
from inbox.gmail_services import GmailMailbox
from inbox.ingestion import (
    BUSY,
    COMPLETED,
    CREDENTIAL_ERROR,
    ERROR,
    LIST_FAILED,
    NO_CATEGORIES,
    ChannelsNotifier,
    IngestionSweep,
    SweepReport,
    _in_flight_key,
    run_ingestion_cycle,
)
from inbox.models import Email, EmailCategory, GmailAccount
from inbox.tests.conftest import FakeMailbox, FakeModel, RecordingNotifier, gmail_message

CLASSIFIED = '{"category": "Newsletters", "confidence": 0.75, "summary": "Weekly deals."}'


def http_error(status):
    class Resp(dict):
        reason = "Error"

    resp = Resp()
    resp.status = status
    return HttpError(resp, b"{}")


def make_sweep(mailbox, model=None, notifier=None, page_size=3):
    factory_calls = []

    def factory(account):
        factory_calls.append(account.pk)
        return mailbox

    sweep = IngestionSweep(
        mailbox_factory=factory,
        model=model or FakeModel(CLASSIFIED),
        notifier=notifier or RecordingNotifier(),
        page_size=page_size,
    )
    sweep.factory_calls = factory_calls
    return sweep


@pytest.fixture
def inbox_messages():
    return {
        "g1": gmail_message(
            "g1", subject="Deals", text="Big sale", html='<a href="https://shop.com/unsubscribe?u=1">x</a>',
            extra_headers={"List-Unsubscribe": "<mailto:leave@shop.com>"},
        ),
        "g2": gmail_message("g2", subject="Standup", text="Notes from today"),
    }


@pytest.mark.django_db
def test_cycle_stores_classifies_and_archives(account, categories, inbox_messages):
    mailbox = FakeMailbox(inbox_messages)
    notifier = RecordingNotifier()
    report = make_sweep(mailbox, notifier=notifier).run_cycle(account)

    assert report.outcome == COMPLETED
    assert (report.listed, report.ingested, report.duplicates, report.failed) == (2, 2, 0, 0)
    assert mailbox.archived == ["g1", "g2"]
    assert mailbox.list_calls[0][1] == 3

    email = Email.objects.get(message_id="g1")
    assert email.gmail_account == account
    assert email.category == categories[0]
    assert email.confidence == 0.75
    assert email.summary == "Weekly deals."
    assert email.sender == "news@shop.com"
    assert email.recipient == "me@example.com"
    assert email.body == "Big sale"
    assert email.is_archived is True
    assert email.unsubscribe_links == ["mailto:leave@shop.com", "https://shop.com/unsubscribe?u=1"]
    assert email.status["processed"] is True

    assert notifier.ingested == ["g1", "g2"]
    assert notifier.reports == [report]


@pytest.mark.django_db
def test_rerunning_never_duplicates(account, categories, inbox_messages):
    mailbox = FakeMailbox(inbox_messages)
    sweep = make_sweep(mailbox)

    sweep.run_cycle(account)
    second = sweep.run_cycle(account)

    assert Email.objects.count() == 2
    assert second.ingested == 0
    assert second.duplicates == 2
    assert mailbox.fetched == ["g1", "g2"]


@pytest.mark.django_db
def test_account_without_categories_makes_no_mailbox_calls(account, inbox_messages):
    mailbox = FakeMailbox(inbox_messages)
    sweep = make_sweep(mailbox)

    report = sweep.run_cycle(account)

    assert report.outcome == NO_CATEGORIES
    assert sweep.factory_calls == []
    assert mailbox.list_calls == []


@pytest.mark.django_db
def test_failing_message_does_not_abort_batch(account, categories, inbox_messages):
    messages = {"bad": {"id": "bad"}, "broken": RuntimeError("503"), **inbox_messages}
    mailbox = FakeMailbox(messages)

    report = make_sweep(mailbox, page_size=10).run_cycle(account)

    assert report.failed == 2
    assert report.ingested == 2
    assert set(Email.objects.values_list("message_id", flat=True)) == {"g1", "g2"}


@pytest.mark.django_db
def test_classification_failure_stores_uncategorized(account, categories, inbox_messages):
    mailbox = FakeMailbox({"g2": inbox_messages["g2"]})
    make_sweep(mailbox, model=FakeModel(RuntimeError("model down"))).run_cycle(account)

    email = Email.objects.get(message_id="g2")
    assert email.category is None
    assert email.confidence == 0
    assert email.summary == ""
    assert email.is_archived is True


@pytest.mark.django_db
def test_archive_failure_keeps_message_unarchived(account, categories, inbox_messages):
    mailbox = FakeMailbox({"g2": inbox_messages["g2"]}, archive_error=CredentialError("revoked"))
    report = make_sweep(mailbox).run_cycle(account)

    assert report.failed == 1
    assert Email.objects.get(message_id="g2").is_archived is False


@pytest.mark.django_db
def test_credential_error_skips_account(account, categories):
    mailbox = FakeMailbox(list_error=CredentialError("invalid_grant"))
    report = make_sweep(mailbox).run_cycle(account)
    assert report.outcome == CREDENTIAL_ERROR
    assert Email.objects.count() == 0


@pytest.mark.django_db
@pytest.mark.parametrize("status, outcome", [
    (500, LIST_FAILED),
    (429, LIST_FAILED),
    (401, CREDENTIAL_ERROR),
    (403, CREDENTIAL_ERROR),
])
def test_list_http_error_skips_account(account, categories, status, outcome):
    mailbox = FakeMailbox(list_error=http_error(status))
    report = make_sweep(mailbox).run_cycle(account)
    assert report.outcome == outcome
    assert Email.objects.count() == 0


@pytest.mark.django_db
@pytest.mark.parametrize("error", [TimeoutError("timed out"), ConnectionResetError("reset by peer")])
def test_list_network_error_skips_account(account, categories, error):
    mailbox = FakeMailbox(list_error=error)
    report = make_sweep(mailbox).run_cycle(account)
    assert report.outcome == LIST_FAILED
    assert not cache.get(_in_flight_key(account.pk))


@pytest.mark.django_db
def test_credential_error_mid_batch_stops_account(account, categories, inbox_messages):
    messages = {
        "g1": inbox_messages["g1"],
        "gX": CredentialError("invalid_grant"),
        "g2": inbox_messages["g2"],
    }
    mailbox = FakeMailbox(messages)

    report = make_sweep(mailbox, page_size=10).run_cycle(account)

    assert report.outcome == CREDENTIAL_ERROR
    assert (report.listed, report.ingested, report.failed) == (3, 1, 1)
    assert mailbox.fetched == ["g1", "gX"]
    assert list(Email.objects.values_list("message_id", flat=True)) == ["g1"]


@pytest.mark.django_db
def test_database_errors_propagate(account, categories, inbox_messages, monkeypatch):
    mailbox = FakeMailbox({"g2": inbox_messages["g2"]})

    def broken_create(*args, **kwargs):
        raise DatabaseError("disk full")

    monkeypatch.setattr(Email.objects, "create", broken_create)
    with pytest.raises(DatabaseError):
        make_sweep(mailbox).run_cycle(account)

    assert not cache.get(_in_flight_key(account.pk))


@pytest.mark.django_db
def test_overlapping_cycle_for_same_account_is_skipped(account, categories, inbox_messages):
    mailbox = FakeMailbox(inbox_messages)
    cache.add(_in_flight_key(account.pk), True)

    report = make_sweep(mailbox).run_cycle(account)

    assert report.outcome == BUSY
    assert mailbox.list_calls == []

    cache.delete(_in_flight_key(account.pk))
    assert make_sweep(mailbox).run_cycle(account).outcome == COMPLETED


@pytest.mark.django_db
def test_run_all_only_visits_accounts_with_tokens(account, categories, user, inbox_messages):
    GmailAccount.objects.create(user=user, email="revoked@example.com", access_token="")
    mailbox = FakeMailbox(inbox_messages)
    sweep = make_sweep(mailbox)

    reports = sweep.run_all()

    assert [r.account_id for r in reports] == [account.pk]
    assert sweep.factory_calls == [account.pk]


@pytest.mark.django_db
def test_run_ingestion_cycle_by_id(account, categories, inbox_messages):
    sweep = make_sweep(FakeMailbox(inbox_messages))
    report = run_ingestion_cycle(account.pk, sweep=sweep)
    assert report.account_id == account.pk
    assert report.ingested == 2


@pytest.mark.django_db
def test_category_deletion_cascades_to_messages(account, categories, inbox_messages):
    make_sweep(FakeMailbox(inbox_messages)).run_cycle(account)
    EmailCategory.objects.filter(pk=categories[0].pk).delete()
    assert Email.objects.count() == 0


@pytest.mark.django_db
def test_channels_notifier_pushes_report_to_user_group(account):
    layer = get_channel_layer()
    async_to_sync(layer.group_add)(f"user_{account.user_id}", "listener")

    ChannelsNotifier().cycle_finished(account, SweepReport(account_id=account.pk, ingested=1))

    async def receive():
        return await asyncio.wait_for(layer.receive("listener"), timeout=1)

    event = async_to_sync(receive)()
    assert event["type"] == "sweep_report"
    assert event["ingested"] == 1
    assert event["outcome"] == COMPLETED


@pytest.mark.django_db
def test_channels_notifier_pushes_new_email_to_user_group(account, categories):
    email = Email.objects.create(
        gmail_account=account,
        message_id="g1",
        subject="Deals",
        summary="Weekly deals.",
        received_at=timezone.now(),
        category=categories[0],
    )
    layer = get_channel_layer()
    async_to_sync(layer.group_add)(f"user_{account.user_id}", "email-listener")

    ChannelsNotifier().email_ingested(account, email)

    async def receive():
        return await asyncio.wait_for(layer.receive("email-listener"), timeout=1)

    event = async_to_sync(receive)()
    assert event["type"] == "new_email"
    assert event["id"] == email.pk
    assert event["message_id"] == "g1"
    assert event["subject"] == "Deals"
    assert event["summary"] == "Weekly deals."
    assert event["category"] == "Newsletters"
    assert event["account"] == "test@example.com"
    assert event["received_at"] == email.received_at.isoformat()


@pytest.mark.django_db
def test_run_all_continues_after_an_account_fails(account, categories, user, inbox_messages):
    second = GmailAccount.objects.create(
        user=user, email="second@example.com", access_token="access", refresh_token="refresh",
        expires_at=timezone.now() + timedelta(hours=1),
    )
    mailbox = FakeMailbox(inbox_messages)
    notifier = RecordingNotifier()

    def factory(acc):
        if acc.pk == account.pk:
            raise RuntimeError("socket closed")
        return mailbox

    sweep = IngestionSweep(mailbox_factory=factory, model=FakeModel(CLASSIFIED), notifier=notifier)
    reports = sweep.run_all()

    assert [(r.account_id, r.outcome) for r in reports] == [(account.pk, ERROR), (second.pk, COMPLETED)]
    assert reports[1].ingested == 2
    assert [r.outcome for r in notifier.reports] == [ERROR, COMPLETED]
    assert not cache.get(_in_flight_key(account.pk))


@pytest.mark.django_db
def test_run_all_skips_account_whose_token_refresh_cannot_connect(
    account, categories, user, inbox_messages, monkeypatch
):
    account.expires_at = timezone.now() - timedelta(minutes=1)
    account.save()
    second = GmailAccount.objects.create(
        user=user, email="second@example.com", access_token="access", refresh_token="refresh",
        expires_at=timezone.now() + timedelta(hours=1),
    )

    def mock_refresh(self, request):
        raise TransportError("connection reset while refreshing")

    monkeypatch.setattr("inbox.gmail_services.Credentials.refresh", mock_refresh)
    mailbox = FakeMailbox(inbox_messages)

    def factory(acc):
        return GmailMailbox(acc) if acc.pk == account.pk else mailbox

    sweep = IngestionSweep(mailbox_factory=factory, model=FakeModel(CLASSIFIED), notifier=RecordingNotifier())
    reports = sweep.run_all()

    assert [(r.account_id, r.outcome) for r in reports] == [(account.pk, CREDENTIAL_ERROR), (second.pk, COMPLETED)]
    assert set(Email.objects.values_list("gmail_account_id", flat=True)) == {second.pk}


@pytest.mark.django_db
def test_run_all_propagates_database_errors(account, categories, inbox_messages, monkeypatch):
    def broken_create(*args, **kwargs):
        raise DatabaseError("disk full")

    monkeypatch.setattr(Email.objects, "create", broken_create)
    with pytest.raises(DatabaseError):
        make_sweep(FakeMailbox(inbox_messages)).run_all()


@pytest.mark.django_db
def test_in_flight_marker_is_shared_through_database_cache(account, categories, inbox_messages, monkeypatch):
    call_command("createcachetable", "inbox_cache")
    this_worker = DatabaseCache("inbox_cache", {})
    other_worker = DatabaseCache("inbox_cache", {})
    monkeypatch.setattr("inbox.ingestion.cache", this_worker)
    mailbox = FakeMailbox(inbox_messages)

    assert other_worker.add(_in_flight_key(account.pk), True)
    assert make_sweep(mailbox).run_cycle(account).outcome == BUSY
    assert mailbox.list_calls == []

    other_worker.delete(_in_flight_key(account.pk))
    assert make_sweep(mailbox).run_cycle(account).outcome == COMPLETED
    assert other_worker.get(_in_flight_key(account.pk)) is None


def test_default_cache_is_shared_between_processes():
    from mailsort import settings as project_settings

    backend = project_settings.CACHES["default"]["BACKEND"]
    if project_settings.REDIS_HOST:
        assert backend == "django.core.cache.backends.redis.RedisCache"
    else:
        assert backend == "django.core.cache.backends.db.DatabaseCache"
