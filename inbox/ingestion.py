import logging
from dataclasses import asdict, dataclass
from datetime import timedelta

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.conf import settings
from django.core.cache import cache
from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone
from googleapiclient.errors import HttpError

from .ai_services import classify_email, get_default_model
from .exceptions import CredentialError
from .gmail_services import GmailMailbox
from .models import Email, EmailCategory, GmailAccount
from .parsing import parse_message

logger = logging.getLogger(__name__)

COMPLETED = "completed"
NO_CATEGORIES = "no_categories"
BUSY = "busy"
CREDENTIAL_ERROR = "credential_error"
LIST_FAILED = "list_failed"
ERROR = "error"

REVOKED_STATUSES = (401, 403)


@dataclass
class SweepReport:
    account_id: int
    outcome: str = COMPLETED
    listed: int = 0
    ingested: int = 0
    duplicates: int = 0
    failed: int = 0

    def as_dict(self):
        return asdict(self)


class ChannelsNotifier:
    """
    Pushes ingestion events to the account owner's websocket group.
    """

    def _send(self, user_id, event):
        channel_layer = get_channel_layer()
        if channel_layer is None:
            return
        try:
            async_to_sync(channel_layer.group_send)(f"user_{user_id}", event)
        except Exception as e:
            logger.warning("[WS] Could not push %s to user %s: %s", event["type"], user_id, e)

    def email_ingested(self, account, email):
        self._send(account.user_id, {
            "type": "new_email",
            "id": email.pk,
            "message_id": email.message_id,
            "subject": email.subject,
            "summary": email.summary,
            "received_at": email.received_at.isoformat(),
            "category": email.category.name if email.category else None,
            "account": account.email,
        })

    def cycle_finished(self, account, report):
        logger.info(
            "[SWEEP] %s: %s (listed=%d ingested=%d duplicates=%d failed=%d)",
            account.email, report.outcome, report.listed, report.ingested,
            report.duplicates, report.failed,
        )
        self._send(account.user_id, {"type": "sweep_report", **report.as_dict()})


def _in_flight_key(account_id):
    return f"inbox:ingest-in-flight:{account_id}"


class IngestionSweep:
    """
    Pulls new unread mail for connected accounts, classifies it, stores it
    and archives it upstream.

    Accounts and messages are processed one at a time. A message that fails
    is counted and skipped; database errors other than a duplicate insert
    propagate.
    """

    def __init__(self, mailbox_factory=GmailMailbox, model=None, notifier=None,
                 page_size=None, window=None):
        self.mailbox_factory = mailbox_factory
        self.model = model or get_default_model()
        self.notifier = notifier or ChannelsNotifier()
        self.page_size = page_size or settings.INGESTION_PAGE_SIZE
        self.window = window or timedelta(days=settings.INGESTION_WINDOW_DAYS)

    def run_all(self):
        """
        Runs one cycle for every connected account.

        A failure in one account is logged and reported without stopping the
        sweep; database errors propagate.
        """
        reports = []
        accounts = GmailAccount.objects.exclude(access_token="").select_related("user").order_by("pk")
        for account in accounts:
            try:
                reports.append(self.run_cycle(account))
            except DatabaseError:
                raise
            except Exception:
                logger.exception("[SWEEP] Ingestion for %s failed", account.email)
                report = SweepReport(account_id=account.pk, outcome=ERROR)
                self.notifier.cycle_finished(account, report)
                reports.append(report)
        return reports

    def run_cycle(self, account):
        key = _in_flight_key(account.pk)
        if not cache.add(key, True, timeout=settings.INGESTION_LOCK_TIMEOUT):
            logger.info("[SWEEP] Ingestion already running for %s, skipping", account.email)
            return SweepReport(account_id=account.pk, outcome=BUSY)
        try:
            report = self._ingest(account)
        finally:
            cache.delete(key)
        self.notifier.cycle_finished(account, report)
        return report

    def _ingest(self, account):
        report = SweepReport(account_id=account.pk)
        categories = list(EmailCategory.objects.filter(user_id=account.user_id))
        if not categories:
            logger.info("[SWEEP] No categories defined for %s", account.user_id)
            report.outcome = NO_CATEGORIES
            return report

        mailbox = self.mailbox_factory(account)
        since = timezone.now() - self.window
        try:
            message_ids = mailbox.list_candidates(since, self.page_size)
        except CredentialError as e:
            logger.warning("[SWEEP] Skipping %s this cycle: %s", account.email, e)
            report.outcome = CREDENTIAL_ERROR
            return report
        except HttpError as e:
            if e.resp.status in REVOKED_STATUSES:
                logger.warning("[SWEEP] Gmail refused credentials for %s: %s", account.email, e)
                report.outcome = CREDENTIAL_ERROR
            else:
                logger.error("[GMAIL ERROR] Listing emails for %s failed: %s", account.email, e)
                report.outcome = LIST_FAILED
            return report
        except OSError as e:
            logger.error("[GMAIL ERROR] Listing emails for %s failed: %s", account.email, e)
            report.outcome = LIST_FAILED
            return report

        report.listed = len(message_ids)
        logger.info("[SWEEP] Found %d unread messages for %s", len(message_ids), account.email)

        for msg_id in message_ids:
            if Email.objects.filter(message_id=msg_id).exists():
                logger.debug("Email %s already processed", msg_id)
                report.duplicates += 1
                continue
            try:
                stored = self._ingest_message(account, mailbox, categories, msg_id)
            except IntegrityError:
                logger.info("[DB] Duplicate email %s, skipping", msg_id)
                report.duplicates += 1
                continue
            except DatabaseError:
                raise
            except CredentialError as e:
                logger.warning("[SWEEP] Credentials for %s stopped working: %s", account.email, e)
                report.outcome = CREDENTIAL_ERROR
                report.failed += 1
                break
            except Exception:
                logger.exception("Error processing message %s for %s", msg_id, account.email)
                report.failed += 1
                continue
            if stored:
                report.ingested += 1
            else:
                report.failed += 1
        return report

    def _ingest_message(self, account, mailbox, categories, msg_id):
        """
        Stores one message and archives it upstream.

        Returns False when the message was stored but could not be archived.
        """
        parsed = parse_message(mailbox.fetch_full(msg_id))
        result = classify_email(parsed, categories, self.model)
        category = next((c for c in categories if c.id == result.category_id), None)

        with transaction.atomic():
            email_obj = Email.objects.create(
                gmail_account=account,
                message_id=parsed.id,
                thread_id=parsed.thread_id,
                sender=parsed.sender[:255],
                recipient=parsed.recipient[:255],
                subject=parsed.subject[:255],
                snippet=parsed.snippet,
                body=parsed.text_body,
                html_body=parsed.html_body,
                summary=result.summary,
                received_at=parsed.received_at,
                confidence=result.confidence,
                category=category,
                unsubscribe_links=parsed.unsubscribe_links,
                status={"processed": True},
            )

        self.notifier.email_ingested(account, email_obj)

        try:
            mailbox.archive(msg_id)
        except (CredentialError, HttpError) as e:
            logger.error("[GMAIL ERROR] Archiving %s failed: %s", msg_id, e)
            return False

        email_obj.is_archived = True
        email_obj.save(update_fields=["is_archived"])
        logger.info("Processed and archived email %s", msg_id)
        return True


def run_ingestion_cycle(account_id, sweep=None):
    """
    Runs one ingestion cycle for a single account and returns its SweepReport.
    """
    account = GmailAccount.objects.select_related("user").get(pk=account_id)
    return (sweep or IngestionSweep()).run_cycle(account)
