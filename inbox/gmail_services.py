import logging
from datetime import timedelta

from django.conf import settings
from django.utils import timezone
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from .exceptions import CredentialError

logger = logging.getLogger(__name__)

ACCESS_TOKEN_LIFETIME = timedelta(hours=1)
INBOX_LABEL = 'INBOX'


def build_credentials(account):
    """
    Returns google-auth Credentials for the given GmailAccount.
    """
    return Credentials(
        token=account.access_token or None,
        refresh_token=account.refresh_token or None,
        token_uri=settings.GOOGLE_TOKEN_URI,
        client_id=settings.GOOGLE_OAUTH2_CLIENT_ID,
        client_secret=settings.GOOGLE_OAUTH2_CLIENT_SECRET,
        scopes=settings.GMAIL_SCOPES,
    )


def refresh_account_credentials(account):
    """
    Exchanges the account's refresh token for a new access token and
    persists it together with the new expiry.

    Raises:
        CredentialError: if there is no refresh token, Google rejects it or the
            token endpoint cannot be reached.
    """
    if not account.refresh_token:
        raise CredentialError("No refresh token stored", {"account": account.email})

    creds = build_credentials(account)
    try:
        creds.refresh(Request())
    except GoogleAuthError as e:
        raise CredentialError(f"Failed to refresh access token: {e}", {"account": account.email}) from e

    if not creds.token:
        raise CredentialError("Refresh returned no access token", {"account": account.email})

    account.access_token = creds.token
    account.expires_at = timezone.now() + ACCESS_TOKEN_LIFETIME
    account.save(update_fields=['access_token', 'expires_at'])
    logger.info("[GMAIL] Refreshed access token for %s", account.email)


def get_gmail_service(account):
    """
    Returns a Gmail API service instance for the given GmailAccount,
    refreshing its stored credentials first when they have expired.
    """
    if account.credentials_expired():
        logger.info("[GMAIL] Access token for %s expired, refreshing", account.email)
        refresh_account_credentials(account)
    return build('gmail', 'v1', credentials=build_credentials(account), cache_discovery=False)


def build_candidate_query(since):
    return f"in:inbox is:unread after:{since:%Y/%m/%d}"


class GmailMailbox:
    """
    Mailbox operations for one GmailAccount.

    Credentials are checked before every call; an expired access token is
    refreshed and saved before the request goes out.
    """

    def __init__(self, account, service_factory=get_gmail_service):
        self.account = account
        self._service_factory = service_factory
        self._service = None

    def _messages(self):
        if self._service is None or self.account.credentials_expired():
            self._service = self._service_factory(self.account)
        return self._service.users().messages()

    def list_candidates(self, since, limit):
        """
        Lists ids of unread inbox messages received after ``since``.

        Args:
            since: date or datetime lower bound (day resolution).
            limit (int): maximum number of ids to return.

        Returns:
            list[str]: Gmail message ids.
        """
        resp = self._messages().list(
            userId='me', q=build_candidate_query(since), maxResults=limit
        ).execute()
        return [m["id"] for m in resp.get("messages", []) if m.get("id")]

    def fetch_full(self, message_id):
        return self._messages().get(userId='me', id=message_id, format='full').execute()

    def archive(self, message_id):
        """
        Archives a message by removing its INBOX label.
        """
        self._messages().modify(
            userId='me',
            id=message_id,
            body={'removeLabelIds': [INBOX_LABEL]}
        ).execute()
        logger.info("[GMAIL] Email %s archived.", message_id)

    def delete_message(self, message_id):
        """
        Moves a message to the Gmail trash.
        """
        self._messages().trash(userId='me', id=message_id).execute()
        logger.info("[GMAIL] Email %s moved to trash.", message_id)
