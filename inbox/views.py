import logging

from googleapiclient.errors import HttpError
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from .exceptions import CredentialError
from .gmail_services import GmailMailbox
from .ingestion import run_ingestion_cycle
from .models import Email, GmailAccount
from .serializers import EmailSerializer
from .unsubscribe import attempt_unsubscribe

logger = logging.getLogger(__name__)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def ingest_account(request, account_id):
    """
    Runs one ingestion cycle for one of the user's accounts and returns its report.
    """
    if not GmailAccount.objects.filter(pk=account_id, user=request.user).exists():
        return Response({"error": "Account not found"}, status=status.HTTP_404_NOT_FOUND)

    report = run_ingestion_cycle(account_id)
    return Response(report.as_dict())


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def unsubscribe_email(request, email_id):
    """
    Attempts to unsubscribe from the list behind one stored email.
    A message without unsubscribe links is reported as skipped, not as a failure.
    """
    if not Email.objects.filter(pk=email_id, gmail_account__user=request.user).exists():
        return Response({"error": "Email not found"}, status=status.HTTP_404_NOT_FOUND)

    result = attempt_unsubscribe(email_id)

    if result.skipped:
        return Response({"message": "No unsubscribe links available for this email", "skipped": True})
    if result.success:
        return Response({"message": result.message})
    return Response({"error": result.message}, status=status.HTTP_400_BAD_REQUEST)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def delete_emails(request):
    """
    Moves the given emails to the Gmail trash and removes them locally.
    """
    email_ids = request.data.get('email_ids', [])
    if not isinstance(email_ids, list):
        return Response({"error": "email_ids must be a list"}, status=status.HTTP_400_BAD_REQUEST)

    failures = []
    successes = []
    mailboxes = {}

    for email_id in email_ids:
        email_obj = Email.objects.filter(
            gmail_account__user=request.user, pk=email_id
        ).select_related('gmail_account').first()

        if not email_obj:
            failures.append({'id': email_id, 'error': 'not found'})
            continue

        account = email_obj.gmail_account
        if account.pk not in mailboxes:
            mailboxes[account.pk] = GmailMailbox(account)
        mailbox = mailboxes[account.pk]
        try:
            mailbox.delete_message(email_obj.message_id)
        except CredentialError as e:
            logger.warning("[GMAIL] Cannot delete %s: %s", email_obj.message_id, e)
            failures.append({'id': email_id, 'error': 'Gmail credentials are no longer valid.'})
            continue
        except HttpError as e:
            code = getattr(e.resp, 'status', None)
            failures.append({'id': email_id, 'error': f'Gmail API: {code}'})
            continue

        email_obj.delete()
        successes.append(email_id)

    if failures:
        return Response({
            "message": "Some deletions failed",
            "successes": successes,
            "failures": failures
        }, status=status.HTTP_207_MULTI_STATUS)

    return Response({"successes": successes, "failures": []}, status=status.HTTP_200_OK)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def email_detail(request, email_id):
    """
    Returns the full email for the logged in user, or 404 if not found.
    """
    try:
        email = Email.objects.get(gmail_account__user=request.user, pk=email_id)
    except Email.DoesNotExist:
        return Response({"detail": "Email not found"}, status=status.HTTP_404_NOT_FOUND)

    serializer = EmailSerializer(email)
    return Response(serializer.data)
