from django.urls import path
from .views import (
    delete_emails,
    email_detail,
    ingest_account,
    unsubscribe_email,
)

urlpatterns = [
    path("accounts/<int:account_id>/ingest/", ingest_account, name="ingest-account"),
    path("emails/delete/", delete_emails, name="delete-emails"),
    path("emails/<int:email_id>/", email_detail, name="email-detail"),
    path("emails/<int:email_id>/unsubscribe/", unsubscribe_email, name="unsubscribe-email"),
]
