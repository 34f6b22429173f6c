from django.db import models
from django.contrib.auth.models import User
from django.utils import timezone

from .states import UnsubscribeState, dump_state, load_state


class GmailAccount(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='gmail_accounts')
    email = models.EmailField()
    refresh_token = models.CharField(max_length=512, blank=True)
    access_token = models.CharField(max_length=2048, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)

    def __str__(self):
        return self.email

    def credentials_expired(self, now=None):
        now = now or timezone.now()
        return not self.access_token or self.expires_at is None or now >= self.expires_at


class EmailCategory(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='categories')
    name = models.CharField(max_length=100)
    description = models.TextField()

    def __str__(self):
        return f"{self.name} ({self.user.username})"


class Email(models.Model):
    gmail_account = models.ForeignKey(GmailAccount, on_delete=models.CASCADE, related_name='emails')
    category = models.ForeignKey(EmailCategory, on_delete=models.CASCADE, null=True, blank=True, related_name='emails')
    message_id = models.CharField(max_length=255, unique=True)
    thread_id = models.CharField(max_length=255, blank=True)
    sender = models.CharField(max_length=255, blank=True)
    recipient = models.CharField(max_length=255, blank=True)
    subject = models.CharField(max_length=255, blank=True)
    snippet = models.TextField(blank=True)
    body = models.TextField(blank=True)
    html_body = models.TextField(blank=True)
    summary = models.TextField(blank=True)
    received_at = models.DateTimeField(default=timezone.now)
    imported_at = models.DateTimeField(auto_now_add=True)
    confidence = models.FloatField(default=0.0)
    is_archived = models.BooleanField(default=False)
    unsubscribe_links = models.JSONField(default=list, blank=True)
    status = models.JSONField(default=dict, blank=True)

    def __str__(self):
        return self.subject or self.snippet or "E-mail"

    @property
    def unsubscribe_state(self) -> UnsubscribeState:
        return load_state((self.status or {}).get("unsubscribe"))

    @unsubscribe_state.setter
    def unsubscribe_state(self, state: UnsubscribeState):
        self.status = {**(self.status or {}), "unsubscribe": dump_state(state)}


class UnsubscribeJob(models.Model):
    email = models.ForeignKey(Email, on_delete=models.CASCADE, related_name='unsubscribe_jobs')
    job_status = models.CharField(max_length=32)
    last_attempted_at = models.DateTimeField(default=timezone.now)
    result = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['created_at', 'id']

    def __str__(self):
        return f"{self.email_id}: {self.job_status}"
