from django.contrib import admin

from .models import Email, EmailCategory, GmailAccount, UnsubscribeJob


@admin.register(GmailAccount)
class GmailAccountAdmin(admin.ModelAdmin):
    list_display = ("email", "user", "expires_at")


@admin.register(EmailCategory)
class EmailCategoryAdmin(admin.ModelAdmin):
    list_display = ("name", "user")


@admin.register(Email)
class EmailAdmin(admin.ModelAdmin):
    list_display = ("subject", "sender", "category", "confidence", "is_archived", "imported_at")
    search_fields = ("subject", "sender", "message_id")


admin.site.register(UnsubscribeJob)
