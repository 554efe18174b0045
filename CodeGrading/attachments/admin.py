# attachments/admin.py
from django.contrib import admin

from .models import Attachment, AttachmentReference


class AttachmentReferenceInline(admin.TabularInline):
    model = AttachmentReference
    extra = 0
    fields = ("name", "owner_kind", "owner_id", "expires_at")
    readonly_fields = fields


@admin.register(Attachment)
class AttachmentAdmin(admin.ModelAdmin):
    list_display = ("name", "original_filename", "size", "created_at")
    search_fields = ("name", "original_filename")
    readonly_fields = ("name", "file", "size", "created_at")
    inlines = [AttachmentReferenceInline]


@admin.register(AttachmentReference)
class AttachmentReferenceAdmin(admin.ModelAdmin):
    list_display = ("name", "attachment", "owner_kind", "owner_id", "expires_at", "updated_at")
    list_filter = ("owner_kind",)
    search_fields = ("name", "attachment__name")
    raw_id_fields = ("attachment", "creator", "updater")
