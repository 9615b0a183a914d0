from django.contrib import admin

from .models import Visit, Visitor


@admin.register(Visitor)
class VisitorAdmin(admin.ModelAdmin):
    list_display = ("name", "category", "phone", "status", "suspension_reason", "created_at")
    list_filter = ("category", "status", "suspension_reason")
    search_fields = ("name", "phone", "email", "identity_document")


@admin.register(Visit)
class VisitAdmin(admin.ModelAdmin):
    list_display = (
        "visitor",
        "visit_date",
        "host_id",
        "status",
        "courtesy",
        "sign_in_time",
        "sign_out_time",
    )
    list_filter = ("status", "courtesy", "visitor__category", "visit_date")
    search_fields = ("visitor__name", "visitor__phone", "host_id", "purpose")
