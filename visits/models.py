from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone


class Visitor(models.Model):
    """
    A person allowed short-term access under one visitor category.
    The phone number is the dedup key inside a category; the identity document
    is bound once at first sign-in and never changes afterwards.
    """

    CATEGORY_DAY_GUEST = "day_guest"
    CATEGORY_ACCOMMODATION_GUEST = "accommodation_guest"
    CATEGORY_SUPPLIER = "supplier"
    CATEGORY_RECIPROCATING_MEMBER = "reciprocating_member"

    CATEGORY_CHOICES = [
        (CATEGORY_DAY_GUEST, "Day Guest"),
        (CATEGORY_ACCOMMODATION_GUEST, "Accommodation Guest"),
        (CATEGORY_SUPPLIER, "Supplier"),
        (CATEGORY_RECIPROCATING_MEMBER, "Reciprocating Member"),
    ]

    STATUS_ACTIVE = "active"
    STATUS_SUSPENDED = "suspended"
    STATUS_BANNED = "banned"

    STATUS_CHOICES = [
        (STATUS_ACTIVE, "Active"),
        (STATUS_SUSPENDED, "Suspended"),
        (STATUS_BANNED, "Banned"),
    ]

    SUSPENSION_QUOTA = "quota"
    SUSPENSION_MANUAL = "manual"

    SUSPENSION_REASON_CHOICES = [
        (SUSPENSION_QUOTA, "Visit limit reached"),
        (SUSPENSION_MANUAL, "Suspended by staff"),
    ]

    category = models.CharField(max_length=30, choices=CATEGORY_CHOICES, db_index=True)
    name = models.CharField(max_length=255)
    phone = models.CharField(max_length=50, help_text="Normalized phone number, unique within the category")
    email = models.EmailField(blank=True, null=True)
    identity_document = models.CharField(
        max_length=100,
        blank=True,
        null=True,
        help_text="ID/passport number bound at first sign-in",
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_ACTIVE)
    suspension_reason = models.CharField(
        max_length=20,
        choices=SUSPENSION_REASON_CHOICES,
        blank=True,
        null=True,
        help_text="Why the visitor is suspended; only quota suspensions are lifted by the reset jobs",
    )
    receive_emails = models.BooleanField(default=False)
    receive_messages = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "visits_visitors"
        verbose_name = "Visitor"
        verbose_name_plural = "Visitors"
        constraints = [
            models.UniqueConstraint(
                fields=["category", "phone"],
                name="unique_visitor_phone_per_category",
            ),
            models.UniqueConstraint(
                fields=["category", "identity_document"],
                condition=Q(identity_document__isnull=False),
                name="unique_visitor_document_per_category",
            ),
        ]
        indexes = [
            models.Index(fields=["category", "status"], name="visits_visitor_cat_status_idx"),
        ]
        ordering = ["name"]

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._loaded_identity_document = instance.__dict__.get("identity_document")
        return instance

    def clean(self):
        errors = {}
        bound = getattr(self, "_loaded_identity_document", None)
        if bound and self.identity_document != bound:
            errors["identity_document"] = "Identity document cannot be changed once bound."
        if self.suspension_reason and self.status != self.STATUS_SUSPENDED:
            errors["suspension_reason"] = "Only suspended visitors carry a suspension reason."
        if errors:
            raise ValidationError(errors)

    def save(self, *args, **kwargs):
        using = kwargs.get("using") or getattr(self._state, "db", None)
        if using:
            self._state.db = using
        # Uniqueness is owned by the database constraints.
        self.full_clean(validate_unique=False, validate_constraints=False)
        super().save(*args, **kwargs)
        self._loaded_identity_document = self.identity_document

    @property
    def is_restricted(self):
        return self.status in (self.STATUS_SUSPENDED, self.STATUS_BANNED)

    def __str__(self):
        return f"{self.name} ({self.get_category_display()})"


class Visit(models.Model):
    """A single dated access request for a visitor."""

    STATUS_UNAPPROVED = "unapproved"
    STATUS_APPROVED = "approved"
    STATUS_CANCELLED = "cancelled"

    STATUS_CHOICES = [
        (STATUS_UNAPPROVED, "Unapproved"),
        (STATUS_APPROVED, "Approved"),
        (STATUS_CANCELLED, "Cancelled"),
    ]

    visitor = models.ForeignKey(Visitor, on_delete=models.CASCADE, related_name="visits")
    host_id = models.CharField(
        max_length=64,
        blank=True,
        null=True,
        db_index=True,
        help_text="Reference of the sponsoring member in the external identity system (day guests only)",
    )
    visit_date = models.DateField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_UNAPPROVED)
    purpose = models.CharField(max_length=50, blank=True, null=True)
    courtesy = models.BooleanField(default=False, help_text="Courtesy visits have no host but still count toward quotas")
    sign_in_time = models.DateTimeField(blank=True, null=True)
    sign_out_time = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "visits_visits"
        verbose_name = "Visit"
        verbose_name_plural = "Visits"
        constraints = [
            models.UniqueConstraint(
                fields=["visitor", "visit_date"],
                condition=~Q(status="cancelled"),
                name="unique_live_visit_per_visitor_date",
            ),
        ]
        indexes = [
            models.Index(fields=["host_id", "visit_date"], name="visits_visit_host_date_idx"),
            models.Index(fields=["visit_date", "status"], name="visits_visit_date_status_idx"),
        ]
        ordering = ["visit_date", "created_at", "id"]

    def clean(self):
        errors = {}
        if self.sign_out_time and not self.sign_in_time:
            errors["sign_out_time"] = "A visit cannot be signed out before it is signed in."
        if self.sign_in_time and self.sign_out_time and self.sign_out_time < self.sign_in_time:
            errors["sign_out_time"] = "Sign-out time must be after sign-in time."
        if self.courtesy and self.host_id:
            errors["host_id"] = "Courtesy visits are not linked to a host."
        if self.visitor_id and self.visitor.category != Visitor.CATEGORY_DAY_GUEST:
            if self.host_id:
                errors["host_id"] = "Only day guest visits carry a host."
            if self.courtesy:
                errors["courtesy"] = "Only day guest visits can be courtesy visits."
        if errors:
            raise ValidationError(errors)

    def save(self, *args, **kwargs):
        using = kwargs.get("using") or getattr(self._state, "db", None)
        if using:
            self._state.db = using
        self.full_clean(validate_unique=False, validate_constraints=False)
        super().save(*args, **kwargs)

    @property
    def is_live(self):
        return self.status != self.STATUS_CANCELLED

    def __str__(self):
        return f"{self.visitor.name} on {self.visit_date.isoformat()} ({self.status})"
