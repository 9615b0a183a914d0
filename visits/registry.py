import logging
from typing import Optional

from django.conf import settings

from .exceptions import ConflictError, ValidationError
from .models import Visitor
from .repository import VisitRepository
from .sms import clean_phone_number

logger = logging.getLogger(__name__)


def normalize_identity_document(document: Optional[str]) -> str:
    """Strip the presented document and enforce the configured minimum length."""
    value = (document or "").strip()
    min_length = getattr(settings, "VISITS_IDENTITY_DOCUMENT_MIN_LENGTH", 5)
    if len(value) < min_length:
        raise ValidationError({"identity_document": f"A valid ID number (min {min_length} characters) is required."})
    return value


class VisitorRegistry:
    """Identifies visitors by phone within a category and owns document binding."""

    def __init__(self, repository: VisitRepository):
        self.repository = repository

    def find_or_create(
        self,
        phone: str,
        name: str,
        *,
        email: Optional[str] = None,
        receive_emails: bool = False,
        receive_messages: bool = False,
    ) -> Visitor:
        """
        Return the visitor registered with ``phone`` in this category, creating
        an active one when none exists. An existing profile is returned as is;
        the name and contact details of the request are not applied to it.
        """
        normalized = clean_phone_number(phone)
        if not normalized:
            raise ValidationError({"phone": "A phone number is required."})
        existing = self.repository.find_visitor_by_phone(normalized)
        if existing:
            return existing
        name = (name or "").strip()
        if not name:
            raise ValidationError({"name": "A name is required for a new visitor."})
        try:
            visitor = self.repository.create_visitor(
                name=name,
                phone=normalized,
                email=email or None,
                receive_emails=receive_emails,
                receive_messages=receive_messages,
                status=Visitor.STATUS_ACTIVE,
            )
        except ConflictError:
            # Lost a race with a concurrent registration for the same phone.
            existing = self.repository.find_visitor_by_phone(normalized)
            if existing is None:
                raise
            return existing
        logger.info("Created %s visitor %s for phone %s", visitor.category, visitor.pk, normalized)
        return visitor

    def bind_identity_document(self, visitor_or_id, document: str) -> Visitor:
        visitor = self._resolve(visitor_or_id)
        document = normalize_identity_document(document)
        if visitor.identity_document:
            if visitor.identity_document != document:
                raise ConflictError("ID number does not match the registered visitor record.")
            return visitor
        owner = self.repository.find_visitor_by_document(document)
        if owner is not None and owner.pk != visitor.pk:
            raise ConflictError("This ID number is already registered with another visitor.")
        self.repository.update_visitor(visitor, identity_document=document)
        logger.info("Bound identity document to visitor %s", visitor.pk)
        return visitor

    def set_status(self, visitor_or_id, new_status: str, suspension_reason: Optional[str] = None) -> str:
        """Change the status without any follow-up; returns the previous status."""
        if new_status not in dict(Visitor.STATUS_CHOICES):
            raise ValidationError({"status": f"Unknown visitor status {new_status!r}."})
        visitor = self._resolve(visitor_or_id)
        old_status = visitor.status
        reason = suspension_reason if new_status == Visitor.STATUS_SUSPENDED else None
        if old_status != new_status or visitor.suspension_reason != reason:
            self.repository.update_visitor_status(visitor, new_status, reason)
        return old_status

    def _resolve(self, visitor_or_id) -> Visitor:
        if isinstance(visitor_or_id, Visitor):
            return visitor_or_id
        return self.repository.get_visitor(visitor_or_id)
