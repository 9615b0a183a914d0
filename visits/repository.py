"""
Category-scoped data access for visitors and visits.

Every query runs against ``db_alias`` and is restricted to one visitor category,
so an engine built for suppliers never sees day-guest rows. Write failures are
translated into the visit error taxonomy: constraint violations become
``ConflictError``, model validation failures ``ValidationError`` and any other
database error ``PersistenceError``.
"""
import logging
from contextlib import contextmanager
from datetime import date
from typing import List, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError, IntegrityError, transaction

from .exceptions import ConflictError, NotFoundError, PersistenceError, ValidationError
from .models import Visit, Visitor

logger = logging.getLogger(__name__)


class VisitRepository:
    def __init__(self, category: str, db_alias: str = "default"):
        if category not in dict(Visitor.CATEGORY_CHOICES):
            raise ValueError(f"Unknown visitor category: {category!r}")
        self.category = category
        self.db_alias = db_alias

    # -- helpers ------------------------------------------------------------

    def atomic(self):
        return transaction.atomic(using=self.db_alias)

    @contextmanager
    def _guard_write(self, action: str):
        try:
            with transaction.atomic(using=self.db_alias):
                yield
        except IntegrityError as exc:
            logger.info("Constraint violation while trying to %s: %s", action, exc)
            raise ConflictError(f"Could not {action}: a conflicting record already exists.") from exc
        except DjangoValidationError as exc:
            raise ValidationError(exc.message_dict if hasattr(exc, "error_dict") else exc.messages) from exc
        except DatabaseError as exc:
            logger.error("Database error while trying to %s: %s", action, exc)
            raise PersistenceError(f"Could not {action}.") from exc

    def _visitors(self):
        return Visitor.objects.using(self.db_alias).filter(category=self.category)

    def _visits(self):
        return Visit.objects.using(self.db_alias).filter(visitor__category=self.category).select_related("visitor")

    # -- visitors -----------------------------------------------------------

    def get_visitor(self, visitor_id) -> Visitor:
        visitor = self._visitors().filter(pk=visitor_id).first()
        if visitor is None:
            raise NotFoundError(f"Visitor {visitor_id} not found.")
        return visitor

    def find_visitor_by_phone(self, phone: str) -> Optional[Visitor]:
        return self._visitors().filter(phone=phone).first()

    def find_visitor_by_document(self, document: str) -> Optional[Visitor]:
        return self._visitors().filter(identity_document=document).first()

    def find_visitors(self, *, status: Optional[str] = None, suspension_reason: Optional[str] = None) -> List[Visitor]:
        qs = self._visitors()
        if status is not None:
            qs = qs.filter(status=status)
        if suspension_reason is not None:
            qs = qs.filter(suspension_reason=suspension_reason)
        return list(qs.order_by("id"))

    def create_visitor(self, **fields) -> Visitor:
        visitor = Visitor(category=self.category, **fields)
        with self._guard_write("create visitor"):
            visitor.save(using=self.db_alias)
        return visitor

    def update_visitor(self, visitor: Visitor, **fields) -> Visitor:
        for name, value in fields.items():
            setattr(visitor, name, value)
        with self._guard_write(f"update visitor {visitor.pk}"):
            visitor.save(using=self.db_alias, update_fields=[*fields, "updated_at"])
        return visitor

    def update_visitor_status(self, visitor: Visitor, status: str, suspension_reason: Optional[str] = None) -> Visitor:
        return self.update_visitor(visitor, status=status, suspension_reason=suspension_reason)

    # -- visits -------------------------------------------------------------

    def get_visit(self, visit_id) -> Visit:
        visit = self._visits().filter(pk=visit_id).first()
        if visit is None:
            raise NotFoundError(f"Visit {visit_id} not found.")
        return visit

    def find_visits_for_slot(self, visitor: Visitor, visit_date: date) -> List[Visit]:
        return list(self._visits().filter(visitor=visitor, visit_date=visit_date).order_by("created_at", "id"))

    def find_visits_by_visitor(self, visitor: Visitor, include_cancelled: bool = False) -> List[Visit]:
        qs = self._visits().filter(visitor=visitor)
        if not include_cancelled:
            qs = qs.exclude(status=Visit.STATUS_CANCELLED)
        return list(qs.order_by("visit_date", "created_at", "id"))

    def find_visits_by_host_and_date(self, host_id: str, visit_date: date) -> List[Visit]:
        """Live visits for a host/date in FIFO creation order."""
        return list(
            self._visits()
            .filter(host_id=host_id, visit_date=visit_date)
            .exclude(status=Visit.STATUS_CANCELLED)
            .order_by("created_at", "id")
        )

    def find_open_visits_on(self, visit_date: date) -> List[Visit]:
        return list(
            self._visits()
            .filter(visit_date=visit_date, sign_in_time__isnull=False, sign_out_time__isnull=True)
            .order_by("id")
        )

    def insert_visit(self, visitor: Visitor, **fields) -> Visit:
        visit = Visit(visitor=visitor, **fields)
        with self._guard_write(f"register visit for visitor {visitor.pk}"):
            visit.save(using=self.db_alias)
        return visit

    def update_visit(self, visit: Visit, **fields) -> Visit:
        for name, value in fields.items():
            setattr(visit, name, value)
        with self._guard_write(f"update visit {visit.pk}"):
            visit.save(using=self.db_alias, update_fields=[*fields, "updated_at"])
        return visit
