"""
Visit lifecycle operations: registration, cancellation, sign-in and sign-out.

Every operation that changes what counts toward a quota hands the visitor back
to the reconciliation engine before returning, so callers always observe the
settled statuses.
"""
import logging
from datetime import date
from typing import Optional

from django.utils import timezone

from .clock import OperationalClock, end_of_day
from .exceptions import ConflictError, RestrictedError, ValidationError
from .models import Visit, Visitor
from .notifications import SafeNotificationDispatcher
from .reconciliation import ReconciliationEngine
from .registry import VisitorRegistry, normalize_identity_document
from .repository import VisitRepository

logger = logging.getLogger(__name__)


class VisitLedger:
    def __init__(
        self,
        repository: VisitRepository,
        registry: VisitorRegistry,
        engine: ReconciliationEngine,
        dispatcher: SafeNotificationDispatcher,
        clock: Optional[OperationalClock] = None,
    ):
        self.repository = repository
        self.registry = registry
        self.engine = engine
        self.dispatcher = dispatcher
        self.clock = clock or OperationalClock()

    def register_visit(
        self,
        visitor_or_id,
        visit_date: date,
        *,
        host_id: Optional[str] = None,
        courtesy: bool = False,
        purpose: Optional[str] = None,
    ) -> Visit:
        """
        Register a visit for ``visit_date``.

        A visit over the visitor's limits is still recorded, just unapproved.
        A cancelled visit for the same date is reopened instead of creating a
        second row; reopening puts it at the back of the host's queue.
        """
        visitor = self._resolve_visitor(visitor_or_id)
        if visit_date < self.clock.today():
            raise ValidationError({"visit_date": "Visit date cannot be in the past."})
        host_id = (host_id or "").strip() or None

        with self.engine.atomic():
            slot = self.repository.find_visits_for_slot(visitor, visit_date)
            if any(v.is_live for v in slot):
                raise ConflictError(
                    f"Visitor {visitor.pk} already has a visit registered for {visit_date.isoformat()}."
                )
            fields = {
                "host_id": host_id,
                "courtesy": courtesy,
                "purpose": purpose,
                "sign_in_time": None,
                "sign_out_time": None,
            }
            if slot:
                visit = slot[0]
                for name, value in fields.items():
                    setattr(visit, name, value)
                fields["created_at"] = timezone.now()
                fields["status"] = self.engine.provisional_status(visitor, visit)
                visit = self.repository.update_visit(visit, **fields)
                logger.info("Reopened cancelled visit %s for visitor %s", visit.pk, visitor.pk)
            else:
                candidate = Visit(visitor=visitor, visit_date=visit_date, **fields)
                fields["status"] = self.engine.provisional_status(visitor, candidate)
                visit = self.repository.insert_visit(visitor, visit_date=visit_date, **fields)
                logger.info("Registered visit %s for visitor %s on %s", visit.pk, visitor.pk, visit_date.isoformat())

            self.engine.reconcile_visitor(visitor, fresh_visit_ids=[visit.pk])
            visit = self.repository.get_visit(visit.pk)

        self.dispatcher.on_visit_registered(visit.visitor, visit)
        return visit

    def cancel_visit(self, visit_id) -> Visit:
        visit = self.repository.get_visit(visit_id)
        if visit.status == Visit.STATUS_CANCELLED:
            return visit
        with self.engine.atomic():
            self.repository.update_visit(visit, status=Visit.STATUS_CANCELLED)
            logger.info("Cancelled visit %s", visit.pk)
            self.dispatcher.on_visit_cancelled(visit.visitor, visit)
            self.engine.reconcile_visitor(visit.visitor)
            # The visit left its host batch, which may free a slot for the next in line.
            if visit.host_id:
                self.engine.recompute_host_batch(visit.host_id, visit.visit_date)
        return visit

    def sign_in(self, visit_id, presented_document: str) -> Visit:
        visit = self.repository.get_visit(visit_id)
        if visit.status == Visit.STATUS_CANCELLED:
            raise ConflictError("A cancelled visit cannot be signed in.")
        if visit.sign_in_time is not None:
            raise ConflictError("Visitor is already signed in for this visit.")
        document = normalize_identity_document(presented_document)
        today = self.clock.today()
        if visit.visit_date != today:
            raise ValidationError(
                {"visit_date": f"Sign-in is only allowed on the visit date ({visit.visit_date.isoformat()})."}
            )
        visitor = visit.visitor
        if visitor.is_restricted:
            raise RestrictedError(f"Visitor is {visitor.status} and cannot sign in.")

        with self.engine.atomic():
            self.registry.bind_identity_document(visitor, document)
            self.repository.update_visit(visit, sign_in_time=self.clock.now())
        logger.info("Visitor %s signed in for visit %s", visitor.pk, visit.pk)
        self.dispatcher.on_sign_in(visitor, visit)
        return visit

    def sign_out(self, visit_id) -> Visit:
        visit = self.repository.get_visit(visit_id)
        if visit.sign_in_time is None:
            raise ConflictError("Visitor has not signed in for this visit.")
        if visit.sign_out_time is not None:
            raise ConflictError("Visitor has already signed out.")
        self.repository.update_visit(visit, sign_out_time=self.clock.now())
        logger.info("Visitor %s signed out of visit %s", visit.visitor_id, visit.pk)
        self.dispatcher.on_sign_out(visit.visitor, visit)
        return visit

    def auto_sign_out_stale_visits(self, prior_date: date) -> int:
        """Close every visit of ``prior_date`` still signed in; returns how many were closed."""
        closing_time = end_of_day(prior_date)
        count = 0
        with self.engine.atomic():
            for visit in self.repository.find_open_visits_on(prior_date):
                self.repository.update_visit(visit, sign_out_time=max(closing_time, visit.sign_in_time))
                count += 1
        if count:
            logger.info(
                "Auto signed out %s %s visits for %s",
                count,
                self.repository.category,
                prior_date.isoformat(),
            )
        return count

    def _resolve_visitor(self, visitor_or_id) -> Visitor:
        # Always reload so a visitor of another category is rejected as unknown.
        visitor_id = visitor_or_id.pk if isinstance(visitor_or_id, Visitor) else visitor_or_id
        return self.repository.get_visitor(visitor_id)
