"""
Entry point for visit management within one visitor category.

``VisitService`` wires the repository, registry, ledger and reconciliation
engine together with the category's quota policy, the notification dispatcher
and the operational clock. Every collaborator can be injected, which is how the
tests pin the date and capture notifications.
"""
import logging
from datetime import date
from typing import List, Optional

from .clock import OperationalClock
from .exceptions import ValidationError
from .ledger import VisitLedger
from .models import Visit, Visitor
from .notifications import NotificationDispatcher, get_notification_dispatcher
from .policies import QuotaPolicy, get_quota_policy
from .reconciliation import ReconciliationEngine
from .registry import VisitorRegistry
from .repository import VisitRepository

logger = logging.getLogger(__name__)


class VisitService:
    def __init__(
        self,
        category: str,
        *,
        db_alias: str = "default",
        dispatcher: Optional[NotificationDispatcher] = None,
        policy: Optional[QuotaPolicy] = None,
        clock: Optional[OperationalClock] = None,
    ):
        self.category = category
        self.repository = VisitRepository(category, db_alias=db_alias)
        self.policy = policy or get_quota_policy(category)
        self.dispatcher = get_notification_dispatcher(dispatcher)
        self.clock = clock or OperationalClock()
        self.registry = VisitorRegistry(self.repository)
        self.engine = ReconciliationEngine(self.repository, self.policy, self.dispatcher, self.clock)
        self.ledger = VisitLedger(self.repository, self.registry, self.engine, self.dispatcher, self.clock)

    # -- visitors -----------------------------------------------------------

    def get_visitor(self, visitor_id) -> Visitor:
        return self.repository.get_visitor(visitor_id)

    def find_or_create_visitor(
        self,
        phone: str,
        name: str,
        *,
        email: Optional[str] = None,
        receive_emails: bool = False,
        receive_messages: bool = False,
    ) -> Visitor:
        return self.registry.find_or_create(
            phone,
            name,
            email=email,
            receive_emails=receive_emails,
            receive_messages=receive_messages,
        )

    def bind_identity_document(self, visitor_id, document: str) -> Visitor:
        return self.registry.bind_identity_document(visitor_id, document)

    def update_visitor_status(self, visitor_id, new_status: str) -> Visitor:
        """
        Staff-initiated status change. A suspension set here is recorded as
        manual, so the periodic limit resets never lift it. The visitor is
        reconciled afterwards, which may suspend a reactivated visitor again.
        """
        if new_status not in dict(Visitor.STATUS_CHOICES):
            raise ValidationError({"status": f"Unknown visitor status {new_status!r}."})
        reason = Visitor.SUSPENSION_MANUAL if new_status == Visitor.STATUS_SUSPENDED else None
        with self.engine.atomic():
            visitor = self.repository.get_visitor(visitor_id)
            old_status = self.registry.set_status(visitor, new_status, reason)
            if old_status != new_status:
                logger.info("Visitor %s status changed from %s to %s", visitor.pk, old_status, new_status)
                self.dispatcher.on_visitor_status_changed(visitor, old_status, new_status)
            return self.engine.reconcile_visitor(visitor)

    # -- visits -------------------------------------------------------------

    def get_visit(self, visit_id) -> Visit:
        return self.repository.get_visit(visit_id)

    def register_visit(
        self,
        visitor_id,
        visit_date: date,
        *,
        host_id: Optional[str] = None,
        courtesy: bool = False,
        purpose: Optional[str] = None,
    ) -> Visit:
        return self.ledger.register_visit(
            visitor_id,
            visit_date,
            host_id=host_id,
            courtesy=courtesy,
            purpose=purpose,
        )

    def register_visitor_visit(
        self,
        phone: str,
        name: str,
        visit_date: date,
        host_id: Optional[str] = None,
        courtesy: bool = False,
        email: Optional[str] = None,
        receive_emails: bool = False,
        receive_messages: bool = False,
        purpose: Optional[str] = None,
    ) -> Visit:
        """Find or create the visitor by phone, then register the visit."""
        with self.engine.atomic():
            visitor = self.find_or_create_visitor(
                phone,
                name,
                email=email,
                receive_emails=receive_emails,
                receive_messages=receive_messages,
            )
            return self.register_visit(
                visitor,
                visit_date,
                host_id=host_id,
                courtesy=courtesy,
                purpose=purpose,
            )

    def cancel_visit(self, visit_id) -> Visit:
        return self.ledger.cancel_visit(visit_id)

    def sign_in(self, visit_id, presented_document: str) -> Visit:
        return self.ledger.sign_in(visit_id, presented_document)

    def sign_out(self, visit_id) -> Visit:
        return self.ledger.sign_out(visit_id)

    def auto_sign_out_stale_visits(self, prior_date: date) -> int:
        return self.ledger.auto_sign_out_stale_visits(prior_date)

    # -- reconciliation -----------------------------------------------------

    def reconcile_visitor(self, visitor_id) -> Visitor:
        return self.engine.reconcile_visitor(visitor_id)

    def sweep(self) -> int:
        return self.engine.sweep()

    def reset_limits(self, period: str) -> List[Visitor]:
        return self.engine.reset_limits(period)
