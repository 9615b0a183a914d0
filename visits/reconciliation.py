"""
Recomputes visit approvals and visitor statuses after a state change.

A visitor's live visits are walked in date order with running month and year
counters. A visit counts toward the caps when it is upcoming and approved, or
when it is past and was attended; a past visit nobody signed in to stops
counting. Visits linked to a host are then settled per host and date: only the
earliest-created ``host_daily_limit`` visits may be approved, and only when
their own visitor-level quota allows it.
"""
import logging
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .clock import OperationalClock
from .models import Visit, Visitor
from .notifications import SafeNotificationDispatcher
from .policies import QuotaPolicy
from .repository import VisitRepository

logger = logging.getLogger(__name__)

RESET_PERIODS = ("monthly", "yearly")


@dataclass
class QuotaEvaluation:
    """Outcome of one quota walk over a visitor's live visits."""

    statuses: List[str]
    monthly_counts: Counter = field(default_factory=Counter)
    yearly_counts: Counter = field(default_factory=Counter)
    by_visit_id: Dict[int, str] = field(default_factory=dict)

    def month_count(self, on: date) -> int:
        return self.monthly_counts[(on.year, on.month)]

    def year_count(self, on: date) -> int:
        return self.yearly_counts[on.year]


def evaluate_quota(visits: Sequence[Visit], policy: QuotaPolicy, today: date) -> QuotaEvaluation:
    """
    Walk ``visits`` (ordered by visit date) and return the quota status of each,
    plus the month/year counters that the walk accumulated.
    """
    evaluation = QuotaEvaluation(statuses=[])
    for visit in visits:
        if not policy.counts_toward_quota(visit):
            status = Visit.STATUS_APPROVED
        else:
            month_key = (visit.visit_date.year, visit.visit_date.month)
            year_key = visit.visit_date.year
            exceeded = policy.would_exceed(evaluation.monthly_counts[month_key], evaluation.yearly_counts[year_key])
            status = Visit.STATUS_UNAPPROVED if exceeded else Visit.STATUS_APPROVED
            if visit.visit_date < today:
                counts = visit.sign_in_time is not None
            else:
                counts = status == Visit.STATUS_APPROVED
            if counts:
                evaluation.monthly_counts[month_key] += 1
                evaluation.yearly_counts[year_key] += 1
        evaluation.statuses.append(status)
        if visit.pk is not None:
            evaluation.by_visit_id[visit.pk] = status
    return evaluation


class ReconciliationEngine:
    def __init__(
        self,
        repository: VisitRepository,
        policy: QuotaPolicy,
        dispatcher: SafeNotificationDispatcher,
        clock: Optional[OperationalClock] = None,
    ):
        self.repository = repository
        self.policy = policy
        self.dispatcher = dispatcher
        self.clock = clock or OperationalClock()

    @contextmanager
    def atomic(self):
        """One write unit: notifications raised inside go out only if it commits."""
        with self.dispatcher.deferred(), self.repository.atomic():
            yield

    # -- quota checks -------------------------------------------------------

    def evaluate_visitor(self, visitor: Visitor) -> QuotaEvaluation:
        visits = self.repository.find_visits_by_visitor(visitor)
        return evaluate_quota(visits, self.policy, self.clock.today())

    def provisional_status(self, visitor: Visitor, candidate: Visit) -> str:
        """
        Status a not-yet-saved visit would receive if it were registered now:
        its visitor-level quota ANDed with a free slot in the host's daily batch.
        """
        existing = [v for v in self.repository.find_visits_by_visitor(visitor) if v.pk != candidate.pk]
        ordered = sorted(existing + [candidate], key=lambda v: v.visit_date)
        evaluation = evaluate_quota(ordered, self.policy, self.clock.today())
        status = evaluation.statuses[ordered.index(candidate)]
        if status == Visit.STATUS_APPROVED and self.policy.enforces_host_limit and candidate.host_id:
            batch = [
                v
                for v in self.repository.find_visits_by_host_and_date(candidate.host_id, candidate.visit_date)
                if v.pk != candidate.pk
            ]
            if len(batch) >= self.policy.host_daily_limit:
                status = Visit.STATUS_UNAPPROVED
        return status

    # -- recompute ----------------------------------------------------------

    def reconcile_visitor(self, visitor_or_id, fresh_visit_ids: Iterable[int] = ()) -> Visitor:
        """
        Recompute every live visit of the visitor, settle the host batches they
        belong to and apply auto-suspension. ``fresh_visit_ids`` names visits
        created by the triggering call, which had no status before it.
        """
        with self.atomic():
            return self._reconcile_visitor(visitor_or_id, fresh_visit_ids)

    def _reconcile_visitor(self, visitor_or_id, fresh_visit_ids: Iterable[int]) -> Visitor:
        if isinstance(visitor_or_id, Visitor):
            visitor = self.repository.get_visitor(visitor_or_id.pk)
        else:
            visitor = self.repository.get_visitor(visitor_or_id)
        visits = self.repository.find_visits_by_visitor(visitor)
        today = self.clock.today()
        evaluation = evaluate_quota(visits, self.policy, today)

        host_batches: Set[Tuple[str, date]] = set()
        for visit, status in zip(visits, evaluation.statuses):
            if self.policy.enforces_host_limit and visit.host_id:
                host_batches.add((visit.host_id, visit.visit_date))
                continue
            self._apply_status(visitor, visit, status)

        for host_id, visit_date in sorted(host_batches, key=lambda item: (item[1], item[0])):
            self.recompute_host_batch(
                host_id,
                visit_date,
                fresh_visit_ids=fresh_visit_ids,
                evaluations={visitor.pk: evaluation},
            )

        self._apply_auto_suspension(visitor, evaluation, today)
        return visitor

    def recompute_host_batch(
        self,
        host_id: str,
        visit_date: date,
        fresh_visit_ids: Iterable[int] = (),
        evaluations: Optional[Dict[int, QuotaEvaluation]] = None,
    ) -> List[Visit]:
        """Settle one host's visits for one date in FIFO order; returns the changed visits."""
        if not self.policy.enforces_host_limit or not host_id:
            return []
        limit = self.policy.host_daily_limit
        fresh = set(fresh_visit_ids)
        evaluations = dict(evaluations or {})
        batch = self.repository.find_visits_by_host_and_date(host_id, visit_date)
        unapproved_before = sum(
            1 for v in batch if v.pk not in fresh and v.status == Visit.STATUS_UNAPPROVED
        )

        changed = []
        for position, visit in enumerate(batch):
            evaluation = evaluations.get(visit.visitor_id)
            if evaluation is None:
                evaluation = self.evaluate_visitor(visit.visitor)
                evaluations[visit.visitor_id] = evaluation
            quota_status = evaluation.by_visit_id.get(visit.pk, Visit.STATUS_UNAPPROVED)
            if position < limit and quota_status == Visit.STATUS_APPROVED:
                status = Visit.STATUS_APPROVED
            else:
                status = Visit.STATUS_UNAPPROVED
            if self._apply_status(visit.visitor, visit, status):
                changed.append(visit)

        unapproved_after = sum(1 for v in batch if v.status == Visit.STATUS_UNAPPROVED)
        overflow = max(0, len(batch) - limit)
        if overflow and unapproved_after > unapproved_before:
            logger.info(
                "Host %s exceeded the daily limit on %s (%s over capacity)",
                host_id,
                visit_date.isoformat(),
                overflow,
            )
            self.dispatcher.on_host_limit_exceeded(host_id, visit_date, overflow)
        return changed

    def _apply_status(self, visitor: Visitor, visit: Visit, status: str) -> bool:
        if visit.status == status:
            return False
        old_status = visit.status
        self.repository.update_visit(visit, status=status)
        logger.info("Visit %s status changed from %s to %s", visit.pk, old_status, status)
        self.dispatcher.on_visit_status_changed(visitor, visit, old_status, status)
        return True

    def _apply_auto_suspension(self, visitor: Visitor, evaluation: QuotaEvaluation, today: date) -> None:
        if visitor.status != Visitor.STATUS_ACTIVE:
            return
        if not self.policy.is_exhausted(evaluation.month_count(today), evaluation.year_count(today)):
            return
        old_status = visitor.status
        self.repository.update_visitor_status(visitor, Visitor.STATUS_SUSPENDED, Visitor.SUSPENSION_QUOTA)
        logger.info(
            "Visitor %s automatically suspended (monthly=%s, yearly=%s)",
            visitor.pk,
            evaluation.month_count(today),
            evaluation.year_count(today),
        )
        self.dispatcher.on_visitor_status_changed(visitor, old_status, Visitor.STATUS_SUSPENDED)

    # -- scheduled passes ---------------------------------------------------

    def sweep(self) -> int:
        """Reconcile every active visitor of the category; returns how many were processed."""
        visitors = self.repository.find_visitors(status=Visitor.STATUS_ACTIVE)
        for visitor in visitors:
            self.reconcile_visitor(visitor)
        logger.info("Reconciled %s active %s visitors", len(visitors), self.repository.category)
        return len(visitors)

    def reset_limits(self, period: str) -> List[Visitor]:
        """
        Reactivate visitors that were suspended because of their quota. Manually
        suspended and banned visitors are left untouched, and so is anyone still
        at a cap (e.g. the yearly cap at a monthly reset). Each reactivated
        visitor is reconciled again.
        """
        if period not in RESET_PERIODS:
            raise ValueError(f"Unknown reset period: {period!r}")
        today = self.clock.today()
        reactivated = []
        for visitor in self.repository.find_visitors(
            status=Visitor.STATUS_SUSPENDED,
            suspension_reason=Visitor.SUSPENSION_QUOTA,
        ):
            evaluation = self.evaluate_visitor(visitor)
            if self.policy.is_exhausted(evaluation.month_count(today), evaluation.year_count(today)):
                logger.info("Visitor %s is still at a visit limit; suspension kept", visitor.pk)
                continue
            with self.atomic():
                self.repository.update_visitor_status(visitor, Visitor.STATUS_ACTIVE, None)
                self.dispatcher.on_visitor_status_changed(visitor, Visitor.STATUS_SUSPENDED, Visitor.STATUS_ACTIVE)
                self.reconcile_visitor(visitor)
            reactivated.append(visitor)
        logger.info(
            "%s reset reactivated %s %s visitors",
            period.capitalize(),
            len(reactivated),
            self.repository.category,
        )
        return reactivated
