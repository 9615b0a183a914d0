"""
Scheduled jobs run by the management commands, one function per job.

Each job walks every visitor category. A failure in one category is logged and
reported in the summary while the remaining categories still run.
"""
import logging
from datetime import date, timedelta
from typing import Dict, Optional

from .clock import OperationalClock
from .models import Visitor
from .reconciliation import RESET_PERIODS
from .services import VisitService

logger = logging.getLogger(__name__)


def _clock_for(today: Optional[date]) -> OperationalClock:
    if today is None:
        return OperationalClock()
    return OperationalClock(today=lambda: today)


def run_daily_rollover(today: Optional[date] = None, *, db_alias: str = "default", dispatcher=None) -> Dict[str, dict]:
    """
    Close yesterday's visits that were never signed out, then reconcile every
    active visitor so past unattended visits stop counting.
    """
    clock = _clock_for(today)
    prior_date = clock.today() - timedelta(days=1)
    summary = {}
    for category, _label in Visitor.CATEGORY_CHOICES:
        try:
            service = VisitService(category, db_alias=db_alias, dispatcher=dispatcher, clock=clock)
            signed_out = service.auto_sign_out_stale_visits(prior_date)
            reconciled = service.sweep()
            summary[category] = {"signed_out": signed_out, "reconciled": reconciled}
        except Exception as exc:
            logger.exception("Daily rollover failed for %s visitors", category)
            summary[category] = {"error": str(exc)}
    return summary


def reset_limits(period: str, *, today: Optional[date] = None, db_alias: str = "default", dispatcher=None) -> Dict[str, dict]:
    """Lift quota suspensions at the start of a month or year."""
    if period not in RESET_PERIODS:
        raise ValueError(f"Unknown reset period: {period!r}")
    clock = _clock_for(today)
    summary = {}
    for category, _label in Visitor.CATEGORY_CHOICES:
        try:
            service = VisitService(category, db_alias=db_alias, dispatcher=dispatcher, clock=clock)
            reactivated = service.reset_limits(period)
            summary[category] = {"reactivated": len(reactivated)}
        except Exception as exc:
            logger.exception("%s limit reset failed for %s visitors", period.capitalize(), category)
            summary[category] = {"error": str(exc)}
    return summary
