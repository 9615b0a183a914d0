"""
Notification hooks emitted by the visit engine.

The engine only ever talks to a ``SafeNotificationDispatcher``: every hook is
fire-and-forget, and a failing delivery is logged and dropped so it can never
undo or block the state change that triggered it. Hooks emitted while a write
is in progress are only delivered after it succeeds.
"""
import logging
from contextlib import contextmanager

from django.conf import settings
from django.core.mail import send_mail
from django.utils.module_loading import import_string

from .sms import SmsGateway

logger = logging.getLogger(__name__)

DEFAULT_DISPATCHER = "visits.notifications.MessagingNotificationDispatcher"


class NotificationDispatcher:
    """Base dispatcher; every hook is a no-op. Also used as the null dispatcher."""

    def on_visit_registered(self, visitor, visit):
        pass

    def on_visit_cancelled(self, visitor, visit):
        pass

    def on_sign_in(self, visitor, visit):
        pass

    def on_sign_out(self, visitor, visit):
        pass

    def on_visitor_status_changed(self, visitor, old_status, new_status):
        pass

    def on_visit_status_changed(self, visitor, visit, old_status, new_status):
        pass

    def on_host_limit_exceeded(self, host_id, visit_date, unapproved_count):
        pass


class SafeNotificationDispatcher(NotificationDispatcher):
    """
    Wraps a dispatcher so that delivery failures are logged and discarded.

    Hooks raised inside a ``deferred()`` block are held back and delivered only
    once the outermost block exits cleanly; if it raises, they are dropped.
    """

    def __init__(self, inner):
        self.inner = inner
        self._depth = 0
        self._pending = []

    @contextmanager
    def deferred(self):
        self._depth += 1
        try:
            yield
        except BaseException:
            self._depth -= 1
            if not self._depth:
                self._pending.clear()
            raise
        self._depth -= 1
        if not self._depth:
            pending, self._pending = self._pending, []
            for hook, args in pending:
                self._dispatch(hook, *args)

    def _call(self, hook, *args):
        if self._depth:
            self._pending.append((hook, args))
            return
        self._dispatch(hook, *args)

    def _dispatch(self, hook, *args):
        try:
            getattr(self.inner, hook)(*args)
        except Exception:
            logger.exception("Notification hook %s failed", hook)

    def on_visit_registered(self, visitor, visit):
        self._call("on_visit_registered", visitor, visit)

    def on_visit_cancelled(self, visitor, visit):
        self._call("on_visit_cancelled", visitor, visit)

    def on_sign_in(self, visitor, visit):
        self._call("on_sign_in", visitor, visit)

    def on_sign_out(self, visitor, visit):
        self._call("on_sign_out", visitor, visit)

    def on_visitor_status_changed(self, visitor, old_status, new_status):
        self._call("on_visitor_status_changed", visitor, old_status, new_status)

    def on_visit_status_changed(self, visitor, visit, old_status, new_status):
        self._call("on_visit_status_changed", visitor, visit, old_status, new_status)

    def on_host_limit_exceeded(self, host_id, visit_date, unapproved_count):
        self._call("on_host_limit_exceeded", host_id, visit_date, unapproved_count)


def _format_date(value):
    return value.strftime("%B %d, %Y") if value else ""


def _format_time(value):
    return value.strftime("%I:%M %p") if value else ""


class MessagingNotificationDispatcher(NotificationDispatcher):
    """Delivers visitor messages by SMS and email according to the visitor's opt-ins."""

    def __init__(self, sms_gateway=None):
        self.sms_gateway = sms_gateway or SmsGateway.from_settings()
        self.club_name = getattr(settings, "VISITS_CLUB_NAME", "The Club")

    def _deliver(self, visitor, subject, message):
        if visitor.receive_messages and visitor.phone:
            self.sms_gateway.send(visitor.phone, f"{self.club_name}: {message}")
        if visitor.receive_emails and visitor.email:
            send_mail(
                subject=f"{self.club_name} - {subject}",
                message=message,
                from_email=getattr(settings, "DEFAULT_FROM_EMAIL", None),
                recipient_list=[visitor.email],
                fail_silently=False,
            )

    def on_visit_registered(self, visitor, visit):
        when = _format_date(visit.visit_date)
        if visit.status == visit.STATUS_APPROVED:
            body = f"Dear {visitor.name}, your visit on {when} has been registered and approved."
        else:
            body = f"Dear {visitor.name}, your visit on {when} has been registered and is pending approval due to visit limits."
        self._deliver(visitor, "Visit registered", body)

    def on_visit_cancelled(self, visitor, visit):
        body = f"Dear {visitor.name}, your visit on {_format_date(visit.visit_date)} has been cancelled."
        self._deliver(visitor, "Visit cancelled", body)

    def on_sign_in(self, visitor, visit):
        body = f"Welcome {visitor.name}! You signed in at {_format_time(visit.sign_in_time)}. Enjoy your visit!"
        self._deliver(visitor, "Signed in", body)

    def on_sign_out(self, visitor, visit):
        body = f"Thank you for your visit {visitor.name}! You signed out at {_format_time(visit.sign_out_time)}."
        self._deliver(visitor, "Signed out", body)

    def on_visitor_status_changed(self, visitor, old_status, new_status):
        if new_status == "suspended":
            if visitor.suspension_reason == "quota":
                body = f"Dear {visitor.name}, your visit privileges have been temporarily suspended because the visit limit was reached."
            else:
                body = f"Dear {visitor.name}, your visit privileges have been suspended. Contact reception for assistance."
        elif new_status == "banned":
            body = f"Dear {visitor.name}, your visit privileges have been revoked. Please contact management."
        elif new_status == "active" and old_status in ("suspended", "banned"):
            body = f"Dear {visitor.name}, your visit privileges have been restored."
        else:
            return
        self._deliver(visitor, "Visitor status updated", body)

    def on_visit_status_changed(self, visitor, visit, old_status, new_status):
        when = _format_date(visit.visit_date)
        if new_status == "approved":
            body = f"Dear {visitor.name}, your visit on {when} has been approved. Please carry a valid ID."
        elif new_status == "unapproved":
            body = f"Dear {visitor.name}, your visit on {when} is pending approval due to capacity limits."
        else:
            return
        self._deliver(visitor, "Visit status updated", body)

    def on_host_limit_exceeded(self, host_id, visit_date, unapproved_count):
        recipient = getattr(settings, "VISITS_HOST_ALERT_EMAIL", "")
        body = (
            f"Host {host_id} has exceeded the daily guest limit for {_format_date(visit_date)}. "
            f"{unapproved_count} guest(s) are pending approval."
        )
        if not recipient:
            logger.warning(body)
            return
        send_mail(
            subject=f"{self.club_name} - Host daily limit exceeded",
            message=body,
            from_email=getattr(settings, "DEFAULT_FROM_EMAIL", None),
            recipient_list=[recipient],
            fail_silently=False,
        )


def get_notification_dispatcher(dispatcher=None) -> SafeNotificationDispatcher:
    """
    Wrap ``dispatcher`` (or the class named by ``VISITS_NOTIFICATION_DISPATCHER``)
    in the safe boundary the engine relies on.
    """
    if isinstance(dispatcher, SafeNotificationDispatcher):
        return dispatcher
    if dispatcher is None:
        path = getattr(settings, "VISITS_NOTIFICATION_DISPATCHER", DEFAULT_DISPATCHER)
        dispatcher = import_string(path)()
    return SafeNotificationDispatcher(dispatcher)
