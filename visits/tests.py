from datetime import date, timedelta
from io import StringIO
from unittest import mock

from django.core import mail
from django.core.exceptions import ImproperlyConfigured
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import DatabaseError
from django.test import TestCase, override_settings

from visits import jobs
from visits.clock import OperationalClock, end_of_day
from visits.exceptions import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    RestrictedError,
    ValidationError,
)
from visits.models import Visit, Visitor
from visits.notifications import (
    MessagingNotificationDispatcher,
    NotificationDispatcher,
    SafeNotificationDispatcher,
    get_notification_dispatcher,
)
from visits.policies import QuotaPolicy, get_quota_policies, get_quota_policy
from visits.reconciliation import evaluate_quota
from visits.repository import VisitRepository
from visits.services import VisitService
from visits.sms import SmsGateway, clean_phone_number

TODAY = date(2026, 3, 10)


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        self.events = []

    def on_visit_registered(self, visitor, visit):
        self.events.append(("visit_registered", visit.pk))

    def on_visit_cancelled(self, visitor, visit):
        self.events.append(("visit_cancelled", visit.pk))

    def on_sign_in(self, visitor, visit):
        self.events.append(("sign_in", visit.pk))

    def on_sign_out(self, visitor, visit):
        self.events.append(("sign_out", visit.pk))

    def on_visitor_status_changed(self, visitor, old_status, new_status):
        self.events.append(("visitor_status", visitor.pk, old_status, new_status))

    def on_visit_status_changed(self, visitor, visit, old_status, new_status):
        self.events.append(("visit_status", visit.pk, old_status, new_status))

    def on_host_limit_exceeded(self, host_id, visit_date, unapproved_count):
        self.events.append(("host_limit", host_id, visit_date, unapproved_count))

    def of_kind(self, kind):
        return [event for event in self.events if event[0] == kind]


class FailingDispatcher(NotificationDispatcher):
    def on_visit_registered(self, visitor, visit):
        raise RuntimeError("smtp down")

    def on_visit_status_changed(self, visitor, visit, old_status, new_status):
        raise RuntimeError("smtp down")

    def on_visitor_status_changed(self, visitor, old_status, new_status):
        raise RuntimeError("smtp down")


class VisitTestMixin:
    category = Visitor.CATEGORY_DAY_GUEST

    def setUp(self):
        self.recorder = RecordingDispatcher()

    def service(self, today=TODAY, category=None, **kwargs):
        kwargs.setdefault("dispatcher", self.recorder)
        return VisitService(category or self.category, clock=OperationalClock.fixed(today), **kwargs)

    def visitor(self, phone="0712000001", name="Guest One", today=TODAY, **kwargs):
        return self.service(today).find_or_create_visitor(phone, name, **kwargs)

    def refresh(self, obj):
        obj.refresh_from_db()
        return obj


class QuotaPolicyTests(TestCase):
    def test_default_day_guest_policy(self):
        policy = get_quota_policy(Visitor.CATEGORY_DAY_GUEST)
        self.assertEqual(policy.monthly_limit, 4)
        self.assertEqual(policy.yearly_limit, 12)
        self.assertEqual(policy.host_daily_limit, 4)
        self.assertTrue(policy.enforces_host_limit)

    def test_supplier_is_unlimited_by_default(self):
        policy = get_quota_policy(Visitor.CATEGORY_SUPPLIER)
        self.assertTrue(policy.is_unlimited)
        self.assertFalse(policy.would_exceed(500, 500))
        self.assertFalse(policy.is_exhausted(500, 500))

    def test_reciprocating_members_only_count_casual_visits(self):
        policy = get_quota_policy(Visitor.CATEGORY_RECIPROCATING_MEMBER)
        self.assertEqual(policy.yearly_limit, 24)
        self.assertTrue(policy.counts_toward_quota(Visit(purpose="casual_visit")))
        self.assertFalse(policy.counts_toward_quota(Visit(purpose="tournament")))
        self.assertFalse(policy.counts_toward_quota(Visit()))

    @override_settings(VISITS_QUOTA_POLICIES={"supplier": {"monthly_limit": 2}})
    def test_settings_override_is_merged_over_defaults(self):
        policy = get_quota_policy(Visitor.CATEGORY_SUPPLIER)
        self.assertEqual(policy.monthly_limit, 2)
        self.assertIsNone(policy.yearly_limit)
        self.assertEqual(get_quota_policies()["day_guest"]["monthly_limit"], 4)

    @override_settings(VISITS_QUOTA_POLICIES={"contractor": {"monthly_limit": 2}})
    def test_unknown_category_override_is_rejected(self):
        with self.assertRaises(ImproperlyConfigured):
            get_quota_policy(Visitor.CATEGORY_DAY_GUEST)

    @override_settings(VISITS_QUOTA_POLICIES={"day_guest": {"weekly_limit": 2}})
    def test_unknown_policy_key_is_rejected(self):
        with self.assertRaises(ImproperlyConfigured):
            get_quota_policy(Visitor.CATEGORY_DAY_GUEST)

    @override_settings(VISITS_QUOTA_POLICIES={"day_guest": {"monthly_limit": -1}})
    def test_negative_limit_is_rejected(self):
        with self.assertRaises(ImproperlyConfigured):
            get_quota_policy(Visitor.CATEGORY_DAY_GUEST)


class EvaluateQuotaTests(TestCase):
    def test_visits_beyond_monthly_limit_are_unapproved(self):
        policy = QuotaPolicy(monthly_limit=2)
        visits = [Visit(visit_date=TODAY + timedelta(days=i)) for i in range(1, 4)]
        evaluation = evaluate_quota(visits, policy, TODAY)
        self.assertEqual(evaluation.statuses, ["approved", "approved", "unapproved"])
        self.assertEqual(evaluation.month_count(TODAY), 2)

    def test_counters_restart_each_month(self):
        policy = QuotaPolicy(monthly_limit=1)
        visits = [Visit(visit_date=date(2026, 3, 20)), Visit(visit_date=date(2026, 3, 21)), Visit(visit_date=date(2026, 4, 2))]
        evaluation = evaluate_quota(visits, policy, TODAY)
        self.assertEqual(evaluation.statuses, ["approved", "unapproved", "approved"])

    def test_yearly_limit_applies_across_months(self):
        policy = QuotaPolicy(monthly_limit=4, yearly_limit=2)
        visits = [Visit(visit_date=date(2026, month, 15)) for month in (4, 5, 6)]
        evaluation = evaluate_quota(visits, policy, TODAY)
        self.assertEqual(evaluation.statuses, ["approved", "approved", "unapproved"])
        self.assertEqual(evaluation.year_count(TODAY), 2)

    def test_past_visits_count_only_when_attended(self):
        policy = QuotaPolicy(monthly_limit=2)
        visits = [
            Visit(visit_date=date(2026, 3, 2)),
            Visit(visit_date=date(2026, 3, 3), sign_in_time=end_of_day(date(2026, 3, 3))),
            Visit(visit_date=date(2026, 3, 12)),
            Visit(visit_date=date(2026, 3, 13)),
        ]
        evaluation = evaluate_quota(visits, policy, TODAY)
        self.assertEqual(evaluation.statuses, ["approved", "approved", "approved", "unapproved"])
        self.assertEqual(evaluation.month_count(TODAY), 2)

    def test_exempt_purposes_are_approved_and_not_counted(self):
        policy = QuotaPolicy(yearly_limit=1, counted_purposes=frozenset({"casual_visit"}))
        visits = [
            Visit(visit_date=date(2026, 3, 12), purpose="casual_visit"),
            Visit(visit_date=date(2026, 3, 13), purpose="tournament"),
            Visit(visit_date=date(2026, 3, 14), purpose="casual_visit"),
        ]
        evaluation = evaluate_quota(visits, policy, TODAY)
        self.assertEqual(evaluation.statuses, ["approved", "approved", "unapproved"])
        self.assertEqual(evaluation.year_count(TODAY), 1)


class VisitorRegistryTests(VisitTestMixin, TestCase):
    def test_find_or_create_normalizes_phone(self):
        visitor = self.visitor(phone="0712 345 678", name="Amina")
        self.assertEqual(visitor.phone, "254712345678")
        self.assertEqual(visitor.status, Visitor.STATUS_ACTIVE)

    def test_existing_visitor_is_returned_unmodified(self):
        first = self.visitor(phone="0712345678", name="Amina", email="amina@example.com")
        second = self.visitor(phone="+254 712 345 678", name="Someone Else", email="other@example.com")
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(second.name, "Amina")
        self.assertEqual(second.email, "amina@example.com")

    def test_same_phone_in_another_category_is_a_different_visitor(self):
        guest = self.visitor(phone="0712345678")
        supplier = self.service(category=Visitor.CATEGORY_SUPPLIER).find_or_create_visitor("0712345678", "Supplies Ltd")
        self.assertNotEqual(guest.pk, supplier.pk)
        self.assertEqual(supplier.category, Visitor.CATEGORY_SUPPLIER)

    def test_phone_and_name_are_required(self):
        with self.assertRaises(ValidationError):
            self.visitor(phone="", name="Amina")
        with self.assertRaises(ValidationError):
            self.visitor(phone="0712345678", name="  ")

    def test_document_is_bound_once(self):
        service = self.service()
        visitor = self.visitor()
        service.bind_identity_document(visitor.pk, " A1234567 ")
        self.assertEqual(self.refresh(visitor).identity_document, "A1234567")
        # Presenting the same document again is fine.
        service.bind_identity_document(visitor.pk, "A1234567")
        with self.assertRaises(ConflictError):
            service.bind_identity_document(visitor.pk, "B7654321")

    def test_document_cannot_be_shared_within_category(self):
        service = self.service()
        first = self.visitor(phone="0712000001")
        second = self.visitor(phone="0712000002", name="Guest Two")
        service.bind_identity_document(first.pk, "A1234567")
        with self.assertRaises(ConflictError):
            service.bind_identity_document(second.pk, "A1234567")

    def test_short_document_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.service().bind_identity_document(self.visitor().pk, "A12")

    def test_bound_document_cannot_be_overwritten_through_the_repository(self):
        repository = VisitRepository(Visitor.CATEGORY_DAY_GUEST)
        visitor = self.visitor()
        repository.update_visitor(visitor, identity_document="A1234567")
        with self.assertRaises(ValidationError):
            repository.update_visitor(visitor, identity_document="B7654321")


class RegisterVisitTests(VisitTestMixin, TestCase):
    def test_registered_visit_within_quota_is_approved(self):
        visit = self.service().register_visit(self.visitor().pk, TODAY + timedelta(days=1))
        self.assertEqual(visit.status, Visit.STATUS_APPROVED)
        self.assertEqual(self.recorder.of_kind("visit_registered"), [("visit_registered", visit.pk)])

    def test_past_date_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.service().register_visit(self.visitor().pk, TODAY - timedelta(days=1))

    def test_same_day_registration_is_allowed(self):
        visit = self.service().register_visit(self.visitor().pk, TODAY)
        self.assertEqual(visit.visit_date, TODAY)

    def test_duplicate_slot_is_rejected(self):
        service = self.service()
        visitor = self.visitor()
        service.register_visit(visitor.pk, TODAY + timedelta(days=1))
        with self.assertRaises(ConflictError):
            service.register_visit(visitor.pk, TODAY + timedelta(days=1))
        self.assertEqual(Visit.objects.filter(visitor=visitor).count(), 1)

    def test_slot_constraint_is_enforced_by_the_database(self):
        repository = VisitRepository(Visitor.CATEGORY_DAY_GUEST)
        visitor = self.visitor()
        repository.insert_visit(visitor, visit_date=TODAY, status=Visit.STATUS_APPROVED)
        with self.assertRaises(ConflictError):
            repository.insert_visit(visitor, visit_date=TODAY, status=Visit.STATUS_APPROVED)

    def test_cancelled_visit_is_reopened_in_place(self):
        service = self.service()
        visitor = self.visitor()
        visit = service.register_visit(visitor.pk, TODAY + timedelta(days=1))
        created_at = visit.created_at
        service.cancel_visit(visit.pk)

        reopened = service.register_visit(visitor.pk, TODAY + timedelta(days=1), host_id="M-100")
        self.assertEqual(reopened.pk, visit.pk)
        self.assertEqual(reopened.status, Visit.STATUS_APPROVED)
        self.assertEqual(reopened.host_id, "M-100")
        self.assertGreaterEqual(reopened.created_at, created_at)
        self.assertEqual(Visit.objects.filter(visitor=visitor).count(), 1)

    def test_reopened_visit_starts_without_attendance(self):
        service = self.service()
        visitor = self.visitor()
        visit = service.register_visit(visitor.pk, TODAY)
        service.sign_in(visit.pk, "A1234567")
        service.sign_out(visit.pk)
        service.cancel_visit(visit.pk)

        reopened = service.register_visit(visitor.pk, TODAY)
        self.assertEqual(reopened.pk, visit.pk)
        self.assertIsNone(reopened.sign_in_time)
        self.assertIsNone(reopened.sign_out_time)
        self.assertNotEqual(reopened.status, Visit.STATUS_CANCELLED)

    def test_fifth_visit_in_a_month_is_unapproved(self):
        service = self.service()
        visitor = self.visitor()
        visits = [service.register_visit(visitor.pk, date(2026, 3, day)) for day in range(11, 16)]
        statuses = [self.refresh(v).status for v in visits]
        self.assertEqual(statuses, ["approved"] * 4 + ["unapproved"])

    def test_reaching_the_monthly_limit_suspends_the_visitor(self):
        service = self.service()
        visitor = self.visitor()
        for day in range(11, 15):
            service.register_visit(visitor.pk, date(2026, 3, day))
        visitor = self.refresh(visitor)
        self.assertEqual(visitor.status, Visitor.STATUS_SUSPENDED)
        self.assertEqual(visitor.suspension_reason, Visitor.SUSPENSION_QUOTA)
        self.assertEqual(
            self.recorder.of_kind("visitor_status"),
            [("visitor_status", visitor.pk, "active", "suspended")],
        )

    def test_visits_in_a_later_month_do_not_suspend(self):
        service = self.service()
        visitor = self.visitor()
        for day in range(1, 5):
            service.register_visit(visitor.pk, date(2026, 4, day))
        self.assertEqual(self.refresh(visitor).status, Visitor.STATUS_ACTIVE)

    def test_yearly_limit_with_custom_policy(self):
        service = self.service(policy=QuotaPolicy(yearly_limit=2))
        visitor = self.visitor()
        visits = [service.register_visit(visitor.pk, date(2026, month, 15)) for month in (4, 5, 6)]
        self.assertEqual([self.refresh(v).status for v in visits], ["approved", "approved", "unapproved"])
        self.assertEqual(self.refresh(visitor).status, Visitor.STATUS_SUSPENDED)

    def test_cancelling_frees_quota_for_a_later_visit(self):
        service = self.service(today=date(2026, 2, 27))
        visitor = self.visitor()
        visits = [service.register_visit(visitor.pk, date(2026, 3, day)) for day in range(2, 7)]
        self.assertEqual(self.refresh(visits[4]).status, Visit.STATUS_UNAPPROVED)

        service.cancel_visit(visits[0].pk)
        self.assertEqual(self.refresh(visits[4]).status, Visit.STATUS_APPROVED)
        self.assertIn(("visit_status", visits[4].pk, "unapproved", "approved"), self.recorder.events)

    def test_courtesy_visit_counts_but_has_no_host(self):
        service = self.service()
        visitor = self.visitor()
        visit = service.register_visit(visitor.pk, TODAY + timedelta(days=1), courtesy=True)
        self.assertTrue(visit.courtesy)
        self.assertIsNone(visit.host_id)
        with self.assertRaises(ValidationError):
            service.register_visit(visitor.pk, TODAY + timedelta(days=2), host_id="M-100", courtesy=True)

    def test_only_day_guests_carry_a_host(self):
        service = self.service(category=Visitor.CATEGORY_SUPPLIER)
        supplier = service.find_or_create_visitor("0712345678", "Supplies Ltd")
        with self.assertRaises(ValidationError):
            service.register_visit(supplier.pk, TODAY + timedelta(days=1), host_id="M-100")

    def test_register_visitor_visit_reuses_the_visitor(self):
        service = self.service()
        first = service.register_visitor_visit("0712345678", "Amina", TODAY + timedelta(days=1), receive_messages=True)
        second = service.register_visitor_visit("0712345678", "Amina K", TODAY + timedelta(days=2))
        self.assertEqual(first.visitor_id, second.visitor_id)
        self.assertTrue(second.visitor.receive_messages)

    def test_unknown_visitor(self):
        with self.assertRaises(NotFoundError):
            self.service().register_visit(999999, TODAY)

    def test_visitor_of_another_category_is_not_found(self):
        supplier = self.service(category=Visitor.CATEGORY_SUPPLIER).find_or_create_visitor("0712345678", "Supplies Ltd")
        with self.assertRaises(NotFoundError):
            self.service().register_visit(supplier.pk, TODAY)

    def test_database_failure_surfaces_as_persistence_error(self):
        visitor = self.visitor()
        with mock.patch.object(Visit, "save", side_effect=DatabaseError("database unavailable")):
            with self.assertRaises(PersistenceError):
                self.service().register_visit(visitor.pk, TODAY + timedelta(days=1))


class HostDailyLimitTests(VisitTestMixin, TestCase):
    visit_date = date(2026, 3, 20)

    def register_guests(self, count, host_id="M-100", start=1):
        service = self.service()
        visits = []
        for index in range(start, start + count):
            visitor = self.visitor(phone=f"07120000{index:02d}", name=f"Guest {index}")
            visits.append(service.register_visit(visitor.pk, self.visit_date, host_id=host_id))
        return visits

    def test_guests_beyond_the_host_limit_are_unapproved(self):
        visits = self.register_guests(5)
        statuses = [self.refresh(v).status for v in visits]
        self.assertEqual(statuses, ["approved"] * 4 + ["unapproved"])
        self.assertEqual(
            self.recorder.of_kind("host_limit"),
            [("host_limit", "M-100", self.visit_date, 1)],
        )

    def test_each_new_overflow_raises_one_alert(self):
        self.register_guests(6)
        self.assertEqual(
            self.recorder.of_kind("host_limit"),
            [
                ("host_limit", "M-100", self.visit_date, 1),
                ("host_limit", "M-100", self.visit_date, 2),
            ],
        )

    def test_hosts_are_counted_separately(self):
        self.register_guests(4, host_id="M-100")
        visits = self.register_guests(1, host_id="M-200", start=5)
        self.assertEqual(visits[0].status, Visit.STATUS_APPROVED)
        self.assertEqual(self.recorder.of_kind("host_limit"), [])

    def test_cancellation_promotes_the_next_guest_in_line(self):
        visits = self.register_guests(5)
        self.service().cancel_visit(visits[1].pk)

        self.assertEqual(self.refresh(visits[1]).status, Visit.STATUS_CANCELLED)
        self.assertEqual(self.refresh(visits[4]).status, Visit.STATUS_APPROVED)
        self.assertIn(("visit_cancelled", visits[1].pk), self.recorder.events)
        self.assertIn(("visit_status", visits[4].pk, "unapproved", "approved"), self.recorder.events)
        self.assertEqual(len(self.recorder.of_kind("host_limit")), 1)

    def test_visitor_quota_still_applies_within_the_host_limit(self):
        # Registered in February so the March visits do not suspend the visitor.
        early = self.service(today=date(2026, 2, 27))
        busy = self.visitor(phone="0712999999", name="Busy Guest", today=date(2026, 2, 27))
        for day in range(2, 6):
            early.register_visit(busy.pk, date(2026, 3, day))

        service = self.service(today=date(2026, 2, 27))
        first = service.register_visit(busy.pk, self.visit_date, host_id="M-100")
        other = self.visitor(phone="0712888888", name="Other Guest", today=date(2026, 2, 27))
        second = service.register_visit(other.pk, self.visit_date, host_id="M-100")

        self.assertEqual(self.refresh(first).status, Visit.STATUS_UNAPPROVED)
        self.assertEqual(self.refresh(second).status, Visit.STATUS_APPROVED)
        self.assertEqual(self.recorder.of_kind("host_limit"), [])


class SignInOutTests(VisitTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.svc = self.service()
        self.guest = self.visitor()
        self.visit = self.svc.register_visit(self.guest.pk, TODAY)

    def test_sign_in_binds_document_and_sets_time(self):
        visit = self.svc.sign_in(self.visit.pk, "A1234567")
        self.assertEqual(visit.sign_in_time, self.svc.clock.now())
        self.assertEqual(self.refresh(self.guest).identity_document, "A1234567")
        self.assertIn(("sign_in", visit.pk), self.recorder.events)

    def test_sign_in_twice_is_a_conflict(self):
        self.svc.sign_in(self.visit.pk, "A1234567")
        with self.assertRaises(ConflictError):
            self.svc.sign_in(self.visit.pk, "A1234567")

    def test_sign_in_only_on_the_visit_date(self):
        future = self.svc.register_visit(self.guest.pk, TODAY + timedelta(days=1))
        with self.assertRaises(ValidationError):
            self.svc.sign_in(future.pk, "A1234567")

    def test_sign_in_requires_a_valid_document(self):
        with self.assertRaises(ValidationError):
            self.svc.sign_in(self.visit.pk, "    ")
        self.assertIsNone(self.refresh(self.visit).sign_in_time)

    def test_document_must_match_the_bound_one(self):
        self.svc.bind_identity_document(self.guest.pk, "A1234567")
        with self.assertRaises(ConflictError):
            self.svc.sign_in(self.visit.pk, "B7654321")
        self.assertIsNone(self.refresh(self.visit).sign_in_time)

    def test_document_of_another_visitor_is_a_conflict(self):
        self.svc.sign_in(self.visit.pk, "A1234567")
        other = self.visitor(phone="0712000002", name="Guest Two")
        other_visit = self.svc.register_visit(other.pk, TODAY)

        with self.assertRaises(ConflictError):
            self.svc.sign_in(other_visit.pk, "A1234567")

        self.assertEqual(self.refresh(self.guest).identity_document, "A1234567")
        self.assertIsNone(self.refresh(other).identity_document)
        self.assertIsNone(self.refresh(other_visit).sign_in_time)

    def test_second_sign_in_is_a_conflict_whatever_the_document(self):
        self.svc.sign_in(self.visit.pk, "A1234567")
        for document in ("", "A1", "B7654321"):
            with self.assertRaises(ConflictError):
                self.svc.sign_in(self.visit.pk, document)

    def test_restricted_visitors_cannot_sign_in(self):
        for status in (Visitor.STATUS_SUSPENDED, Visitor.STATUS_BANNED):
            self.svc.update_visitor_status(self.guest.pk, status)
            with self.assertRaises(RestrictedError):
                self.svc.sign_in(self.visit.pk, "A1234567")

    def test_cancelled_visit_cannot_be_signed_in(self):
        self.svc.cancel_visit(self.visit.pk)
        with self.assertRaises(ConflictError):
            self.svc.sign_in(self.visit.pk, "A1234567")
        with self.assertRaises(ConflictError):
            self.svc.sign_in(self.visit.pk, "")

    def test_sign_out(self):
        self.svc.sign_in(self.visit.pk, "A1234567")
        visit = self.svc.sign_out(self.visit.pk)
        self.assertIsNotNone(visit.sign_out_time)
        self.assertIn(("sign_out", visit.pk), self.recorder.events)
        with self.assertRaises(ConflictError):
            self.svc.sign_out(self.visit.pk)

    def test_sign_out_without_sign_in_is_a_conflict(self):
        with self.assertRaises(ConflictError):
            self.svc.sign_out(self.visit.pk)

    def test_auto_sign_out_closes_open_visits_at_end_of_day(self):
        self.svc.sign_in(self.visit.pk, "A1234567")
        tomorrow = self.service(today=TODAY + timedelta(days=1))
        self.assertEqual(tomorrow.auto_sign_out_stale_visits(TODAY), 1)
        self.assertEqual(self.refresh(self.visit).sign_out_time, end_of_day(TODAY))
        # Nothing left to close on a second run.
        self.assertEqual(tomorrow.auto_sign_out_stale_visits(TODAY), 0)

    def test_cancel_is_idempotent(self):
        self.svc.cancel_visit(self.visit.pk)
        self.svc.cancel_visit(self.visit.pk)
        self.assertEqual(self.refresh(self.visit).status, Visit.STATUS_CANCELLED)
        self.assertEqual(len(self.recorder.of_kind("visit_cancelled")), 1)

    def test_visits_are_scoped_to_their_category(self):
        supplier_service = self.service(category=Visitor.CATEGORY_SUPPLIER)
        with self.assertRaises(NotFoundError):
            supplier_service.get_visit(self.visit.pk)


class ReconciliationTests(VisitTestMixin, TestCase):
    def register_march(self, visitor, days):
        service = self.service(today=date(2026, 2, 27))
        return [service.register_visit(visitor.pk, date(2026, 3, day)) for day in days]

    def test_unattended_past_visits_stop_counting(self):
        visitor = self.visitor(today=date(2026, 2, 27))
        visits = self.register_march(visitor, range(2, 7))
        self.assertEqual(self.refresh(visits[4]).status, Visit.STATUS_UNAPPROVED)

        self.service(today=date(2026, 3, 6)).sweep()

        self.assertEqual(self.refresh(visits[4]).status, Visit.STATUS_APPROVED)
        self.assertEqual(self.refresh(visitor).status, Visitor.STATUS_ACTIVE)

    def test_attended_past_visits_keep_counting(self):
        visitor = self.visitor(today=date(2026, 2, 27))
        visits = self.register_march(visitor, range(2, 7))
        for visit in visits[:4]:
            self.service(today=visit.visit_date).sign_in(visit.pk, "A1234567")

        self.service(today=date(2026, 3, 6)).sweep()

        self.assertEqual(self.refresh(visits[4]).status, Visit.STATUS_UNAPPROVED)
        visitor = self.refresh(visitor)
        self.assertEqual(visitor.status, Visitor.STATUS_SUSPENDED)
        self.assertEqual(visitor.suspension_reason, Visitor.SUSPENSION_QUOTA)

    def test_reconcile_is_stable(self):
        visitor = self.visitor()
        self.service().register_visit(visitor.pk, TODAY + timedelta(days=1))
        events = list(self.recorder.events)
        self.service().reconcile_visitor(visitor.pk)
        self.assertEqual(self.recorder.events, events)

    def test_sweep_skips_restricted_visitors(self):
        active = self.visitor(phone="0712000001")
        banned = self.visitor(phone="0712000002", name="Guest Two")
        self.service().update_visitor_status(banned.pk, Visitor.STATUS_BANNED)
        self.assertEqual(self.service().sweep(), 1)
        self.assertEqual(self.refresh(active).status, Visitor.STATUS_ACTIVE)

    def test_manual_status_change_records_reason_and_notifies(self):
        service = self.service()
        visitor = self.visitor()
        service.update_visitor_status(visitor.pk, Visitor.STATUS_SUSPENDED)
        visitor = self.refresh(visitor)
        self.assertEqual(visitor.suspension_reason, Visitor.SUSPENSION_MANUAL)

        service.update_visitor_status(visitor.pk, Visitor.STATUS_ACTIVE)
        visitor = self.refresh(visitor)
        self.assertEqual(visitor.status, Visitor.STATUS_ACTIVE)
        self.assertIsNone(visitor.suspension_reason)
        self.assertEqual(
            self.recorder.of_kind("visitor_status"),
            [
                ("visitor_status", visitor.pk, "active", "suspended"),
                ("visitor_status", visitor.pk, "suspended", "active"),
            ],
        )

    def test_manual_reactivation_is_reconciled(self):
        service = self.service()
        visitor = self.visitor()
        for day in range(11, 15):
            service.register_visit(visitor.pk, date(2026, 3, day))
        service.update_visitor_status(visitor.pk, Visitor.STATUS_ACTIVE)
        # Still at the monthly limit, so the cascade suspends again.
        self.assertEqual(self.refresh(visitor).status, Visitor.STATUS_SUSPENDED)

    def test_unknown_status_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.service().update_visitor_status(self.visitor().pk, "archived")


class ResetLimitsTests(VisitTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        march_first = date(2026, 3, 1)
        service = self.service(today=march_first)
        self.quota_suspended = self.visitor(phone="0712000001", today=march_first)
        for day in range(2, 6):
            service.register_visit(self.quota_suspended.pk, date(2026, 3, day))
        self.manually_suspended = self.visitor(phone="0712000002", name="Guest Two", today=march_first)
        service.update_visitor_status(self.manually_suspended.pk, Visitor.STATUS_SUSPENDED)

    def test_quota_suspension_is_set(self):
        visitor = self.refresh(self.quota_suspended)
        self.assertEqual(visitor.status, Visitor.STATUS_SUSPENDED)
        self.assertEqual(visitor.suspension_reason, Visitor.SUSPENSION_QUOTA)

    def test_monthly_reset_only_lifts_quota_suspensions(self):
        reactivated = self.service(today=date(2026, 4, 1)).reset_limits("monthly")

        self.assertEqual([v.pk for v in reactivated], [self.quota_suspended.pk])
        self.assertEqual(self.refresh(self.quota_suspended).status, Visitor.STATUS_ACTIVE)
        manual = self.refresh(self.manually_suspended)
        self.assertEqual(manual.status, Visitor.STATUS_SUSPENDED)
        self.assertEqual(manual.suspension_reason, Visitor.SUSPENSION_MANUAL)

    def test_visitor_still_at_the_limit_is_left_suspended_quietly(self):
        events = list(self.recorder.events)
        reactivated = self.service(today=date(2026, 3, 1)).reset_limits("monthly")

        self.assertEqual(reactivated, [])
        visitor = self.refresh(self.quota_suspended)
        self.assertEqual(visitor.status, Visitor.STATUS_SUSPENDED)
        self.assertEqual(visitor.suspension_reason, Visitor.SUSPENSION_QUOTA)
        self.assertEqual(self.recorder.events, events)

    def test_yearly_cap_survives_a_monthly_reset(self):
        service = self.service(policy=QuotaPolicy(yearly_limit=2))
        visitor = self.visitor(phone="0712000003", name="Guest Three")
        service.register_visit(visitor.pk, date(2026, 4, 15))
        service.register_visit(visitor.pk, date(2026, 5, 15))
        self.assertEqual(self.refresh(visitor).suspension_reason, Visitor.SUSPENSION_QUOTA)
        events = list(self.recorder.events)

        reactivated = self.service(today=date(2026, 4, 1), policy=QuotaPolicy(yearly_limit=2)).reset_limits("monthly")

        self.assertNotIn(visitor.pk, [v.pk for v in reactivated])
        self.assertEqual(self.refresh(visitor).status, Visitor.STATUS_SUSPENDED)
        self.assertEqual(
            [e for e in self.recorder.events[len(events):] if e[0] == "visitor_status" and e[1] == visitor.pk],
            [],
        )

    def test_unknown_period(self):
        with self.assertRaises(ValueError):
            self.service().reset_limits("weekly")

    def test_reset_job_runs_every_category(self):
        summary = jobs.reset_limits("monthly", today=date(2026, 4, 1), dispatcher=self.recorder)
        self.assertEqual(set(summary), {c for c, _ in Visitor.CATEGORY_CHOICES})
        self.assertEqual(summary["day_guest"], {"reactivated": 1})
        self.assertEqual(summary["supplier"], {"reactivated": 0})

    def test_reset_command(self):
        out = StringIO()
        call_command("visits_reset_limits", "--period", "yearly", stdout=out)
        self.assertIn("Yearly reset complete", out.getvalue())


class DailyRolloverTests(VisitTestMixin, TestCase):
    def test_rollover_signs_out_yesterday_and_reconciles(self):
        visitor = self.visitor()
        service = self.service()
        visit = service.register_visit(visitor.pk, TODAY)
        service.sign_in(visit.pk, "A1234567")

        summary = jobs.run_daily_rollover(TODAY + timedelta(days=1), dispatcher=self.recorder)

        self.assertEqual(summary["day_guest"], {"signed_out": 1, "reconciled": 1})
        self.assertEqual(self.refresh(visit).sign_out_time, end_of_day(TODAY))

    def test_rollover_command(self):
        out = StringIO()
        call_command("visits_daily_rollover", "--date=2026-03-11", stdout=out)
        self.assertIn("Daily rollover complete", out.getvalue())

    def test_rollover_command_rejects_bad_date(self):
        with self.assertRaises(CommandError):
            call_command("visits_daily_rollover", "--date=11/03/2026", stdout=StringIO())

    def test_rollover_command_reports_failures(self):
        with mock.patch("visits.jobs.VisitService.sweep", side_effect=DatabaseError("database unavailable")):
            with self.assertRaises(CommandError):
                call_command("visits_daily_rollover", "--date=2026-03-11", stdout=StringIO())


class NotificationBoundaryTests(VisitTestMixin, TestCase):
    def test_failing_dispatcher_does_not_block_state_changes(self):
        service = self.service(dispatcher=FailingDispatcher())
        visitor = self.visitor()
        with self.assertLogs("visits.notifications", level="ERROR") as logs:
            visits = [service.register_visit(visitor.pk, date(2026, 3, day)) for day in range(11, 15)]
        self.assertTrue(all(v.pk for v in visits))
        self.assertEqual(self.refresh(visitor).status, Visitor.STATUS_SUSPENDED)
        self.assertIn("on_visit_registered", logs.output[0])

    def test_safe_dispatcher_swallows_each_hook(self):
        inner = mock.Mock(spec=NotificationDispatcher)
        for name in ("on_sign_in", "on_host_limit_exceeded"):
            getattr(inner, name).side_effect = RuntimeError("boom")
        safe = SafeNotificationDispatcher(inner)
        with self.assertLogs("visits.notifications", level="ERROR"):
            safe.on_sign_in(None, None)
            safe.on_host_limit_exceeded("M-100", TODAY, 1)
        inner.on_sign_in.assert_called_once_with(None, None)

    def test_rolled_back_cancellation_sends_nothing(self):
        service = self.service()
        visit = service.register_visit(self.visitor().pk, TODAY + timedelta(days=1))
        events = list(self.recorder.events)

        with mock.patch.object(service.engine, "reconcile_visitor", side_effect=PersistenceError()):
            with self.assertRaises(PersistenceError):
                service.cancel_visit(visit.pk)

        self.assertEqual(Visit.objects.get(pk=visit.pk).status, Visit.STATUS_APPROVED)
        self.assertEqual(self.recorder.of_kind("visit_cancelled"), [])
        self.assertEqual(self.recorder.events, events)

    def test_rolled_back_reset_sends_nothing(self):
        march_first = date(2026, 3, 1)
        service = self.service(today=march_first)
        visitor = self.visitor(today=march_first)
        for day in range(2, 6):
            service.register_visit(visitor.pk, date(2026, 3, day))
        events = list(self.recorder.events)

        reset = self.service(today=date(2026, 4, 1))
        with mock.patch.object(reset.engine, "reconcile_visitor", side_effect=PersistenceError()):
            with self.assertRaises(PersistenceError):
                reset.reset_limits("monthly")

        self.assertEqual(self.refresh(visitor).status, Visitor.STATUS_SUSPENDED)
        self.assertEqual(self.recorder.events, events)

    def test_hooks_are_delivered_once_the_write_succeeds(self):
        inner = mock.Mock(spec=NotificationDispatcher)
        safe = SafeNotificationDispatcher(inner)
        with safe.deferred():
            safe.on_sign_in(None, None)
            with safe.deferred():
                safe.on_sign_out(None, None)
            inner.on_sign_in.assert_not_called()
            inner.on_sign_out.assert_not_called()
        inner.on_sign_in.assert_called_once_with(None, None)
        inner.on_sign_out.assert_called_once_with(None, None)

    def test_hooks_are_dropped_when_the_write_fails(self):
        inner = mock.Mock(spec=NotificationDispatcher)
        safe = SafeNotificationDispatcher(inner)
        with self.assertRaises(PersistenceError):
            with safe.deferred():
                safe.on_sign_in(None, None)
                raise PersistenceError()
        safe.on_sign_out(None, None)
        inner.on_sign_in.assert_not_called()
        inner.on_sign_out.assert_called_once_with(None, None)

    def test_configured_dispatcher_is_wrapped(self):
        with override_settings(VISITS_NOTIFICATION_DISPATCHER="visits.notifications.NotificationDispatcher"):
            dispatcher = get_notification_dispatcher()
        self.assertIsInstance(dispatcher, SafeNotificationDispatcher)
        self.assertIs(type(dispatcher.inner), NotificationDispatcher)
        self.assertIs(get_notification_dispatcher(dispatcher), dispatcher)


class MessagingDispatcherTests(TestCase):
    def setUp(self):
        self.gateway = mock.Mock()
        self.dispatcher = MessagingNotificationDispatcher(sms_gateway=self.gateway)
        self.visitor = Visitor(
            name="Amina",
            phone="254712345678",
            email="amina@example.com",
            receive_emails=True,
            receive_messages=True,
        )

    @override_settings(VISITS_CLUB_NAME="Muthaiga Club")
    def test_registration_is_sent_by_sms_and_email(self):
        dispatcher = MessagingNotificationDispatcher(sms_gateway=self.gateway)
        visit = Visit(visit_date=date(2026, 3, 11), status=Visit.STATUS_APPROVED)
        dispatcher.on_visit_registered(self.visitor, visit)

        phone, message = self.gateway.send.call_args[0]
        self.assertEqual(phone, "254712345678")
        self.assertIn("approved", message)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["amina@example.com"])
        self.assertTrue(mail.outbox[0].subject.startswith("Muthaiga Club"))

    def test_opt_outs_are_respected(self):
        self.visitor.receive_emails = False
        self.visitor.receive_messages = False
        self.dispatcher.on_visit_cancelled(self.visitor, Visit(visit_date=date(2026, 3, 11)))
        self.gateway.send.assert_not_called()
        self.assertEqual(len(mail.outbox), 0)

    def test_quota_suspension_message(self):
        self.visitor.status = Visitor.STATUS_SUSPENDED
        self.visitor.suspension_reason = Visitor.SUSPENSION_QUOTA
        self.dispatcher.on_visitor_status_changed(self.visitor, "active", "suspended")
        self.assertIn("visit limit", self.gateway.send.call_args[0][1])

    @override_settings(VISITS_HOST_ALERT_EMAIL="reception@example.com")
    def test_host_limit_alert_goes_to_reception(self):
        self.dispatcher.on_host_limit_exceeded("M-100", date(2026, 3, 20), 2)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["reception@example.com"])
        self.assertIn("M-100", mail.outbox[0].body)

    @override_settings(VISITS_HOST_ALERT_EMAIL="")
    def test_host_limit_alert_is_logged_without_recipient(self):
        with self.assertLogs("visits.notifications", level="WARNING"):
            self.dispatcher.on_host_limit_exceeded("M-100", date(2026, 3, 20), 2)
        self.assertEqual(len(mail.outbox), 0)


class SmsGatewayTests(TestCase):
    def test_clean_phone_number(self):
        self.assertEqual(clean_phone_number("0712 345 678", "254"), "254712345678")
        self.assertEqual(clean_phone_number("712345678", "254"), "254712345678")
        self.assertEqual(clean_phone_number("+254-712-345-678", "254"), "254712345678")
        self.assertEqual(clean_phone_number("", "254"), "")

    def test_send_posts_to_the_api(self):
        session = mock.Mock()
        session.post.return_value.json.return_value = {
            "success": True,
            "recipients": [{"id": "msg-1", "cost": 0.8, "status": "queued"}],
        }
        gateway = SmsGateway(api_key="key", api_secret="secret", sender_id="CLUB", session=session)

        result = gateway.send("0712345678", "Hello")

        self.assertEqual(result, {"success": True, "message_id": "msg-1", "cost": 0.8, "status": "queued"})
        args, kwargs = session.post.call_args
        self.assertEqual(args[0], "https://api.smsleopard.com/v1/sms/send")
        self.assertEqual(kwargs["json"]["destination"], [{"number": "254712345678"}])
        self.assertEqual(kwargs["auth"], ("key", "secret"))

    def test_rejected_message(self):
        session = mock.Mock()
        session.post.return_value.json.return_value = {"success": False, "message": "Insufficient balance"}
        gateway = SmsGateway(api_key="key", api_secret="secret", session=session)
        self.assertEqual(gateway.send("0712345678", "Hello"), {"success": False, "error": "Insufficient balance"})

    def test_unconfigured_gateway_does_not_send(self):
        session = mock.Mock()
        gateway = SmsGateway(session=session)
        self.assertIsNone(gateway.send("0712345678", "Hello"))
        session.post.assert_not_called()
