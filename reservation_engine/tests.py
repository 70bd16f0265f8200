from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import timedelta
from io import StringIO
from types import SimpleNamespace
from unittest import mock
from urllib.parse import parse_qs

import httpx
from django.core.management import call_command
from django.db import connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from reservation_engine_backend.celery import app as celery_app

from . import pricing
from .allocator import GuestInfo, allocate, next_booking_number
from .availability import find_available, validate_stay
from .exceptions import (
    PAYMENT_NOT_COMPLETED,
    BookingExpired,
    InvalidDateRange,
    InvalidTransition,
    NoAvailability,
    PaymentVerificationFailed,
    ProviderRejected,
    ProviderUnavailable,
    QuoteChanged,
    UnknownProvider,
)
from .models import Booking, IndividualRoom, PaymentAttempt, PromoCode, RoomType
from .payments import (
    OmiseChargeProvider,
    PaymentFlow,
    PaymentOutcome,
    StripeCheckoutProvider,
    get_provider,
)
from .settlement import (
    cancel,
    check_in,
    check_out,
    confirm_payment,
    expire_stale_holds,
    initiate_payment,
)
from .signals import booking_status_changed
from .tasks import expire_holds


def make_room_type(name="Deluxe", price_cents=150000, rooms=("101", "102"), max_guests=2):
    room_type = RoomType.objects.create(
        name=name, price_cents=price_cents, max_guests=max_guests, total_rooms=len(rooms)
    )
    for number in rooms:
        IndividualRoom.objects.create(room_type=room_type, number=number)
    return room_type


def guest(n=1, count=1):
    return GuestInfo(name=f"Guest {n}", email=f"guest{n}@example.com", count=count)


def book(room_type, check_in, check_out, n=1):
    quote = pricing.quote(room_type, check_in, check_out)
    return allocate(room_type, check_in, check_out, guest(n), quote)


class StripeStub:
    """Just enough of the Checkout Sessions API, served through httpx.MockTransport."""

    def __init__(self):
        self.sessions = {}
        self.requests = []
        self.fail_with = None
        self.on_retrieve = None

    def handler(self, request):
        self.requests.append(request)
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"error": {"message": "stub failure"}})
        path = request.url.path
        if request.method == "POST" and path == "/v1/checkout/sessions":
            form = parse_qs(request.content.decode())
            session_id = f"cs_test_{len(self.sessions) + 1}"
            self.sessions[session_id] = {
                "id": session_id,
                "url": f"https://checkout.stripe.test/{session_id}",
                "status": "open",
                "payment_status": "unpaid",
                "amount_total": int(form["line_items[0][price_data][unit_amount]"][0]),
                "currency": form["line_items[0][price_data][currency]"][0],
                "client_reference_id": form["client_reference_id"][0],
                "metadata": {"booking_number": form["metadata[booking_number]"][0]},
            }
            return httpx.Response(200, json=self.sessions[session_id])
        if request.method == "GET" and path.startswith("/v1/checkout/sessions/"):
            session = self.sessions.get(path.rsplit("/", 1)[-1])
            if session is None:
                return httpx.Response(404, json={"error": {"message": "No such checkout.session"}})
            if self.on_retrieve:
                self.on_retrieve(session)
            return httpx.Response(200, json=session)
        return httpx.Response(404, json={})

    def pay(self, session_id):
        self.sessions[session_id].update(status="complete", payment_status="paid")

    def client(self, name="stripe"):
        return StripeCheckoutProvider(
            "sk_test_123",
            backoff=0,
            currency="thb",
            return_url="http://frontend.test",
            transport=httpx.MockTransport(self.handler),
        )


class OmiseStub:
    """Charges API stand-in: card charges start pending until ``pay`` is called."""

    def __init__(self):
        self.charges = {}

    def handler(self, request):
        path = request.url.path
        if request.method == "POST" and path == "/charges":
            form = parse_qs(request.content.decode())
            charge_id = f"chrg_test_{len(self.charges) + 1}"
            self.charges[charge_id] = {
                "object": "charge",
                "id": charge_id,
                "status": "pending",
                "paid": False,
                "amount": int(form["amount"][0]),
                "currency": form["currency"][0].upper(),
                "metadata": {"booking_number": form["metadata[booking_number]"][0]},
                "authorize_uri": f"https://pay.omise.test/{charge_id}",
            }
            return httpx.Response(200, json=self.charges[charge_id])
        if request.method == "GET" and path.startswith("/charges/"):
            charge = self.charges.get(path.rsplit("/", 1)[-1])
            if charge is None:
                return httpx.Response(404, json={"object": "error", "code": "not_found"})
            return httpx.Response(200, json=charge)
        return httpx.Response(404, json={})

    def pay(self, charge_id):
        self.charges[charge_id].update(status="successful", paid=True)

    def client(self, name="omise"):
        return OmiseChargeProvider(
            "skey_test_123",
            backoff=0,
            currency="thb",
            return_url="http://frontend.test",
            transport=httpx.MockTransport(self.handler),
        )


class StubbedProviderMixin:

    def setUp(self):
        super().setUp()
        self.stripe = StripeStub()
        patcher = mock.patch("reservation_engine.payments.get_provider", side_effect=self.stripe.client)
        patcher.start()
        self.addCleanup(patcher.stop)


class ConcurrentAllocationTestCase(TransactionTestCase):
    """Concurrent requests against a shared room pool"""

    def setUp(self):
        self.check_in = timezone.localdate() + timedelta(days=5)
        self.check_out = self.check_in + timedelta(days=2)

    def _run_concurrently(self, room_type, attempts):
        quote = pricing.quote(room_type, self.check_in, self.check_out)

        def attempt(n):
            try:
                booking = allocate(room_type, self.check_in, self.check_out, guest(n), quote)
                return booking.room.number
            except NoAvailability:
                return None
            finally:
                connection.close()

        results = []
        with ThreadPoolExecutor(max_workers=attempts) as executor:
            futures = [executor.submit(attempt, n) for n in range(attempts)]
            for future in as_completed(futures):
                results.append(future.result())
        return results

    def test_single_room_is_held_once(self):
        room_type = make_room_type(rooms=("101",))
        results = self._run_concurrently(room_type, 5)

        winners = [r for r in results if r]
        self.assertEqual(winners, ["101"])
        self.assertEqual(results.count(None), 4)
        self.assertEqual(Booking.objects.filter(status=Booking.Status.PENDING_PAYMENT).count(), 1)

    def test_pool_is_spread_without_double_allocation(self):
        room_type = make_room_type(rooms=("101", "102", "103"))
        results = self._run_concurrently(room_type, 6)

        winners = sorted(r for r in results if r)
        self.assertEqual(winners, ["101", "102", "103"])
        self.assertEqual(results.count(None), 3)

    def test_disjoint_stays_on_one_room_all_succeed(self):
        room_type = make_room_type(rooms=("101",))
        stays = [
            (self.check_in + timedelta(days=3 * n), self.check_in + timedelta(days=3 * n + 2))
            for n in range(3)
        ]

        def attempt(n):
            start, end = stays[n]
            try:
                booking = allocate(room_type, start, end, guest(n), pricing.quote(room_type, start, end))
                return booking.room.number
            except NoAvailability:
                return None
            finally:
                connection.close()

        with ThreadPoolExecutor(max_workers=len(stays)) as executor:
            results = list(executor.map(attempt, range(len(stays))))

        self.assertEqual(results, ["101", "101", "101"])
        self.assertEqual(IndividualRoom.objects.get(number="101").version, 3)


class AllocationTestCase(TestCase):

    def setUp(self):
        self.room_type = make_room_type()
        self.check_in = timezone.localdate() + timedelta(days=10)
        self.check_out = self.check_in + timedelta(days=3)

    def test_rooms_assigned_in_number_order_until_exhausted(self):
        first = book(self.room_type, self.check_in, self.check_out, 1)
        second = book(self.room_type, self.check_in, self.check_out, 2)
        self.assertEqual(first.room.number, "101")
        self.assertEqual(second.room.number, "102")
        self.assertEqual(first.status, Booking.Status.PENDING_PAYMENT)
        with self.assertRaises(NoAvailability):
            book(self.room_type, self.check_in, self.check_out, 3)

    def test_back_to_back_stays_share_a_room(self):
        single = make_room_type(name="Single", rooms=("201",))
        middle = self.check_in + timedelta(days=1)
        earlier = book(single, self.check_in, middle, 1)
        later = book(single, middle, self.check_out, 2)
        self.assertEqual(earlier.room, later.room)

    def test_overlap_scenarios(self):
        single = make_room_type(name="Single", rooms=("201",))
        book(single, self.check_in, self.check_out)
        scenarios = [
            ("starts inside", self.check_in + timedelta(days=1), self.check_out + timedelta(days=1)),
            ("ends inside", self.check_in - timedelta(days=1), self.check_in + timedelta(days=1)),
            ("covers", self.check_in - timedelta(days=1), self.check_out + timedelta(days=1)),
            ("same range", self.check_in, self.check_out),
        ]
        for description, start, end in scenarios:
            with self.subTest(scenario=description):
                with self.assertRaises(NoAvailability):
                    book(single, start, end)

    def test_inactive_rooms_are_never_offered(self):
        IndividualRoom.objects.filter(number="101").update(is_active=False)
        booking = book(self.room_type, self.check_in, self.check_out)
        self.assertEqual(booking.room.number, "102")
        with self.assertRaises(NoAvailability):
            book(self.room_type, self.check_in, self.check_out, 2)

    def test_released_bookings_free_the_room(self):
        single = make_room_type(name="Single", rooms=("201",))
        booking = book(single, self.check_in, self.check_out)
        cancel(booking.booking_number, "changed plans")
        again = book(single, self.check_in, self.check_out, 2)
        self.assertEqual(again.room.number, "201")

    def test_claim_bumps_room_version(self):
        booking = book(self.room_type, self.check_in, self.check_out)
        self.assertEqual(IndividualRoom.objects.get(pk=booking.room_id).version, 1)

    def test_invalid_ranges_rejected_before_allocation(self):
        today = timezone.localdate()
        cases = [
            ("empty stay", self.check_in, self.check_in),
            ("reversed", self.check_out, self.check_in),
            ("past", today - timedelta(days=2), today + timedelta(days=1)),
            ("beyond horizon", today + timedelta(days=400), today + timedelta(days=402)),
        ]
        for description, start, end in cases:
            with self.subTest(case=description):
                with self.assertRaises(InvalidDateRange):
                    allocate(self.room_type, start, end, guest(), pricing.quote(self.room_type, self.check_in, self.check_out))
        self.assertFalse(Booking.objects.exists())

    def test_guest_count_over_capacity_rejected(self):
        from rest_framework.exceptions import ValidationError

        quote = pricing.quote(self.room_type, self.check_in, self.check_out)
        with self.assertRaises(ValidationError):
            allocate(self.room_type, self.check_in, self.check_out, guest(count=5), quote)

    def test_booking_price_is_fixed_at_allocation(self):
        booking = book(self.room_type, self.check_in, self.check_out)
        RoomType.objects.filter(pk=self.room_type.pk).update(price_cents=999900)
        booking.refresh_from_db()
        self.assertEqual(booking.room_price_cents, 150000 * 3)
        self.assertEqual(booking.total_cents, 150000 * 3)

    def test_booking_numbers_are_sequential_per_day(self):
        today = timezone.localdate()
        first = book(self.room_type, self.check_in, self.check_out, 1)
        second = book(self.room_type, self.check_in, self.check_out, 2)
        prefix = f"BK{today:%Y%m%d}"
        self.assertEqual(first.booking_number, f"{prefix}0001")
        self.assertEqual(second.booking_number, f"{prefix}0002")
        self.assertEqual(next_booking_number(), f"{prefix}0003")

    def test_booking_numbers_continue_past_four_digits(self):
        prefix = f"BK{timezone.localdate():%Y%m%d}"
        for sequence in ("9999", "10000"):
            Booking.objects.create(
                booking_number=f"{prefix}{sequence}",
                room_type=self.room_type,
                check_in=self.check_in,
                check_out=self.check_out,
                nights=3,
                guest_name="Earlier Guest",
                guest_email="earlier@example.com",
                room_price_cents=450000,
                total_cents=450000,
                status=Booking.Status.CANCELLED,
            )
        self.assertEqual(next_booking_number(), f"{prefix}10001")
        booking = book(self.room_type, self.check_in, self.check_out)
        self.assertEqual(booking.booking_number, f"{prefix}10001")

    def test_hold_expires_after_configured_minutes(self):
        before = timezone.now()
        booking = book(self.room_type, self.check_in, self.check_out)
        self.assertGreaterEqual(booking.expires_at, before + timedelta(minutes=15))
        self.assertLessEqual(booking.expires_at, timezone.now() + timedelta(minutes=15))


class AvailabilityTestCase(TestCase):

    def setUp(self):
        self.room_type = make_room_type()
        self.check_in = timezone.localdate() + timedelta(days=3)
        self.check_out = self.check_in + timedelta(days=2)

    def test_find_available_excludes_held_rooms(self):
        book(self.room_type, self.check_in, self.check_out)
        rooms = find_available(self.room_type.pk, self.check_in, self.check_out)
        self.assertEqual([r.number for r in rooms], ["102"])

    def test_expired_bookings_do_not_block(self):
        booking = book(self.room_type, self.check_in, self.check_out)
        Booking.objects.filter(pk=booking.pk).update(status=Booking.Status.EXPIRED)
        self.assertEqual(len(find_available(self.room_type.pk, self.check_in, self.check_out)), 2)

    def test_validate_stay_accepts_today(self):
        today = timezone.localdate()
        validate_stay(today, today + timedelta(days=1), today=today)


class PricingTestCase(TestCase):

    def setUp(self):
        self.room_type = make_room_type(price_cents=12345)
        self.check_in = timezone.localdate() + timedelta(days=1)
        self.check_out = self.check_in + timedelta(days=1)

    def promo(self, code="SAVE10", **fields):
        fields.setdefault("discount_type", PromoCode.DiscountType.PERCENTAGE)
        fields.setdefault("discount_value", 10)
        return PromoCode.objects.create(code=code, **fields)

    def test_quote_without_promo(self):
        quote = pricing.quote(self.room_type, self.check_in, self.check_in + timedelta(days=3))
        self.assertEqual(quote.nights, 3)
        self.assertEqual(quote.room_price_cents, 12345 * 3)
        self.assertEqual(quote.total_cents, 12345 * 3)
        self.assertEqual(quote.discount_cents, 0)

    def test_percentage_rounds_half_up(self):
        self.promo()
        quote = pricing.quote(self.room_type, self.check_in, self.check_out, "save10")
        self.assertEqual(quote.discount_cents, 1235)
        self.assertEqual(quote.total_cents, 12345 - 1235)
        self.assertEqual(quote.promo_code, "SAVE10")

    def test_fixed_discount_never_exceeds_price(self):
        self.promo("BIG", discount_type=PromoCode.DiscountType.FIXED, discount_value=50000)
        quote = pricing.quote(self.room_type, self.check_in, self.check_out, "BIG")
        self.assertEqual(quote.discount_cents, 12345)
        self.assertEqual(quote.total_cents, 0)

    def test_unusable_promos_are_ignored(self):
        today = timezone.localdate()
        other = make_room_type(name="Other", rooms=("901",))
        restricted = self.promo("ONLYOTHER")
        restricted.applicable_room_types.add(other)
        self.promo("OLD", valid_to=today - timedelta(days=1))
        self.promo("SOON", valid_from=today + timedelta(days=1))
        self.promo("USEDUP", max_uses=2, used_count=2)
        self.promo("LONGSTAY", min_nights=3)
        self.promo("BIGSPEND", min_amount_cents=100000)
        self.promo("OFF", is_active=False)
        for code in ["ONLYOTHER", "OLD", "SOON", "USEDUP", "LONGSTAY", "BIGSPEND", "OFF", "NOPE"]:
            with self.subTest(code=code):
                quote = pricing.quote(self.room_type, self.check_in, self.check_out, code)
                self.assertEqual(quote.discount_cents, 0)
                self.assertEqual(quote.promo_code, "")

    def test_allocation_counts_promo_use(self):
        promo = self.promo(max_uses=5)
        quote = pricing.quote(self.room_type, self.check_in, self.check_out, "SAVE10")
        booking = allocate(self.room_type, self.check_in, self.check_out, guest(), quote)
        promo.refresh_from_db()
        self.assertEqual(promo.used_count, 1)
        self.assertEqual(booking.promo_code, "SAVE10")
        self.assertEqual(booking.discount_cents, 1235)

    def test_default_promo(self):
        self.assertIsNone(pricing.default_promo())
        self.promo("FULL", is_default=True, max_uses=1, used_count=1)
        default = self.promo("WELCOME", is_default=True)
        self.assertEqual(pricing.default_promo(), default)


class PaymentProviderTestCase(SimpleTestCase):

    booking = SimpleNamespace(booking_number="BK202601010001", total_cents=300000, guest_email="a@example.com")

    def omise(self, handler, **kwargs):
        return OmiseChargeProvider("skey_test", backoff=0, transport=httpx.MockTransport(handler), **kwargs)

    def test_stripe_session_initiation(self):
        stub = StripeStub()
        initiation = stub.client().initiate(self.booking)
        self.assertEqual(initiation.flow, PaymentFlow.SESSION)
        self.assertEqual(initiation.reference, "cs_test_1")
        self.assertTrue(initiation.redirect_url.startswith("https://checkout.stripe.test/"))

        request = stub.requests[0]
        self.assertEqual(request.headers["Authorization"], "Bearer sk_test_123")
        form = parse_qs(request.content.decode())
        self.assertEqual(form["metadata[booking_number]"], ["BK202601010001"])
        self.assertIn("{CHECKOUT_SESSION_ID}", form["success_url"][0])

    def test_stripe_outcomes(self):
        stub = StripeStub()
        client = stub.client()
        reference = client.initiate(self.booking).reference
        self.assertEqual(client.retrieve(reference).outcome, PaymentOutcome.PENDING)
        stub.pay(reference)
        payment = client.retrieve(reference)
        self.assertEqual(payment.outcome, PaymentOutcome.SUCCEEDED)
        self.assertEqual(payment.amount_cents, 300000)
        self.assertEqual(payment.booking_number, "BK202601010001")
        stub.sessions[reference].update(status="expired", payment_status="unpaid")
        self.assertEqual(client.retrieve(reference).outcome, PaymentOutcome.FAILED)

    def test_unknown_reference_is_not_proof_of_payment(self):
        client = StripeStub().client()
        with self.assertRaises(PaymentVerificationFailed):
            client.retrieve("cs_missing")
        with self.assertRaises(PaymentVerificationFailed):
            client.retrieve("../../v1/charges")

    def test_server_errors_retried_then_unavailable(self):
        stub = StripeStub()
        stub.fail_with = 503
        with self.assertRaises(ProviderUnavailable) as ctx:
            stub.client().initiate(self.booking)
        self.assertEqual(len(stub.requests), 3)
        self.assertEqual(ctx.exception.detail["error"], PAYMENT_NOT_COMPLETED)
        self.assertEqual(ctx.exception.booking_number, "BK202601010001")

    def test_transport_errors_retried_then_unavailable(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectTimeout("timed out", request=request)

        with self.assertRaises(ProviderUnavailable):
            self.omise(handler, max_retries=2).retrieve("chrg_test_1")
        self.assertEqual(len(calls), 2)

    def test_retries_stop_at_deadline(self):
        stub = StripeStub()
        stub.fail_with = 503
        client = StripeCheckoutProvider(
            "sk_test_123", max_retries=5, deadline=15, backoff=0,
            transport=httpx.MockTransport(stub.handler),
        )
        with mock.patch("reservation_engine.payments.base.time") as clock:
            # start, first request, then the retry check finds 20s gone
            clock.monotonic.side_effect = [0.0, 0.0, 20.0]
            with self.assertRaises(ProviderUnavailable):
                client.retrieve("cs_test_1")
        self.assertEqual(len(stub.requests), 1)
        clock.sleep.assert_not_called()

    def test_client_errors_on_initiation_are_rejections(self):
        stub = StripeStub()
        stub.fail_with = 400
        with self.assertRaises(ProviderRejected):
            stub.client().initiate(self.booking)
        self.assertEqual(len(stub.requests), 1)

    def test_omise_card_charge(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"id": "chrg_test_1", "status": "pending", "authorize_uri": None})

        initiation = self.omise(handler).initiate(self.booking, card_token="tokn_test_1")
        self.assertEqual(initiation.flow, PaymentFlow.CHARGE)
        self.assertEqual(initiation.as_dict()["charge_id"], "chrg_test_1")
        self.assertTrue(requests[0].headers["Authorization"].startswith("Basic "))
        form = parse_qs(requests[0].content.decode())
        self.assertEqual(form["card"], ["tokn_test_1"])
        self.assertEqual(form["amount"], ["300000"])

    def test_omise_source_charge_creates_source_first(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            if request.url.path == "/sources":
                return httpx.Response(200, json={"id": "src_test_1"})
            form = parse_qs(request.content.decode())
            self.assertEqual(form["source"], ["src_test_1"])
            return httpx.Response(200, json={
                "id": "chrg_test_2", "status": "pending", "authorize_uri": "https://pay.omise.test/2",
            })

        initiation = self.omise(handler).initiate(self.booking, source_type="promptpay")
        self.assertEqual(paths, ["/sources", "/charges"])
        self.assertEqual(initiation.authorize_url, "https://pay.omise.test/2")

    def test_omise_requires_token_or_source(self):
        with self.assertRaises(ProviderRejected):
            self.omise(lambda request: httpx.Response(200, json={})).initiate(self.booking)

    def test_omise_outcomes(self):
        cases = [
            ({"paid": True, "status": "successful"}, PaymentOutcome.SUCCEEDED),
            ({"paid": False, "status": "successful"}, PaymentOutcome.SUCCEEDED),
            ({"paid": False, "status": "failed"}, PaymentOutcome.FAILED),
            ({"paid": False, "status": "reversed"}, PaymentOutcome.FAILED),
            ({"paid": False, "status": "pending"}, PaymentOutcome.PENDING),
        ]
        for charge, outcome in cases:
            with self.subTest(status=charge["status"], paid=charge["paid"]):
                body = {"id": "chrg_test_1", "amount": 300000, "currency": "THB", **charge}
                payment = self.omise(lambda request: httpx.Response(200, json=body)).retrieve("chrg_test_1")
                self.assertEqual(payment.outcome, outcome)
                self.assertEqual(payment.currency, "thb")

    def test_callbacks(self):
        stripe = StripeStub().client()
        omise = self.omise(lambda request: httpx.Response(200, json={}))
        event = {"type": "checkout.session.completed",
                 "data": {"object": {"id": "cs_test_1", "metadata": {"booking_number": "BK1"}}}}
        self.assertEqual(stripe.parse_callback(event).reference, "cs_test_1")
        self.assertEqual(stripe.parse_callback(event).booking_number, "BK1")
        self.assertIsNone(stripe.parse_callback({"type": "invoice.paid", "data": {"object": {"id": "in_1"}}}))
        charge_event = {"key": "charge.complete", "data": {"object": "charge", "id": "chrg_test_1"}}
        self.assertEqual(omise.parse_callback(charge_event).reference, "chrg_test_1")
        self.assertIsNone(omise.parse_callback({"key": "customer.create", "data": {}}))

    @override_settings(PAYMENT_PROVIDERS={"stripe": {"secret_key": "sk_live"}, "omise": {"secret_key": ""}})
    def test_get_provider(self):
        self.assertIsInstance(get_provider("Stripe"), StripeCheckoutProvider)
        for name in ["omise", "paypal", None]:
            with self.subTest(name=name):
                with self.assertRaises(UnknownProvider):
                    get_provider(name)


class ReservationErrorTestCase(SimpleTestCase):

    def test_extra_fields_keep_their_types(self):
        exc = QuoteChanged(quote={"total_cents": 300000, "total": 3000.0, "promo_code": ""})
        self.assertEqual(exc.detail["quote"], {"total_cents": 300000, "total": 3000.0, "promo_code": ""})
        self.assertIsInstance(exc.detail["quote"]["total_cents"], int)
        self.assertEqual(str(exc.detail["error"]), QuoteChanged.default_detail)

    def test_transition_errors_name_states(self):
        exc = InvalidTransition("BK1", "confirmed", "checked_out")
        self.assertEqual(exc.detail["current_status"], "confirmed")
        self.assertEqual(exc.detail["attempted_status"], "checked_out")
        self.assertEqual(exc.status_code, status.HTTP_409_CONFLICT)


class HoldSweepTaskTestCase(TestCase):

    def setUp(self):
        self.room_type = make_room_type(rooms=("101",))
        check_in = timezone.localdate() + timedelta(days=4)
        self.booking = book(self.room_type, check_in, check_in + timedelta(days=2))
        Booking.objects.filter(pk=self.booking.pk).update(expires_at=timezone.now() - timedelta(minutes=1))

    def test_task_expires_stale_holds(self):
        result = expire_holds.apply()
        self.assertEqual(result.get(), 1)
        self.booking.refresh_from_db()
        self.assertEqual(self.booking.status, Booking.Status.EXPIRED)
        self.assertEqual(expire_holds.apply().get(), 0)

    def test_task_is_on_beat_schedule(self):
        entry = celery_app.conf.beat_schedule["expire-stale-holds"]
        self.assertEqual(entry["task"], expire_holds.name)

    def test_management_command_runs_one_sweep(self):
        out = StringIO()
        call_command("expire_holds", stdout=out)
        self.assertIn("Expired 1 hold(s)", out.getvalue())
        self.booking.refresh_from_db()
        self.assertEqual(self.booking.status, Booking.Status.EXPIRED)


class SettlementTestCase(StubbedProviderMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.room_type = make_room_type()
        self.check_in = timezone.localdate() + timedelta(days=7)
        self.check_out = self.check_in + timedelta(days=2)
        self.events = []
        booking_status_changed.connect(self.record_event)
        self.addCleanup(booking_status_changed.disconnect, self.record_event)

    def record_event(self, sender, booking, previous, status, **kwargs):
        self.events.append((booking.booking_number, previous, status))

    def held_and_paid(self, n=1):
        booking = book(self.room_type, self.check_in, self.check_out, n)
        initiation = initiate_payment(booking, "stripe")
        self.stripe.pay(initiation.reference)
        return booking, initiation.reference

    def test_initiation_records_attempt(self):
        booking = book(self.room_type, self.check_in, self.check_out)
        initiation = initiate_payment(booking, "stripe")
        attempt = booking.payment_attempts.get()
        self.assertEqual(attempt.provider_reference, initiation.reference)
        self.assertEqual(attempt.amount_cents, booking.total_cents)
        self.assertEqual(attempt.status, PaymentAttempt.Status.CREATED)
        booking.refresh_from_db()
        self.assertEqual(booking.payment_reference, initiation.reference)

    def test_deluxe_scenario(self):
        a = book(self.room_type, self.check_in, self.check_out, 1)
        b = book(self.room_type, self.check_in, self.check_out, 2)
        self.assertEqual((a.room.number, b.room.number), ("101", "102"))
        with self.assertRaises(NoAvailability):
            book(self.room_type, self.check_in, self.check_out, 3)

        reference = initiate_payment(a, "stripe").reference
        with self.assertRaises(PaymentVerificationFailed):
            confirm_payment(a.booking_number, "cs_forged")
        a.refresh_from_db()
        self.assertEqual(a.status, Booking.Status.PENDING_PAYMENT)

        self.stripe.pay(reference)
        result = confirm_payment(a.booking_number, reference)
        self.assertEqual(result.booking.status, Booking.Status.CONFIRMED)
        self.assertEqual(result.booking.total_cents, a.total_cents)

    def test_rate_change_does_not_alter_confirmed_total(self):
        booking = book(self.room_type, self.check_in, self.check_out)
        total = booking.total_cents
        RoomType.objects.filter(pk=self.room_type.pk).update(price_cents=1)

        reference = initiate_payment(booking, "stripe").reference
        self.stripe.pay(reference)
        result = confirm_payment(booking.booking_number, reference)

        self.assertEqual(result.booking.status, Booking.Status.CONFIRMED)
        self.assertEqual(result.booking.total_cents, total)
        self.assertEqual(PaymentAttempt.objects.get(provider_reference=reference).amount_cents, total)
        self.assertEqual(self.stripe.sessions[reference]["amount_total"], total)

    def test_charge_flow_confirmation(self):
        omise = OmiseStub()
        booking = book(self.room_type, self.check_in, self.check_out)
        with mock.patch("reservation_engine.payments.get_provider", side_effect=omise.client):
            initiation = initiate_payment(booking, "omise", card_token="tokn_test_1")
            self.assertEqual(initiation.flow, PaymentFlow.CHARGE)

            pending = confirm_payment(booking.booking_number)
            self.assertEqual(pending.outcome, PaymentOutcome.PENDING)

            omise.pay(initiation.reference)
            result = confirm_payment(booking.booking_number, initiation.reference, provider="omise")

        self.assertTrue(result.transitioned)
        self.assertEqual(result.booking.status, Booking.Status.CONFIRMED)
        self.assertEqual(result.booking.payment_provider, "omise")
        self.assertEqual(result.booking.payment_reference, initiation.reference)
        attempt = booking.payment_attempts.get()
        self.assertEqual(attempt.status, PaymentAttempt.Status.SUCCEEDED)
        self.assertEqual(attempt.currency, "thb")

    def test_another_bookings_reference_is_rejected(self):
        a, _ = self.held_and_paid(1)
        b, reference_b = self.held_and_paid(2)
        with self.assertRaises(PaymentVerificationFailed):
            confirm_payment(a.booking_number, reference_b)
        a.refresh_from_db()
        self.assertEqual(a.status, Booking.Status.PENDING_PAYMENT)

    def test_confirmation_is_idempotent(self):
        booking, reference = self.held_and_paid()
        with self.captureOnCommitCallbacks(execute=True):
            first = confirm_payment(booking.booking_number, reference)
        with self.captureOnCommitCallbacks(execute=True):
            second = confirm_payment(booking.booking_number)

        self.assertTrue(first.transitioned)
        self.assertFalse(second.transitioned)
        self.assertEqual(second.booking.status, Booking.Status.CONFIRMED)
        self.assertEqual(second.booking.total_cents, first.booking.total_cents)
        self.assertEqual(
            booking.payment_attempts.filter(status=PaymentAttempt.Status.SUCCEEDED).count(), 1
        )
        self.assertEqual(self.events, [(booking.booking_number, "pending_payment", "confirmed")])

    def test_unpaid_session_stays_pending(self):
        booking = book(self.room_type, self.check_in, self.check_out)
        initiate_payment(booking, "stripe")
        result = confirm_payment(booking.booking_number)
        self.assertEqual(result.outcome, PaymentOutcome.PENDING)
        self.assertFalse(result.transitioned)
        self.assertEqual(result.booking.status, Booking.Status.PENDING_PAYMENT)

    def test_failed_payment_marks_attempt_failed(self):
        booking = book(self.room_type, self.check_in, self.check_out)
        reference = initiate_payment(booking, "stripe").reference
        self.stripe.sessions[reference]["status"] = "expired"
        with self.assertRaises(PaymentVerificationFailed) as ctx:
            confirm_payment(booking.booking_number)
        self.assertEqual(str(ctx.exception.detail["error"]), PAYMENT_NOT_COMPLETED)
        self.assertEqual(booking.payment_attempts.get().status, PaymentAttempt.Status.FAILED)

    def test_amount_mismatch_is_rejected(self):
        booking, reference = self.held_and_paid()
        self.stripe.sessions[reference]["amount_total"] = 100
        with self.assertRaises(PaymentVerificationFailed) as ctx:
            confirm_payment(booking.booking_number)
        self.assertIn("amount", ctx.exception.reason)
        booking.refresh_from_db()
        self.assertEqual(booking.status, Booking.Status.PENDING_PAYMENT)

    def test_provider_outage_leaves_booking_pending(self):
        booking, reference = self.held_and_paid()
        self.stripe.fail_with = 502
        with self.assertRaises(ProviderUnavailable) as ctx:
            confirm_payment(booking.booking_number)
        self.assertEqual(ctx.exception.booking_number, booking.booking_number)
        booking.refresh_from_db()
        self.assertEqual(booking.status, Booking.Status.PENDING_PAYMENT)

    def test_expiry_releases_the_room(self):
        single = make_room_type(name="Single", rooms=("301",))
        booking = book(single, self.check_in, self.check_out)
        self.assertEqual(expire_stale_holds(), 0)

        with self.captureOnCommitCallbacks(execute=True):
            expired = expire_stale_holds(timezone.now() + timedelta(minutes=16))
        self.assertEqual(expired, 1)
        booking.refresh_from_db()
        self.assertEqual(booking.status, Booking.Status.EXPIRED)
        self.assertIn((booking.booking_number, "pending_payment", "expired"), self.events)

        again = book(single, self.check_in, self.check_out, 2)
        self.assertEqual(again.room.number, "301")

    def test_paid_holds_are_not_expired(self):
        booking, reference = self.held_and_paid()
        PaymentAttempt.objects.filter(provider_reference=reference).update(
            status=PaymentAttempt.Status.SUCCEEDED
        )
        self.assertEqual(expire_stale_holds(timezone.now() + timedelta(hours=1)), 0)

    def test_confirming_expired_booking(self):
        booking, reference = self.held_and_paid()
        expire_stale_holds(timezone.now() + timedelta(minutes=16))
        with self.assertRaises(BookingExpired) as ctx:
            confirm_payment(booking.booking_number, reference)
        self.assertEqual(ctx.exception.status_code, 409)
        booking.refresh_from_db()
        self.assertEqual(booking.status, Booking.Status.EXPIRED)

    def test_expiry_between_verification_and_commit_keeps_payment_record(self):
        booking, reference = self.held_and_paid()

        def expire(session):
            Booking.objects.filter(pk=booking.pk).update(status=Booking.Status.EXPIRED)

        self.stripe.on_retrieve = expire
        with self.assertRaises(BookingExpired):
            confirm_payment(booking.booking_number, reference)
        attempt = PaymentAttempt.objects.get(provider_reference=reference)
        self.assertEqual(attempt.status, PaymentAttempt.Status.SUCCEEDED)

    def test_stay_lifecycle(self):
        booking, reference = self.held_and_paid()
        confirm_payment(booking.booking_number, reference)

        with self.assertRaises(InvalidTransition):
            check_in(booking.booking_number)
        checked_in = check_in(booking.booking_number, today=self.check_in)
        self.assertEqual(checked_in.status, Booking.Status.CHECKED_IN)
        self.assertIsNotNone(checked_in.checked_in_at)

        checked_out = check_out(booking.booking_number)
        self.assertEqual(checked_out.status, Booking.Status.CHECKED_OUT)

        with self.assertRaises(InvalidTransition) as ctx:
            cancel(booking.booking_number)
        self.assertEqual(ctx.exception.current, Booking.Status.CHECKED_OUT)
        self.assertEqual(ctx.exception.attempted, Booking.Status.CANCELLED)

    def test_invalid_transitions_name_both_states(self):
        booking = book(self.room_type, self.check_in, self.check_out)
        with self.assertRaises(InvalidTransition) as ctx:
            check_out(booking.booking_number)
        self.assertEqual(ctx.exception.detail["current_status"], "pending_payment")
        self.assertEqual(ctx.exception.detail["attempted_status"], "checked_out")

    def test_cancel_records_reason_and_blocks_payment(self):
        booking = book(self.room_type, self.check_in, self.check_out)
        reference = initiate_payment(booking, "stripe").reference
        cancelled = cancel(booking.booking_number, "guest request")
        self.assertEqual(cancelled.cancellation_reason, "guest request")
        self.stripe.pay(reference)
        with self.assertRaises(InvalidTransition):
            confirm_payment(booking.booking_number, reference)
        with self.assertRaises(InvalidTransition):
            initiate_payment(cancelled, "stripe")


class ReservationAPITestCase(StubbedProviderMixin, APITestCase):

    def setUp(self):
        super().setUp()
        self.room_type = make_room_type()
        self.check_in = timezone.localdate() + timedelta(days=14)
        self.check_out = self.check_in + timedelta(days=2)

    def booking_payload(self, **extra):
        payload = {
            'room_type_id': self.room_type.id,
            'check_in': self.check_in.isoformat(),
            'check_out': self.check_out.isoformat(),
            'guest': {'full_name': 'Ada Guest', 'email': 'ada@example.com', 'phone': '0800000000'},
        }
        payload.update(extra)
        return payload

    def create_booking(self, **extra):
        return self.client.post('/api/bookings/', self.booking_payload(**extra), format='json')

    def test_health_and_welcome(self):
        self.assertEqual(self.client.get('/health').json(), {"status": "ok"})
        self.assertIn("message", self.client.get('/').json())

    def test_room_types_with_availability(self):
        self.create_booking()
        response = self.client.get('/api/room-types/', {
            'check_in': self.check_in.isoformat(), 'check_out': self.check_out.isoformat(),
        })
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data[0]['available_rooms'], 1)
        self.assertEqual(response.data[0]['price'], 1500.0)

    def test_room_types_reject_bad_dates(self):
        response = self.client.get('/api/room-types/', {'check_in': 'tomorrow', 'check_out': '2026-13-01'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('error', response.data)

    def test_room_type_availability(self):
        response = self.client.get(f'/api/room-types/{self.room_type.id}/availability/', {
            'check_in': self.check_in.isoformat(), 'check_out': self.check_out.isoformat(),
        })
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['rooms'], ['101', '102'])
        self.assertEqual(response.data['quote']['total_cents'], 300000)
        self.assertEqual(response.data['inventory'], {'declared': 2, 'active': 2})

        missing = self.client.get('/api/room-types/9999/availability/', {
            'check_in': self.check_in.isoformat(), 'check_out': self.check_out.isoformat(),
        })
        self.assertEqual(missing.status_code, status.HTTP_404_NOT_FOUND)

    def test_quote_and_default_promo(self):
        PromoCode.objects.create(code='welcome10', discount_type='percentage', discount_value=10, is_default=True)
        default = self.client.get('/api/promo-codes/default/')
        self.assertEqual(default.data['promo_code']['code'], 'WELCOME10')

        response = self.client.post('/api/bookings/quote/', {
            'room_type_id': self.room_type.id,
            'check_in': self.check_in.isoformat(),
            'check_out': self.check_out.isoformat(),
            'promo_code': 'welcome10',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['discount_cents'], 30000)
        self.assertEqual(response.data['total_cents'], 270000)

    def test_create_booking_holds_room(self):
        response = self.create_booking()
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        booking = response.data['booking']
        self.assertEqual(booking['status'], 'pending_payment')
        self.assertEqual(booking['room']['number'], '101')
        self.assertEqual(booking['payment_status'], 'unpaid')
        self.assertIsNone(response.data['payment'])

        lookup = self.client.get(f"/api/bookings/{booking['booking_number']}/")
        self.assertEqual(lookup.status_code, status.HTTP_200_OK)
        self.assertEqual(lookup.data['total_cents'], 300000)

    def test_create_booking_when_full(self):
        self.create_booking()
        self.create_booking()
        response = self.create_booking()
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertIn('error', response.data)

    def test_create_booking_validation(self):
        scenarios = [
            ('missing guest', {'guest': None}),
            ('reversed dates', {'check_in': self.check_out.isoformat(), 'check_out': self.check_in.isoformat()}),
            ('past dates', {
                'check_in': (timezone.localdate() - timedelta(days=3)).isoformat(),
                'check_out': (timezone.localdate() - timedelta(days=1)).isoformat(),
            }),
            ('unknown provider', {'payment_provider': 'paypal'}),
        ]
        with mock.patch('reservation_engine.payments.get_provider', side_effect=get_provider):
            for description, extra in scenarios:
                with self.subTest(scenario=description):
                    response = self.create_booking(**extra)
                    self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(Booking.objects.exists())

    def test_stale_quote_is_refused(self):
        response = self.create_booking(quoted_total_cents=100)
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['quote']['total_cents'], 300000)
        self.assertEqual(response.json()['quote']['total'], 3000.0)
        self.assertIsInstance(response.json()['quote']['total_cents'], int)
        self.assertFalse(Booking.objects.exists())

    def test_create_with_payment_then_confirm(self):
        response = self.create_booking(payment_provider='stripe')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        payment = response.data['payment']
        self.assertEqual(payment['flow'], 'session')
        number = response.data['booking']['booking_number']

        forged = self.client.post(f'/api/bookings/{number}/confirm_payment/', {'reference': 'cs_forged'}, format='json')
        self.assertEqual(forged.status_code, status.HTTP_402_PAYMENT_REQUIRED)
        self.assertEqual(forged.data['error'], PAYMENT_NOT_COMPLETED)

        pending = self.client.post(f'/api/bookings/{number}/confirm_payment/', {}, format='json')
        self.assertEqual(pending.status_code, status.HTTP_202_ACCEPTED)

        self.stripe.pay(payment['reference'])
        for _ in range(2):
            confirmed = self.client.post(f'/api/bookings/{number}/confirm_payment/',
                                         {'reference': payment['reference']}, format='json')
            self.assertEqual(confirmed.status_code, status.HTTP_200_OK)
            self.assertEqual(confirmed.data['booking']['status'], 'confirmed')
            self.assertEqual(confirmed.data['booking']['payment_status'], 'succeeded')

    def test_payment_failure_keeps_the_hold(self):
        self.stripe.fail_with = 503
        response = self.create_booking(payment_provider='stripe')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['payment'], {'error': PAYMENT_NOT_COMPLETED})
        number = response.data['booking']['booking_number']

        self.stripe.fail_with = None
        retry = self.client.post(f'/api/bookings/{number}/pay/', {'payment_provider': 'stripe'}, format='json')
        self.assertEqual(retry.status_code, status.HTTP_200_OK)
        self.assertTrue(retry.data['payment']['redirect_url'])

    def test_pay_reports_provider_outage(self):
        number = self.create_booking().data['booking']['booking_number']
        self.stripe.fail_with = 503
        response = self.client.post(f'/api/bookings/{number}/pay/', {'payment_provider': 'stripe'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertEqual(response.data, {'error': PAYMENT_NOT_COMPLETED})

    def test_webhook_confirms_booking(self):
        response = self.create_booking(payment_provider='stripe')
        number = response.data['booking']['booking_number']
        reference = response.data['payment']['reference']
        self.stripe.pay(reference)

        event = {'type': 'checkout.session.completed', 'data': {'object': {'id': reference}}}
        callback = self.client.post('/api/payments/stripe/callback/', event, format='json')
        self.assertEqual(callback.status_code, status.HTTP_200_OK)
        self.assertTrue(callback.data['processed'])
        self.assertEqual(Booking.objects.get(booking_number=number).status, Booking.Status.CONFIRMED)

        ignored = self.client.post('/api/payments/stripe/callback/', {'type': 'invoice.paid'}, format='json')
        self.assertFalse(ignored.data['processed'])

    def test_lifecycle_endpoints(self):
        number = self.create_booking().data['booking']['booking_number']

        early = self.client.post(f'/api/bookings/{number}/check_in/')
        self.assertEqual(early.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(early.data['current_status'], 'pending_payment')
        self.assertEqual(early.data['attempted_status'], 'checked_in')

        cancelled = self.client.post(f'/api/bookings/{number}/cancel/', {'reason': 'plans changed'}, format='json')
        self.assertEqual(cancelled.status_code, status.HTTP_200_OK)
        self.assertEqual(cancelled.data['status'], 'cancelled')

        again = self.client.post(f'/api/bookings/{number}/cancel/')
        self.assertEqual(again.status_code, status.HTTP_409_CONFLICT)

    def test_unknown_booking(self):
        response = self.client.get('/api/bookings/BK000/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data, {'error': 'Booking not found'})
