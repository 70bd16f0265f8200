from django.db import models
from django.db.models import F, Q
from django.core.validators import MinValueValidator


class RoomType(models.Model):
    name = models.CharField(max_length=150)
    price_cents = models.PositiveIntegerField(validators=[MinValueValidator(0)])
    monthly_price_cents = models.PositiveIntegerField(default=0)
    max_guests = models.PositiveIntegerField(default=2)
    total_rooms = models.PositiveIntegerField(default=1)
    is_active = models.BooleanField(default=True)

    def __str__(self):
        return self.name


class IndividualRoom(models.Model):
    room_type = models.ForeignKey(RoomType, on_delete=models.PROTECT, related_name="rooms")
    number = models.CharField(max_length=20, unique=True)
    floor = models.IntegerField(default=1)
    building = models.CharField(max_length=100, blank=True)
    is_active = models.BooleanField(default=True)
    # bumped on every successful claim
    version = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["number"]

    def __str__(self):
        return self.number


class PromoCode(models.Model):
    class DiscountType(models.TextChoices):
        PERCENTAGE = "percentage"
        FIXED = "fixed"

    code = models.CharField(max_length=50, unique=True)
    discount_type = models.CharField(max_length=10, choices=DiscountType.choices)
    # percent for PERCENTAGE, minor units for FIXED
    discount_value = models.PositiveIntegerField()
    valid_from = models.DateField(null=True, blank=True)
    valid_to = models.DateField(null=True, blank=True)
    max_uses = models.PositiveIntegerField(null=True, blank=True)
    used_count = models.PositiveIntegerField(default=0)
    min_nights = models.PositiveIntegerField(default=1)
    min_amount_cents = models.PositiveIntegerField(default=0)
    applicable_room_types = models.ManyToManyField(RoomType, blank=True, related_name="promo_codes")
    is_default = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)

    def save(self, *args, **kwargs):
        self.code = self.code.upper()
        super().save(*args, **kwargs)

    def __str__(self):
        return self.code


class Booking(models.Model):
    class Status(models.TextChoices):
        PENDING_PAYMENT = "pending_payment"
        CONFIRMED = "confirmed"
        CHECKED_IN = "checked_in"
        CHECKED_OUT = "checked_out"
        EXPIRED = "expired"
        CANCELLED = "cancelled"

    # statuses that keep the room out of circulation
    HOLDING_STATUSES = (Status.PENDING_PAYMENT, Status.CONFIRMED, Status.CHECKED_IN)

    booking_number = models.CharField(max_length=32, unique=True)
    room_type = models.ForeignKey(RoomType, on_delete=models.PROTECT, related_name="bookings")
    room = models.ForeignKey(
        IndividualRoom, on_delete=models.PROTECT, related_name="bookings", null=True, blank=True
    )
    check_in = models.DateField()
    check_out = models.DateField()  # exclusive
    nights = models.PositiveIntegerField()
    guest_name = models.CharField(max_length=150)
    guest_email = models.EmailField()
    guest_phone = models.CharField(max_length=50, blank=True)
    guest_count = models.PositiveIntegerField(default=1)
    special_requests = models.TextField(blank=True)
    room_price_cents = models.PositiveIntegerField()
    promo_code = models.CharField(max_length=50, blank=True)
    discount_cents = models.PositiveIntegerField(default=0)
    total_cents = models.PositiveIntegerField()
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING_PAYMENT)
    payment_provider = models.CharField(max_length=30, blank=True)
    payment_reference = models.CharField(max_length=100, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    confirmed_at = models.DateTimeField(null=True, blank=True)
    checked_in_at = models.DateTimeField(null=True, blank=True)
    checked_out_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.CharField(max_length=255, blank=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(check_out__gt=F("check_in")),
                name="booking_check_out_after_check_in",
            ),
        ]
        indexes = [
            models.Index(fields=["room", "status"]),
            models.Index(fields=["status", "expires_at"]),
        ]

    def __str__(self):
        return f"{self.booking_number} ({self.status})"

    @property
    def is_holding(self):
        return self.status in self.HOLDING_STATUSES


class PaymentAttempt(models.Model):
    class Status(models.TextChoices):
        CREATED = "created"
        SUCCEEDED = "succeeded"
        FAILED = "failed"

    booking = models.ForeignKey(Booking, on_delete=models.CASCADE, related_name="payment_attempts")
    provider = models.CharField(max_length=30)
    provider_reference = models.CharField(max_length=100)
    amount_cents = models.PositiveIntegerField()
    currency = models.CharField(max_length=10)
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.CREATED)
    failure_reason = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["provider", "provider_reference"],
                name="payment_attempt_unique_reference",
            ),
            models.UniqueConstraint(
                fields=["booking"],
                condition=Q(status="succeeded"),
                name="payment_attempt_single_success",
            ),
        ]

    def __str__(self):
        return f"{self.provider}:{self.provider_reference} ({self.status})"
