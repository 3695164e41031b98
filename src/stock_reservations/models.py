import uuid

from django.db import models
from django.utils import timezone


class ReservationStatus(models.TextChoices):
    """Reservation lifecycle: active, then exactly one terminal state."""
    ACTIVE = "active", "Active"
    CONFIRMED = "confirmed", "Confirmed"
    RELEASED = "released", "Released"
    EXPIRED = "expired", "Expired"


class SessionStatus(models.TextChoices):
    CREATED = "created", "Created"
    AWAITING_PAYMENT = "awaiting_payment", "Awaiting payment"
    PAID = "paid", "Paid"
    CANCELLED = "cancelled", "Cancelled"
    EXPIRED = "expired", "Expired"


class ReleaseReason(models.TextChoices):
    CANCELLED = "cancelled", "Cancelled by buyer"
    PAYMENT_FAILED = "payment_failed", "Payment failed"
    ABANDONED = "abandoned", "Abandoned"
    ROLLBACK = "rollback", "Checkout rollback"
    EXPIRED = "expired", "Hold expired"


OPEN_SESSION_STATUSES = (SessionStatus.CREATED, SessionStatus.AWAITING_PAYMENT)
TERMINAL_SESSION_STATUSES = (
    SessionStatus.PAID,
    SessionStatus.CANCELLED,
    SessionStatus.EXPIRED,
)


class StockRecord(models.Model):
    """
    Authoritative per-SKU counters.

    `stock` is the physical count, `reserved` the units held by unconfirmed
    checkouts. Both are written only through StockLedger.
    """

    sku = models.CharField(max_length=64, unique=True)
    product_ref = models.CharField(max_length=64, blank=True, default="")
    size = models.CharField(max_length=32, blank=True, default="")
    stock = models.IntegerField(default=0)
    reserved = models.IntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["sku"]
        constraints = [
            models.CheckConstraint(
                name="stockrecord_stock_non_negative",
                condition=models.Q(stock__gte=0),
            ),
            models.CheckConstraint(
                name="stockrecord_reserved_non_negative",
                condition=models.Q(reserved__gte=0),
            ),
        ]

    @property
    def available(self) -> int:
        return max(0, self.stock - self.reserved)

    def __str__(self) -> str:
        return f"{self.sku} (stock={self.stock}, reserved={self.reserved})"


class CheckoutSession(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    status = models.CharField(
        max_length=20,
        choices=SessionStatus.choices,
        default=SessionStatus.CREATED,
    )
    stock_reserved = models.BooleanField(default=False)
    payment_ref = models.CharField(max_length=128, null=True, blank=True, db_index=True)
    closed_reason = models.CharField(max_length=32, blank=True, default="")
    expires_at = models.DateTimeField()
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["status", "created_at"], name="checkout_status_created_idx"),
            models.Index(fields=["status", "expires_at"], name="checkout_status_expires_idx"),
        ]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    def __str__(self) -> str:
        return f"CheckoutSession<{self.id}> {self.status}"


class CheckoutItem(models.Model):
    session = models.ForeignKey(
        CheckoutSession, on_delete=models.CASCADE, related_name="items"
    )
    position = models.PositiveSmallIntegerField()
    sku = models.CharField(max_length=64)
    quantity = models.IntegerField()

    class Meta:
        ordering = ["position"]
        constraints = [
            models.CheckConstraint(
                name="checkoutitem_quantity_positive",
                condition=models.Q(quantity__gt=0),
            ),
            models.UniqueConstraint(
                fields=["session", "position"], name="checkoutitem_unique_position"
            ),
        ]

    def __str__(self) -> str:
        return f"{self.sku} x{self.quantity}"


class Reservation(models.Model):
    """
    A time-boxed hold of `quantity` units of one SKU for one checkout session.

    `expires_at` is data, not a timer: the hold is released when a sweep or a
    later operation observes it.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    session = models.ForeignKey(
        CheckoutSession, on_delete=models.CASCADE, related_name="reservations"
    )
    sku = models.CharField(max_length=64)
    quantity = models.IntegerField()
    status = models.CharField(
        max_length=16,
        choices=ReservationStatus.choices,
        default=ReservationStatus.ACTIVE,
    )
    release_reason = models.CharField(
        max_length=32, choices=ReleaseReason.choices, blank=True, default=""
    )
    created_at = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField()
    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                name="reservation_quantity_positive",
                condition=models.Q(quantity__gt=0),
            ),
            models.UniqueConstraint(
                fields=["session", "sku"], name="reservation_unique_session_sku"
            ),
        ]
        indexes = [
            models.Index(fields=["status", "expires_at"], name="reservation_status_expires_idx"),
            models.Index(fields=["sku", "status"], name="reservation_sku_status_idx"),
        ]

    def __str__(self) -> str:
        return f"Reservation<{self.id}> {self.sku} x{self.quantity} ({self.status})"


class IdempotencyRecord(models.Model):
    """Marks an external payment event as processed, with its cached outcome."""

    key = models.CharField(max_length=128, unique=True)
    session = models.ForeignKey(
        CheckoutSession, on_delete=models.CASCADE, related_name="idempotency_records"
    )
    outcome = models.JSONField(default=dict)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    def __str__(self) -> str:
        return f"IdempotencyRecord<{self.key}>"
