"""
Out-of-band sweeps that bring sessions and holds to a terminal state.

ReconciliationSweeper resolves awaiting-payment sessions whose webhook never
arrived by asking the payment provider. ExpirySweeper releases holds whose
window has passed. Both run on an interval, independent of request traffic,
and may run in several processes at once: every state change they make goes
through the coordinator's status-guarded transitions.
"""
import logging
from dataclasses import asdict, dataclass

from django.core.exceptions import ImproperlyConfigured
from django.utils.module_loading import import_string

from . import conf
from .checkout import CheckoutCoordinator
from .exceptions import PaymentStatusRejected, PaymentStatusUnavailable
from .locking import exclusive
from .models import CheckoutSession, IdempotencyRecord, ReleaseReason, SessionStatus
from .payments import HttpPaymentStatusClient, PaymentStatus, PaymentStatusProvider, RateLimitedProvider

logger = logging.getLogger(__name__)


def build_provider() -> PaymentStatusProvider:
    """
    Build the rate-limited payment-status provider from settings.

    PAYMENT_STATUS_PROVIDER (a dotted path to a zero-argument factory or
    class) wins over PAYMENT_STATUS_URL.
    """
    dotted = conf.get("PAYMENT_STATUS_PROVIDER")
    url = conf.get("PAYMENT_STATUS_URL")
    if dotted:
        provider = import_string(dotted)()
    elif url:
        provider = HttpPaymentStatusClient(url, timeout=conf.get("PAYMENT_STATUS_TIMEOUT"))
    else:
        raise ImproperlyConfigured(
            "STOCK_RESERVATIONS needs PAYMENT_STATUS_PROVIDER or PAYMENT_STATUS_URL "
            "to run reconciliation"
        )
    return RateLimitedProvider(provider, conf.get("PAYMENT_STATUS_MIN_INTERVAL"))


@dataclass
class SweepReport:
    examined: int = 0
    paid: int = 0
    cancelled: int = 0
    pending: int = 0
    unavailable: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class ReconciliationSweeper:

    def __init__(
        self,
        provider: PaymentStatusProvider,
        coordinator: CheckoutCoordinator | None = None,
        *,
        lookback=None,
        hard_deadline=None,
        batch_size: int | None = None,
        clock=None,
    ) -> None:
        self.provider = provider
        self.coordinator = coordinator or CheckoutCoordinator(clock=clock)
        self.clock = clock or self.coordinator.clock
        self.lookback = conf.as_timedelta(lookback) if lookback is not None else conf.get("RECONCILE_LOOKBACK")
        self.hard_deadline = (
            conf.as_timedelta(hard_deadline) if hard_deadline is not None
            else conf.get("RECONCILE_HARD_DEADLINE")
        )
        self.batch_size = batch_size or conf.get("RECONCILE_BATCH_SIZE")

    def candidates(self, now) -> list:
        """Awaiting-payment sessions older than the lookback window, oldest first."""
        return list(
            CheckoutSession.objects.filter(
                status=SessionStatus.AWAITING_PAYMENT,
                created_at__lt=now - self.lookback,
            ).order_by("created_at").values_list("pk", "payment_ref", "created_at")[: self.batch_size]
        )

    def run(self, now=None) -> SweepReport:
        """
        Reconcile one batch of sessions.

        Each session is independent: an unreachable provider or an unexpected
        error is logged and counted, and the session is retried next interval.
        No transaction is open while the provider is being called.
        """
        now = now or self.clock()
        report = SweepReport()

        for session_id, payment_ref, created_at in self.candidates(now):
            report.examined += 1
            past_deadline = created_at < now - self.hard_deadline
            try:
                self._reconcile(session_id, payment_ref, past_deadline, report)
            except PaymentStatusUnavailable as exc:
                report.unavailable += 1
                logger.warning(f"Checkout {session_id} left for the next sweep: {exc}")
            except Exception:
                report.errors += 1
                logger.exception(f"Reconciliation of checkout {session_id} failed")

        if report.examined:
            logger.info(f"Reconciliation sweep: {report.as_dict()}")
        return report

    def _reconcile(self, session_id, payment_ref, past_deadline: bool, report: SweepReport) -> None:
        if not payment_ref:
            if past_deadline:
                self._cancel(session_id, ReleaseReason.ABANDONED, report)
            else:
                report.pending += 1
            return

        try:
            status = self.provider.get_status(payment_ref)
        except PaymentStatusRejected as exc:
            logger.warning(f"Treating payment {payment_ref} as failed: {exc}")
            status = PaymentStatus.FAILED

        if status == PaymentStatus.PAID:
            outcome = self.coordinator.mark_paid(session_id, payment_ref)
            if outcome.changed:
                report.paid += 1
        elif status == PaymentStatus.FAILED:
            self._cancel(session_id, ReleaseReason.PAYMENT_FAILED, report)
        elif past_deadline:
            self._cancel(session_id, ReleaseReason.ABANDONED, report)
        else:
            report.pending += 1

    def _cancel(self, session_id, reason, report: SweepReport) -> None:
        if self.coordinator.cancel(session_id, reason).changed:
            report.cancelled += 1

    def purge_idempotency_records(self, now=None, retention=None) -> int:
        """Forget processed payment events older than the retention window."""
        now = now or self.clock()
        retention = conf.as_timedelta(retention) if retention is not None else conf.get("IDEMPOTENCY_RETENTION")
        deleted, _ = IdempotencyRecord.objects.filter(created_at__lt=now - retention).delete()
        if deleted:
            logger.info(f"Purged {deleted} idempotency records older than {retention}")
        return deleted


class ExpirySweeper:
    """
    Releases expired holds: whole sessions first, then any hold whose own
    expiry has passed, closing its session if it is still open.
    """

    def __init__(self, coordinator: CheckoutCoordinator | None = None, clock=None) -> None:
        self.coordinator = coordinator or CheckoutCoordinator(clock=clock)
        self.clock = clock or self.coordinator.clock

    @exclusive(key="stock-reservations:expiry-sweep")
    def run(self, now=None) -> dict:
        """
        Run one expiry pass. Returns None when another worker holds the sweep
        lock; correctness does not depend on the lock, it only avoids
        duplicate work.
        """
        now = now or self.clock()
        sessions = self.coordinator.expire_due(now=now)
        reservations = self.coordinator.expire_lapsed_holds(now=now)
        return {"sessions_expired": sessions, "reservations_expired": reservations}
