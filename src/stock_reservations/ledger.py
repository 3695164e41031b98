"""
Stock Ledger: the only writer of StockRecord.stock and StockRecord.reserved.

Every mutation is a single conditional UPDATE scoped to one SKU, so two
workers racing for the last unit are resolved by the database: the loser's
WHERE clause no longer matches and it updates zero rows. Nothing here reads a
counter and writes it back.
"""
import logging
from dataclasses import dataclass

from django.db import transaction
from django.db.models import F, Sum, Value
from django.db.models.functions import Coalesce, Greatest
from django.utils import timezone

from .exceptions import ReservationMismatch, StockInsufficient, UnknownSku
from .locking import exclusive
from .models import Reservation, ReservationStatus, StockRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Availability:
    sku: str
    available: int
    stock: int
    reserved: int


@dataclass(frozen=True)
class RepairResult:
    sku: str
    before: int
    after: int

    @property
    def drifted(self) -> bool:
        return self.before != self.after


def check_quantity(quantity) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValueError(f"quantity must be a positive integer, got {quantity!r}")


class StockLedger:

    def _get(self, sku: str) -> StockRecord:
        try:
            return StockRecord.objects.get(sku=sku)
        except StockRecord.DoesNotExist:
            raise UnknownSku(sku) from None

    def add_sku(self, sku: str, stock: int = 0, *, product_ref: str = "", size: str = "") -> StockRecord:
        """
        Register a SKU supplied by the catalog.

        An existing record is returned unchanged; its counters are never reset.
        """
        if stock < 0:
            raise ValueError(f"stock must be >= 0, got {stock!r}")
        record, created = StockRecord.objects.get_or_create(
            sku=sku,
            defaults={"stock": stock, "product_ref": product_ref, "size": size},
        )
        if created:
            logger.info(f"Registered sku {sku} with stock={stock}")
        return record

    def restock(self, sku: str, quantity: int) -> None:
        """Add physically received units to a SKU."""
        check_quantity(quantity)
        updated = StockRecord.objects.filter(sku=sku).update(
            stock=F("stock") + quantity, updated_at=timezone.now()
        )
        if not updated:
            raise UnknownSku(sku)
        logger.info(f"Restocked sku {sku} by {quantity}")

    def availability(self, sku: str) -> Availability:
        """
        Read-only snapshot of a SKU.

        Eventually consistent with in-flight reservations: holds past their
        expiry still count until a sweep releases them.
        """
        record = self._get(sku)
        return Availability(
            sku=record.sku,
            available=record.available,
            stock=record.stock,
            reserved=record.reserved,
        )

    def try_reserve(self, sku: str, quantity: int) -> None:
        """
        Hold `quantity` units if `stock - reserved >= quantity`.

        Raises
        ------
        StockInsufficient
            With the availability observed after the update matched nothing.
        UnknownSku
            If the SKU has no stock record.
        """
        check_quantity(quantity)
        updated = StockRecord.objects.filter(
            sku=sku, stock__gte=F("reserved") + quantity
        ).update(reserved=F("reserved") + quantity, updated_at=timezone.now())

        if updated:
            logger.debug(f"Reserved {quantity} of sku {sku}")
            return

        record = self._get(sku)
        logger.info(
            f"Reserve refused for sku {sku}: requested={quantity}, available={record.available}"
        )
        raise StockInsufficient(sku, requested=quantity, available=record.available)

    def confirm(self, sku: str, quantity: int) -> None:
        """
        Turn a hold into a sale: decrement both `stock` and `reserved`.

        Requires `reserved >= quantity` (and therefore enough stock). Anything
        else means the hold was already resolved or the counters drifted, and
        is reported instead of clamped.
        """
        check_quantity(quantity)
        updated = StockRecord.objects.filter(
            sku=sku, reserved__gte=quantity, stock__gte=quantity
        ).update(
            stock=F("stock") - quantity,
            reserved=F("reserved") - quantity,
            updated_at=timezone.now(),
        )

        if updated:
            logger.debug(f"Confirmed {quantity} of sku {sku}")
            return

        record = self._get(sku)
        logger.error(
            f"Confirm mismatch for sku {sku}: quantity={quantity}, "
            f"stock={record.stock}, reserved={record.reserved}"
        )
        raise ReservationMismatch(
            sku,
            quantity,
            detail=f"stock={record.stock}, reserved={record.reserved}",
        )

    def release(self, sku: str, quantity: int) -> None:
        """
        Return held units to available stock, flooring `reserved` at zero.

        Releasing more than is held is not an error: an expiry and a cancel
        can both reach the same units, and a repair may already have removed
        them.
        """
        check_quantity(quantity)
        updated = StockRecord.objects.filter(sku=sku).update(
            reserved=Greatest(F("reserved") - quantity, Value(0)),
            updated_at=timezone.now(),
        )
        if not updated:
            raise UnknownSku(sku)
        logger.debug(f"Released {quantity} of sku {sku}")

    def repair(self, sku: str) -> RepairResult:
        """
        Recompute `reserved` from the SKU's active reservations and store it.

        The stock row is locked first. Reservation changes always touch this
        row inside the same transaction, so the sum read here cannot miss a
        hold that is being taken or resolved concurrently. Running it twice
        gives the same result.
        """
        with transaction.atomic():
            try:
                record = StockRecord.objects.select_for_update().get(sku=sku)
            except StockRecord.DoesNotExist:
                raise UnknownSku(sku) from None

            held = Reservation.objects.filter(
                sku=sku, status=ReservationStatus.ACTIVE
            ).aggregate(total=Coalesce(Sum("quantity"), 0))["total"]

            result = RepairResult(sku=sku, before=record.reserved, after=held)
            if result.drifted:
                record.reserved = held
                record.save(update_fields=["reserved", "updated_at"])

        if result.drifted:
            logger.warning(
                f"Repaired reserved counter for sku {sku}: {result.before} -> {result.after}"
            )
        return result

    @exclusive(key="stock-reservations:repair-all")
    def repair_all(self) -> list[RepairResult]:
        """
        Repair every SKU. Returns None if another worker is already running it.
        """
        skus = list(StockRecord.objects.values_list("sku", flat=True))
        results = [self.repair(sku) for sku in skus]

        drifted = sum(1 for result in results if result.drifted)
        logger.info(f"Repair pass checked {len(results)} skus, corrected {drifted}")
        return results
