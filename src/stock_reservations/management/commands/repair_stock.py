from django.core.management.base import BaseCommand, CommandError

from stock_reservations.exceptions import UnknownSku
from stock_reservations.ledger import StockLedger


class Command(BaseCommand):
    help = "Recompute reserved counters from active reservations."

    def add_arguments(self, parser):
        parser.add_argument(
            "--sku",
            action="append",
            dest="skus",
            help="Repair only this SKU (repeatable). Default: every SKU.",
        )

    def handle(self, *args, **options):
        ledger = StockLedger()
        skus = options.get("skus")

        if skus:
            results = []
            for sku in skus:
                try:
                    results.append(ledger.repair(sku))
                except UnknownSku as exc:
                    raise CommandError(str(exc)) from exc
        else:
            results = ledger.repair_all()
            if results is None:
                raise CommandError("Another repair pass is already running.")

        for result in results:
            if result.drifted:
                self.stdout.write(f"{result.sku}: reserved {result.before} -> {result.after}")
        drifted = sum(1 for result in results if result.drifted)
        self.stdout.write(
            self.style.SUCCESS(f"Checked {len(results)} SKUs, corrected {drifted}.")
        )
