from django.apps import AppConfig


class StockReservationsConfig(AppConfig):
    name = "stock_reservations"
    label = "stock_reservations"
    verbose_name = "Stock reservations"
    default_auto_field = "django.db.models.BigAutoField"
