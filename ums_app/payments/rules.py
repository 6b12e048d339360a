from datetime import timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP


def epoch_ms(moment):
    """Milliseconds since the epoch for a naive-UTC datetime."""
    return int(moment.replace(tzinfo=timezone.utc).timestamp() * 1000)


def format_receipt(moment, issued_count):
    return f"RCP{epoch_ms(moment)}{issued_count + 1:04d}"


def derive_payment_fields(status, receipt_number, paid_date, now, mint_receipt):
    """
    Receipt and paid date follow status: both exist only while completed.
    A completed payment keeps whatever receipt it already has; any other
    status wipes both, including a payment re-opened after completion.
    ``mint_receipt`` is only called when a new receipt is needed.
    """
    if status == "completed":
        return {
            "receipt_number": receipt_number or mint_receipt(now),
            "paid_date": paid_date or now,
        }
    return {"receipt_number": None, "paid_date": None}


def parse_amount(value):
    """Positive decimal with two places, or None when unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount


def format_amount(amount):
    # 1500 -> "1,500", 1500.5 -> "1,500.50"
    value = Decimal(str(amount or 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if value == value.to_integral_value():
        return f"{int(value):,}"
    return f"{value:,.2f}"
