from dataclasses import fields, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .errors import ValidationError
from .models import Operation

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
SORT_KEYS = ("id", "date", "description", "amount")

# sqlite INTEGER range, for ids and amounts in cents
MAX_INT64 = 2**63 - 1

# fields never taken from a patch body
_IDENTITY_FIELDS = {"id", "bank_account", "labels"}


def amount_to_cents(value) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError("amount required", "amountrequired")
    try:
        d = Decimal(value.strip() if isinstance(value, str) else value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValidationError("amount invalid", "amountinvalid") from e
    if not d.is_finite():
        raise ValidationError("amount invalid", "amountinvalid")
    if abs(d) > Decimal(MAX_INT64).scaleb(-2):
        raise ValidationError("amount out of range", "amountinvalid")
    cents = (d * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    if (d * 100) != cents:
        raise ValidationError("amount supports up to 2 decimals", "amountscale")
    return int(cents)


def cents_to_amount(cents: int) -> Decimal:
    return Decimal(cents).scaleb(-2)


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    try:
        return value.astimezone(timezone.utc)
    except OverflowError as e:
        raise ValidationError("date out of range", "dateinvalid") from e


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC text, so lexical order equals chronological order."""
    value = to_utc(value)
    # strftime does not zero-pad years below 1000 on every platform
    return f"{value.year:04d}-{value:%m-%dT%H:%M:%S.%f}Z"


def parse_timestamp(text: str) -> datetime:
    return datetime.strptime(text, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def parse_sort(specs, allowed=SORT_KEYS) -> list[tuple[str, str]]:
    """Turn ``sort`` query values into ``[(key, direction), ...]``.

    Each value is ``key[,key...][,asc|desc]``. ``id ascending`` is appended
    as a tie-break unless ``id`` was requested explicitly.
    """
    order: list[tuple[str, str]] = []
    for spec in specs or ():
        parts = [p.strip() for p in spec.split(",") if p.strip()]
        if not parts:
            continue
        direction = "asc"
        if parts[-1].lower() in {"asc", "desc"}:
            direction = parts.pop().lower()
        for key in parts:
            if key not in allowed:
                raise ValidationError(f"cannot sort by {key!r}", "sortinvalid")
            if any(existing == key for existing, _ in order):
                continue
            order.append((key, direction))
    if not any(key == "id" for key, _ in order):
        order.append(("id", "asc"))
    return order


def merge_patch(existing: Operation, patch: Operation) -> Operation:
    """Overlay the non-null fields of ``patch`` onto ``existing``.

    An explicit null is treated like an absent field: it never clears a value.
    """
    changes = {
        f.name: getattr(patch, f.name)
        for f in fields(Operation)
        if f.name not in _IDENTITY_FIELDS and getattr(patch, f.name) is not None
    }
    return replace(existing, **changes)
