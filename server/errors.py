"""Typed failures for the escrow marketplace, plus shared input checks.

Every business-rule failure is one of the MarketError subclasses below.
The HTTP layer maps them onto status codes; callers of the managers can
catch them directly.
"""

from decimal import Context, Decimal, Inexact, InvalidOperation, Overflow, localcontext

from protocol import MAX_AMOUNT_DIGITS, MAX_AMOUNT_SCALE, MAX_PAGE_LIMIT, MONEY_PRECISION

AMOUNT_QUANTUM = Decimal(1).scaleb(-MAX_AMOUNT_SCALE)


class MarketError(Exception):
    """Base class. `code` is machine-readable, `status_code` HTTP-equivalent."""
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(MarketError):
    status_code = 400
    code = "VALIDATION_ERROR"


class ForbiddenError(MarketError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(MarketError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidStateError(MarketError):
    status_code = 409
    code = "INVALID_STATE"


class ConflictError(MarketError):
    status_code = 409
    code = "CONFLICT"


class StorageError(MarketError):
    """Persistence failure. Opaque to callers, possibly retryable."""
    status_code = 503
    code = "STORAGE_ERROR"


# --- Input checks ---

def normalize_address(value, field: str = "address") -> str:
    """Lowercase and strip an address. Empty or non-string -> ValidationError."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Missing required field: {field}", "VALIDATION_MISSING_FIELD")
    return value.strip().lower()


def optional_address(value, field: str = "address") -> str | None:
    if value is None or value == "":
        return None
    return normalize_address(value, field)


def require_text(value, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Missing required field: {field}", "VALIDATION_MISSING_FIELD")
    return value.strip()


def parse_amount(value, field: str = "amount", allow_zero: bool = False) -> Decimal:
    """Parse a monetary value into a finite Decimal.

    Accepts ints, floats and numeric strings. Booleans are rejected even
    though bool is an int subclass.
    """
    if value is None or value == "" or isinstance(value, bool):
        raise ValidationError(f"Missing required field: {field}", "VALIDATION_MISSING_FIELD")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", "VALIDATION_INVALID_VALUE")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number", "VALIDATION_INVALID_VALUE")
    if amount < 0 or (amount == 0 and not allow_zero):
        qualifier = "non-negative" if allow_zero else "positive"
        raise ValidationError(f"{field} must be {qualifier}", "VALIDATION_INVALID_VALUE")
    if amount.adjusted() >= MAX_AMOUNT_DIGITS:
        raise ValidationError(f"{field} exceeds {MAX_AMOUNT_DIGITS} integer digits", "VALIDATION_INVALID_VALUE")
    try:
        with money_context():
            amount.quantize(AMOUNT_QUANTUM)
    except Inexact:
        raise ValidationError(f"{field} has more than {MAX_AMOUNT_SCALE} decimal places", "VALIDATION_INVALID_VALUE")
    return amount


def money_context():
    """Decimal context for money arithmetic. Any rounding raises Inexact."""
    return localcontext(Context(prec=MONEY_PRECISION, traps=[Inexact, InvalidOperation, Overflow]))


def sum_amounts(values) -> Decimal:
    with money_context():
        return sum(values, Decimal("0"))


def check_page(limit: int, offset: int) -> tuple[int, int]:
    """Validate pagination parameters."""
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1 or limit > MAX_PAGE_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_LIMIT}", "VALIDATION_INVALID_VALUE")
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise ValidationError("offset must be a non-negative integer", "VALIDATION_INVALID_VALUE")
    return limit, offset
