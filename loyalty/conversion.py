from decimal import Decimal, ROUND_HALF_UP

from .errors import InvalidAmountError


def require_points(value, field: str = "amount") -> int:
    # bool is an int subclass; True must not count as one point
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmountError(f"{field} must be a whole number of points, got {value!r}")
    if value <= 0:
        raise InvalidAmountError(f"{field} must be greater than zero, got {value}")
    return value


def points_to_discount(points: int, point_value: Decimal, decimals: int = 2) -> Decimal:
    """Monetary value of ``points``, rounded half-up to the currency's minor unit."""
    exponent = Decimal(1).scaleb(-decimals)
    return (Decimal(points) * Decimal(point_value)).quantize(exponent, rounding=ROUND_HALF_UP)

