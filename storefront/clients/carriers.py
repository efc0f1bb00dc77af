"""Shipping carrier helpers: locally generated tracking numbers."""
import secrets
import string

from ..schemas import Carrier

_ALNUM = string.ascii_uppercase + string.digits


def _random(alphabet: str, length: int) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_tracking_number(carrier: Carrier) -> str:
    """
    Generate a tracking number in the carrier's format when none was supplied.

    Args:
        carrier: Shipping carrier

    Returns:
        Prefixed pseudo-random tracking number
    """
    carrier = Carrier(carrier)
    if carrier == Carrier.UPS:
        return f"1Z{_random(_ALNUM, 16)}"
    if carrier == Carrier.FEDEX:
        return _random(string.digits, 12)
    if carrier == Carrier.USPS:
        return f"94{_random(string.digits, 20)}"
    if carrier == Carrier.DHL:
        return _random(string.digits, 10)
    raise ValueError(f"Unsupported carrier: {carrier}")
