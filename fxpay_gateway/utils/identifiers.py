"""Human-readable identifiers for payments, refunds, settlements and transfers"""

import secrets
import string
import time
from datetime import datetime

_BASE36 = string.digits + string.ascii_uppercase


def to_base36(value: int) -> str:
    """Encode a non-negative integer in upper-case base 36"""
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def _millis() -> int:
    return int(time.time() * 1000)


def generate_transaction_id() -> str:
    """TXN-<base36 timestamp>-<random>"""
    return f"TXN-{to_base36(_millis())}-{_random_suffix(6)}"


def generate_refund_id() -> str:
    return f"REF-{to_base36(_millis())}-{_random_suffix(4)}"


def generate_settlement_id(now: datetime) -> str:
    """STL-<yyyymmdd>-<random>"""
    return f"STL-{now.strftime('%Y%m%d')}-{_random_suffix(6)}"


def generate_transfer_reference() -> str:
    return f"TRF-{to_base36(_millis())}-{_random_suffix(4)}"


def generate_batch_id(now: datetime) -> str:
    return f"BATCH-{now.isoformat().replace(':', '-').replace('.', '-')}"
