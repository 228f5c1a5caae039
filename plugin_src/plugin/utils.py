import asyncio
import time
from decimal import Decimal, InvalidOperation
from fractions import Fraction
from typing import Any, Optional, Union

# largest amount CLN accepts for any msat field (u64)
MAX_MSAT_VALUE = 2**64 - 1


async def call_blocking_with_timeout(func, *args, timeout: Union[int, float], **kwargs) -> Any:
    """Runs a blocking call (e.g. pyln rpc) in a worker thread so it doesn't block the event loop"""
    return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=timeout)


def now_msecs() -> int:
    return int(time.time() * 1000)


def parse_fraction(value: Union[str, int, float, Fraction, Decimal]) -> Fraction:
    """Parses '10/7', '0.025', 0.025 or Decimal('0.025') into an exact Fraction"""
    if isinstance(value, Fraction):
        return value
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, (int, Decimal)):
        return Fraction(value)
    if isinstance(value, float):
        # go through the repr so 0.025 becomes 1/40 and not the binary approximation
        return Fraction(Decimal(repr(value)))
    value = str(value).strip()
    if "/" in value:
        num, den = value.split("/", 1)
        try:
            return Fraction(int(num.strip()), int(den.strip()))
        except ZeroDivisionError:
            raise ValueError(f"zero denominator: {value!r}")
    try:
        return Fraction(Decimal(value))
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}")


def is_msat_amount(value: Any) -> bool:
    """True for ints (not bools) in the range CLN accepts for msat fields"""
    return isinstance(value, int) and not isinstance(value, bool) and 0 < value <= MAX_MSAT_VALUE


def parse_msat(value: Any) -> Optional[int]:
    """Older pyln versions return Millisatoshi objects or '1000msat' strings instead of ints"""
    if value is None:
        return None
    if isinstance(value, str) and value.endswith("msat"):
        value = value[:-4]
    return int(value)
