import logging
import re
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Generic, List, Optional, Tuple, Type, TypeVar, Union

from errors import RpcError

logger = logging.getLogger(__name__)

T = TypeVar("T")

WEI_PER_ETHER = 10 ** 18

_HEX_ADDRESS_RE = re.compile(r"^(0x)?[0-9a-fA-F]{40}$")
_HEX_QUANTITY_RE = re.compile(r"^0x[0-9a-fA-F]+$")


@dataclass
class PollResult(Generic[T]):
    """Outcome of a bounded polling loop."""

    succeeded: bool
    attempts: int
    value: Optional[T] = None
    errors: List[BaseException] = field(default_factory=list)

    @property
    def last_error(self) -> Optional[BaseException]:
        return self.errors[-1] if self.errors else None


@dataclass
class Backoff:
    """
    Bounded fixed-interval retry policy.

    `max_attempts` probes are made at most; the policy sleeps `interval`
    seconds between two consecutive probes, never after the last one.
    """

    max_attempts: int
    interval: float
    sleep: Callable[[float], None] = time.sleep
    retry_on: Tuple[Type[BaseException], ...] = (RpcError,)

    def poll(
        self,
        probe: Callable[[], T],
        *,
        success: Callable[[T], bool] = lambda value: True,
        label: str = "probe",
    ) -> PollResult[T]:
        errors: List[BaseException] = []
        for attempt in range(1, self.max_attempts + 1):
            try:
                value = probe()
            except self.retry_on as exc:
                errors.append(exc)
                logger.debug("%s attempt %s/%s failed: %s", label, attempt, self.max_attempts, exc)
            else:
                if success(value):
                    return PollResult(succeeded=True, attempts=attempt, value=value, errors=errors)
                logger.debug("%s attempt %s/%s not satisfied: %r", label, attempt, self.max_attempts, value)
            if attempt < self.max_attempts and self.interval > 0:
                self.sleep(self.interval)
        return PollResult(succeeded=False, attempts=self.max_attempts, errors=errors)


def strip_hex_prefix(value: str) -> str:
    return value[2:] if value[:2].lower() == "0x" else value


def normalize_address(address: str) -> str:
    """
    Returns the lowercase, 0x-prefixed form of a 20-byte hex address.
    Raises ValueError for anything else.
    """
    if not isinstance(address, str) or not _HEX_ADDRESS_RE.match(address.strip()):
        raise ValueError(f"Invalid Ethereum address: {address!r}")
    return "0x" + strip_hex_prefix(address.strip()).lower()


def hex_quantity(value: int) -> str:
    if value < 0:
        raise ValueError(f"Quantity cannot be negative: {value}")
    return hex(value)


def parse_hex_quantity(value: Any) -> int:
    """Decodes an Ethereum JSON-RPC QUANTITY ("0x1a") into an int."""
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not _HEX_QUANTITY_RE.match(value):
        raise ValueError(f"Not a hex quantity: {value!r}")
    return int(value, 16)


def to_wei_hex(balance: Union[int, str]) -> str:
    """
    Normalizes a genesis balance to a 0x-prefixed hex wei amount.

    Ints are wei, "0x" strings are hex wei, other strings are decimal ether
    amounts ("100", "0.5").
    """
    if isinstance(balance, bool):
        raise ValueError(f"Invalid balance: {balance!r}")
    if isinstance(balance, int):
        return hex_quantity(balance)
    if not isinstance(balance, str) or not balance.strip():
        raise ValueError(f"Invalid balance: {balance!r}")
    text = balance.strip()
    if text[:2].lower() == "0x":
        if not _HEX_QUANTITY_RE.match("0x" + text[2:]):
            raise ValueError(f"Invalid hex balance: {balance!r}")
        return hex_quantity(int(text, 16))
    try:
        ether = Decimal(text)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid balance: {balance!r}") from exc
    wei = ether * WEI_PER_ETHER
    if wei < 0 or wei != wei.to_integral_value():
        raise ValueError(f"Balance must be a non-negative whole number of wei: {balance!r}")
    return hex_quantity(int(wei))
