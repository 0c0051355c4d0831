import pytest

from errors import RpcError
from tests.fakes import SleepRecorder
from utils import Backoff, normalize_address, parse_hex_quantity, to_wei_hex


def _failing(times, value=7):
    state = {"calls": 0}

    def probe():
        state["calls"] += 1
        if state["calls"] <= times:
            raise RpcError("http://x", "eth_blockNumber", "refused")
        return value

    return probe, state


def test_poll_succeeds_after_transient_errors():
    sleeper = SleepRecorder()
    probe, state = _failing(2)
    result = Backoff(max_attempts=5, interval=1.5, sleep=sleeper).poll(probe)
    assert result.succeeded
    assert result.value == 7
    assert result.attempts == 3
    assert len(result.errors) == 2
    assert sleeper.calls == [1.5, 1.5]


def test_poll_makes_exactly_max_attempts_and_never_sleeps_after_last():
    sleeper = SleepRecorder()
    probe, state = _failing(100)
    result = Backoff(max_attempts=4, interval=2.0, sleep=sleeper).poll(probe)
    assert not result.succeeded
    assert state["calls"] == 4
    assert result.attempts == 4
    assert sleeper.calls == [2.0, 2.0, 2.0]
    assert isinstance(result.last_error, RpcError)


def test_poll_respects_success_predicate():
    values = iter([-1, -1, 3])
    result = Backoff(max_attempts=5, interval=0).poll(lambda: next(values), success=lambda v: v >= 0)
    assert result.succeeded and result.value == 3 and result.attempts == 3


def test_poll_zero_interval_does_not_sleep():
    sleeper = SleepRecorder()
    probe, _ = _failing(100)
    Backoff(max_attempts=3, interval=0, sleep=sleeper).poll(probe)
    assert sleeper.calls == []


def test_unexpected_exceptions_propagate():
    def probe():
        raise KeyError("boom")

    with pytest.raises(KeyError):
        Backoff(max_attempts=3, interval=0).poll(probe)


def test_normalize_address():
    assert normalize_address("FE3B557E8FB62B89F4916B721BE55CEB828DBD73") == "0xfe3b557e8fb62b89f4916b721be55ceb828dbd73"
    with pytest.raises(ValueError):
        normalize_address("0x1234")


def test_parse_hex_quantity():
    assert parse_hex_quantity("0x1a") == 26
    assert parse_hex_quantity(5) == 5
    with pytest.raises(ValueError):
        parse_hex_quantity("26")


@pytest.mark.parametrize(
    "balance, expected",
    [
        (1, "0x1"),
        ("0x10", "0x10"),
        ("1", hex(10 ** 18)),
        ("0.5", hex(5 * 10 ** 17)),
        ("0", "0x0"),
    ],
)
def test_to_wei_hex(balance, expected):
    assert to_wei_hex(balance) == expected


@pytest.mark.parametrize("balance", [True, "", "abc", "0xzz", -1, "1e-30"])
def test_to_wei_hex_rejects_bad_values(balance):
    with pytest.raises(ValueError):
        to_wei_hex(balance)
