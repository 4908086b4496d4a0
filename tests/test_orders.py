import pytest

from gacha_x402.errors import PaymentVerificationFailed
from gacha_x402.models import PaymentRequirement
from gacha_x402.orders import ORDER_RETENTION_SECONDS, OrderBook


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def _requirement():
    return PaymentRequirement(amount="0.010", network="eip155:84532", recipient="0x" + "11" * 20)


def test_issue_attaches_order_and_nonce():
    clock = FakeClock()
    book = OrderBook(ttl_seconds=300, clock=clock)
    issued = book.issue("ESP32_001", "play", _requirement())

    assert issued.order_id.startswith("ord_") and len(issued.order_id) == 36
    assert issued.nonce.startswith("nx_")
    assert issued.expires_at.endswith("Z")
    assert issued.amount == "0.010"
    assert book.get(issued.order_id).requirement == issued


def test_validate_and_consume():
    book = OrderBook(clock=FakeClock())
    issued = book.issue("ESP32_001", "play", _requirement())
    order = book.validate(issued.order_id, issued.nonce, "ESP32_001", "play")
    book.consume(order.order_id, "0xabc")

    with pytest.raises(PaymentVerificationFailed, match="already used"):
        book.validate(issued.order_id, issued.nonce, "ESP32_001", "play")
    with pytest.raises(PaymentVerificationFailed):
        book.consume(order.order_id, "0xdef")


@pytest.mark.parametrize(
    "order_id, nonce, device_id, command, message",
    [
        ("ord_missing", None, "ESP32_001", "play", "not found"),
        (None, "nx_wrong", "ESP32_001", "play", "nonce"),
        (None, None, "ESP32_002", "play", "different"),
        (None, None, "ESP32_001", "reset", "different"),
    ],
)
def test_validate_rejects_mismatches(order_id, nonce, device_id, command, message):
    book = OrderBook(clock=FakeClock())
    issued = book.issue("ESP32_001", "play", _requirement())
    with pytest.raises(PaymentVerificationFailed, match=message):
        book.validate(order_id or issued.order_id, nonce or issued.nonce, device_id, command)


def test_expired_orders_are_rejected_then_pruned():
    clock = FakeClock()
    book = OrderBook(ttl_seconds=300, clock=clock)
    issued = book.issue("ESP32_001", "play", _requirement())

    clock.now += 301
    with pytest.raises(PaymentVerificationFailed, match="expired"):
        book.validate(issued.order_id, issued.nonce, "ESP32_001", "play")
    assert book.stats()["expiredOrders"] == 1

    clock.now += ORDER_RETENTION_SECONDS
    assert book.prune() == 1
    assert book.get(issued.order_id) is None
