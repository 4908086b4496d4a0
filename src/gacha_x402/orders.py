"""Order ids and nonces that bind a 402 requirement to its resubmission."""

from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from .constants import DEFAULT_ORDER_TTL
from .errors import PaymentVerificationFailed
from .models import PaymentRequirement

logger = logging.getLogger(__name__)

# Expired orders are kept this long so late resubmissions get a precise error.
ORDER_RETENTION_SECONDS = 3600.0


@dataclass
class Order:
    order_id: str
    nonce: str
    device_id: str
    command: str
    requirement: PaymentRequirement
    expires_at: float
    created_at: float = field(default_factory=time.time)
    used: bool = False
    tx_hash: Optional[str] = None


class OrderBook:
    def __init__(
        self,
        ttl_seconds: float = DEFAULT_ORDER_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._orders: Dict[str, Order] = {}
        self._lock = threading.Lock()

    def issue(self, device_id: str, command: str, requirement: PaymentRequirement) -> PaymentRequirement:
        """Attach a fresh order id and nonce to ``requirement`` and remember it."""
        now = self._clock()
        order_id = f"ord_{secrets.token_hex(16)}"
        nonce = f"nx_{secrets.token_hex(16)}"
        expires_at = now + self.ttl_seconds
        issued = replace(
            requirement,
            order_id=order_id,
            nonce=nonce,
            expires_at=datetime.fromtimestamp(expires_at, timezone.utc).isoformat().replace("+00:00", "Z"),
        )
        with self._lock:
            self._prune(now)
            self._orders[order_id] = Order(
                order_id=order_id,
                nonce=nonce,
                device_id=device_id,
                command=command,
                requirement=issued,
                expires_at=expires_at,
                created_at=now,
            )
        return issued

    def validate(self, order_id: str, nonce: Optional[str], device_id: str, command: str) -> Order:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise PaymentVerificationFailed("Order not found")
            if order.used:
                raise PaymentVerificationFailed("Order already used")
            if order.nonce != nonce:
                raise PaymentVerificationFailed("Invalid nonce")
            if order.expires_at < self._clock():
                raise PaymentVerificationFailed("Order expired")
            if order.device_id != device_id or order.command != command:
                raise PaymentVerificationFailed("Order was issued for a different command")
            return order

    def consume(self, order_id: str, tx_hash: Optional[str] = None) -> None:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.used:
                raise PaymentVerificationFailed("Order already used")
            order.used = True
            order.tx_hash = tx_hash

    def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            return self._orders.get(order_id)

    def prune(self) -> int:
        with self._lock:
            return self._prune(self._clock())

    def _prune(self, now: float) -> int:
        stale = [
            order_id
            for order_id, order in self._orders.items()
            if now > order.expires_at + ORDER_RETENTION_SECONDS
        ]
        for order_id in stale:
            del self._orders[order_id]
        if stale:
            logger.info("pruned %d expired orders", len(stale))
        return len(stale)

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        with self._lock:
            orders = list(self._orders.values())
        used = sum(1 for order in orders if order.used)
        expired = sum(1 for order in orders if not order.used and order.expires_at < now)
        return {
            "totalOrders": len(orders),
            "activeOrders": len(orders) - used - expired,
            "usedOrders": used,
            "expiredOrders": expired,
        }
