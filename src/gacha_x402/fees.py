"""Per-device fee records and the rules for changing them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .amounts import format_amount, parse_amount
from .constants import DEFAULT_DEVICE_FEES, DEFAULT_FEE, MAX_FEE, MIN_FEE, USDC, USDC_DECIMALS
from .errors import FeeLocked, InvalidFee, NotAuthorized, UnknownDevice
from .models import utc_now_iso
from .store import InMemoryStore, Store

logger = logging.getLogger(__name__)


@dataclass
class DeviceFee:
    device_id: str
    fee: Decimal
    currency: str = USDC
    locked: bool = False
    last_updated: str = field(default_factory=utc_now_iso)
    updated_by: Optional[str] = None

    @property
    def amount(self) -> str:
        """Fee rendered as the decimal string used in 402 requirements."""
        return format_amount(self.fee)

    @classmethod
    def from_record(cls, device_id: str, record: Dict[str, Any]) -> "DeviceFee":
        return cls(
            device_id=device_id,
            fee=parse_amount(record["fee"]),
            currency=record.get("currency", USDC),
            locked=bool(record.get("locked", False)),
            last_updated=record.get("lastUpdated") or utc_now_iso(),
            updated_by=record.get("updatedBy"),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "fee": str(self.fee),
            "currency": self.currency,
            "locked": self.locked,
            "lastUpdated": self.last_updated,
            "updatedBy": self.updated_by,
        }

    def to_payload(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "currentFee": float(self.fee),
            "currency": self.currency,
            "lastUpdated": self.last_updated,
            "feeLocked": self.locked,
        }


class FeeBook:
    """Fee lookup and mutation backed by a ``Store`` keyed by device id."""

    def __init__(
        self,
        store: Optional[Store] = None,
        defaults: Mapping[str, str | Decimal] = DEFAULT_DEVICE_FEES,
        locked_devices: Iterable[str] = (),
        admins: Iterable[str] = (),
    ) -> None:
        self._store = store or InMemoryStore()
        self._locked = set(locked_devices)
        self._admins = {address.lower() for address in admins}

        for device_id, fee in defaults.items():
            self._store.set_if_absent(
                device_id, DeviceFee(device_id=device_id, fee=parse_amount(fee)).to_record()
            )
        # The lock flag follows configuration, not whatever was persisted.
        for device_id, record in self._store.items():
            entry = DeviceFee.from_record(device_id, record)
            locked = device_id in self._locked
            if entry.locked != locked:
                entry.locked = locked
                self._store.set(device_id, entry.to_record())

    def find(self, device_id: str) -> Optional[DeviceFee]:
        record = self._store.get(device_id)
        if record is None:
            return None
        return DeviceFee.from_record(device_id, record)

    def get(self, device_id: str) -> DeviceFee:
        entry = self.find(device_id)
        if entry is None:
            raise UnknownDevice()
        return entry

    def ensure(self, device_id: str) -> DeviceFee:
        """Return the fee for ``device_id``, creating a default record if needed."""
        entry = DeviceFee(
            device_id=device_id,
            fee=DEFAULT_FEE,
            locked=device_id in self._locked,
        )
        if self._store.set_if_absent(device_id, entry.to_record()):
            logger.info("created default fee %s for device %s", entry.amount, device_id)
            return entry
        return self.get(device_id)

    def all(self) -> List[DeviceFee]:
        return [DeviceFee.from_record(device_id, record) for device_id, record in self._store.items()]

    def update(self, device_id: str, fee: Any, wallet_address: Optional[str] = None) -> DeviceFee:
        entry = self.get(device_id)
        if self._admins and (wallet_address or "").lower() not in self._admins:
            raise NotAuthorized()
        if entry.locked:
            raise FeeLocked()

        new_fee = self._validate(fee)
        entry.fee = new_fee
        entry.last_updated = utc_now_iso()
        entry.updated_by = wallet_address
        self._store.set(device_id, entry.to_record())
        logger.info("fee for %s set to %s by %s", device_id, entry.amount, wallet_address or "unknown")
        return entry

    @staticmethod
    def _validate(fee: Any) -> Decimal:
        if isinstance(fee, bool) or not isinstance(fee, (int, float, Decimal)):
            raise InvalidFee()
        try:
            value = parse_amount(Decimal(str(fee)))
        except ValueError as exc:
            raise InvalidFee() from exc
        if value < MIN_FEE or value > MAX_FEE:
            raise InvalidFee()
        # 402 amounts are whole USDC base units.
        if value.normalize().as_tuple().exponent < -USDC_DECIMALS:
            raise InvalidFee(f"Invalid fee. At most {USDC_DECIMALS} decimal places are allowed")
        return value
