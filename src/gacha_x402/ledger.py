"""Server-side record of every payment proof the gateway has accepted.

Keyed by lowercased transaction hash, so a hash can back at most one command.
Payments whose command never ran stay ``unfulfilled`` for manual
reconciliation; nothing here refunds.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import PaymentReplayed
from .models import PaymentProof, utc_now_iso
from .store import InMemoryStore, Store

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    CLAIMED = "claimed"
    VERIFIED = "verified"
    COMPLETED = "completed"
    UNFULFILLED = "unfulfilled"


@dataclass
class PaymentRecord:
    payment_id: str
    tx_hash: str
    device_id: str
    command: str
    amount: str
    currency: str
    network: str
    payer: Optional[str] = None
    status: PaymentStatus = PaymentStatus.CLAIMED
    reason: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "PaymentRecord":
        data = dict(record)
        data["status"] = PaymentStatus(data.get("status", PaymentStatus.CLAIMED.value))
        return cls(**data)

    def to_record(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.payment_id,
            "txHash": self.tx_hash,
            "deviceId": self.device_id,
            "command": self.command,
            "amount": self.amount,
            "currency": self.currency,
            "network": self.network,
            "payer": self.payer,
            "status": self.status.value,
            "reason": self.reason,
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
        }


class PaymentLedger:
    def __init__(self, store: Optional[Store] = None) -> None:
        self._store = store or InMemoryStore()

    @staticmethod
    def _key(tx_hash: str) -> str:
        return tx_hash.strip().lower()

    def claim(self, proof: PaymentProof, device_id: str, command: str) -> PaymentRecord:
        """Reserve ``proof.tx_hash`` for this command or raise ``PaymentReplayed``."""
        record = PaymentRecord(
            payment_id=str(uuid.uuid4()),
            tx_hash=proof.tx_hash,
            device_id=device_id,
            command=command,
            amount=proof.amount,
            currency=proof.currency,
            network=proof.network,
            payer=proof.payer,
        )
        if not self._store.set_if_absent(self._key(proof.tx_hash), record.to_record()):
            logger.warning("rejected replayed payment tx=%s device=%s", proof.tx_hash, device_id)
            raise PaymentReplayed()
        return record

    def release(self, record: PaymentRecord) -> None:
        current = self.get(record.tx_hash)
        if current is not None and current.status == PaymentStatus.CLAIMED:
            self._store.delete(self._key(record.tx_hash))

    def get(self, tx_hash: str) -> Optional[PaymentRecord]:
        raw = self._store.get(self._key(tx_hash))
        return PaymentRecord.from_record(raw) if raw is not None else None

    def mark_verified(self, record: PaymentRecord, amount: Optional[str] = None) -> PaymentRecord:
        record.status = PaymentStatus.VERIFIED
        if amount is not None:
            record.amount = amount
        self._save(record)
        return record

    def mark_completed(self, record: PaymentRecord) -> PaymentRecord:
        record.status = PaymentStatus.COMPLETED
        record.completed_at = utc_now_iso()
        self._save(record)
        return record

    def mark_unfulfilled(self, record: PaymentRecord, reason: str) -> PaymentRecord:
        record.status = PaymentStatus.UNFULFILLED
        record.reason = reason
        self._save(record)
        logger.warning(
            "paid command not fulfilled payment=%s tx=%s device=%s reason=%s",
            record.payment_id,
            record.tx_hash,
            record.device_id,
            reason,
        )
        return record

    def unfulfilled(self) -> List[PaymentRecord]:
        return [r for r in self._records() if r.status == PaymentStatus.UNFULFILLED]

    def by_payer(self, wallet_address: str) -> List[PaymentRecord]:
        wallet = wallet_address.lower()
        return [r for r in self._records() if (r.payer or "").lower() == wallet]

    def _records(self) -> List[PaymentRecord]:
        records = [PaymentRecord.from_record(raw) for _, raw in self._store.items()]
        return sorted(records, key=lambda r: r.created_at)

    def _save(self, record: PaymentRecord) -> None:
        self._store.set(self._key(record.tx_hash), record.to_record())
