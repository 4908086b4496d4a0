"""Wire-level data model for the x402 device command flow."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from .constants import USDC

JsonDict = Dict[str, Any]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _pick(payload: JsonDict, keys: Iterable[str], default: Any = None) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return f"{value:f}"
    return str(value)


def _compact(payload: JsonDict) -> JsonDict:
    return {k: v for k, v in payload.items() if v is not None}


@dataclass(frozen=True)
class PaymentRequirement:
    """Payment terms a gateway issues for one command (one ``accepts`` entry)."""

    amount: str
    network: str
    recipient: str
    currency: str = USDC
    asset: Optional[str] = None
    scheme: str = "exact"
    order_id: Optional[str] = None
    nonce: Optional[str] = None
    expires_at: Optional[str] = None
    # Set by the negotiator when the 402 body was unusable and defaults were applied.
    degraded: bool = field(default=False, compare=False)

    @classmethod
    def from_payload(cls, payload: JsonDict) -> "PaymentRequirement":
        amount = _as_str(_pick(payload, ["amount", "maxAmountRequired"]))
        network = _as_str(payload.get("network"))
        recipient = _as_str(_pick(payload, ["recipient", "payTo", "pay_to"]))
        if not all([amount, network, recipient]):
            raise ValueError("payment requirement missing amount, network or recipient")
        return cls(
            amount=amount,
            network=network,
            recipient=recipient,
            currency=_as_str(payload.get("currency")) or USDC,
            asset=_as_str(payload.get("asset")),
            scheme=_as_str(payload.get("scheme")) or "exact",
            order_id=_as_str(_pick(payload, ["orderId", "order_id"])),
            nonce=_as_str(payload.get("nonce")),
            expires_at=_as_str(_pick(payload, ["expiresAt", "nonceExp"])),
        )

    def to_payload(self) -> JsonDict:
        return _compact(
            {
                "scheme": self.scheme,
                "amount": self.amount,
                "currency": self.currency,
                "network": self.network,
                "recipient": self.recipient,
                "asset": self.asset,
                "orderId": self.order_id,
                "nonce": self.nonce,
                "expiresAt": self.expires_at,
            }
        )


@dataclass(frozen=True)
class PaymentProof:
    """What the client attaches in ``X-PAYMENT`` after paying on-chain."""

    tx_hash: str
    amount: str
    network: str
    payer: Optional[str] = None
    currency: str = USDC
    recipient: Optional[str] = None
    device_id: Optional[str] = None
    command: Optional[str] = None
    order_id: Optional[str] = None
    nonce: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: JsonDict) -> "PaymentProof":
        metadata = payload.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        tx_hash = _as_str(_pick(payload, ["txHash", "transactionHash"]) or metadata.get("txHash"))
        amount = _as_str(payload.get("amount"))
        network = _as_str(payload.get("network"))
        if not all([tx_hash, amount, network]):
            raise ValueError("payment proof missing txHash, amount or network")
        return cls(
            tx_hash=tx_hash,
            amount=amount,
            network=network,
            payer=_as_str(payload.get("payer") or metadata.get("walletAddress")),
            currency=_as_str(payload.get("currency")) or USDC,
            recipient=_as_str(payload.get("recipient")),
            device_id=_as_str(metadata.get("deviceId")),
            command=_as_str(metadata.get("command")),
            order_id=_as_str(metadata.get("orderId")),
            nonce=_as_str(metadata.get("nonce")),
        )

    def to_payload(self) -> JsonDict:
        return _compact(
            {
                "txHash": self.tx_hash,
                "amount": self.amount,
                "currency": self.currency,
                "network": self.network,
                "payer": self.payer,
                "recipient": self.recipient,
                "metadata": _compact(
                    {
                        "deviceId": self.device_id,
                        "command": self.command,
                        "orderId": self.order_id,
                        "nonce": self.nonce,
                    }
                ),
            }
        )


@dataclass(frozen=True)
class PaymentResponse:
    """Settlement summary returned in ``X-PAYMENT-RESPONSE``."""

    payment_id: str
    tx_hash: str
    amount: str
    network: str
    currency: str = USDC
    timestamp: str = field(default_factory=utc_now_iso)

    @classmethod
    def from_payload(cls, payload: JsonDict) -> "PaymentResponse":
        return cls(
            payment_id=str(_pick(payload, ["paymentId", "payment_id"], "")),
            tx_hash=str(_pick(payload, ["txHash", "transaction"], "")),
            amount=_as_str(payload.get("amount")) or "",
            network=str(payload.get("network") or ""),
            currency=str(payload.get("currency") or USDC),
            timestamp=str(payload.get("timestamp") or ""),
        )

    def to_payload(self) -> JsonDict:
        return {
            "paymentId": self.payment_id,
            "txHash": self.tx_hash,
            "amount": self.amount,
            "currency": self.currency,
            "network": self.network,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class DeviceCommandRequest:
    device_id: str
    command: str
    wallet_address: Optional[str] = None


@dataclass
class DeviceResponse:
    """A ``command_response`` message correlated to an in-flight command."""

    command_id: str
    device_id: str
    success: bool
    data: JsonDict = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def from_message(cls, message: JsonDict) -> "DeviceResponse":
        data = message.get("data")
        return cls(
            command_id=str(_pick(message, ["commandId", "correlationId", "requestId"], "")),
            device_id=str(message.get("deviceId") or ""),
            success=bool(message.get("success", False)),
            data=data if isinstance(data, dict) else {},
            error=_as_str(message.get("error")),
        )
