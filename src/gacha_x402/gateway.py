"""Device Command Gateway: payment-gated bridge from HTTP to a device socket.

Request handling order for ``POST /devices/{id}/commands/{command}``:

1. the device must have a fee record, be online and support the command,
   so no payment is ever demanded for a command that cannot run;
2. without ``X-PAYMENT`` the answer is 402 with a requirement priced at the
   device's current fee;
3. with ``X-PAYMENT`` the proof is decoded, matched to its order, claimed in
   the ledger (one command per transaction hash) and verified on-chain;
4. exactly one command is dispatched and its correlated response returned.

A payment whose command then fails is left ``unfulfilled`` in the ledger.
Nothing is refunded and nothing is re-dispatched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Optional

from .codec import decode_payment_header, encode_payment_header
from .constants import (
    BASE_SEPOLIA,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_RECIPIENT,
    PAYMENT_RESPONSE_HEADER,
    get_default_asset,
)
from .devices import DeviceRegistry
from .errors import (
    DeviceCommandFailed,
    DeviceOffline,
    MalformedHeader,
    PaymentVerificationFailed,
    UnsupportedCommand,
)
from .fees import FeeBook
from .ledger import PaymentLedger, PaymentRecord
from .models import (
    DeviceCommandRequest,
    JsonDict,
    PaymentProof,
    PaymentRequirement,
    PaymentResponse,
    utc_now_iso,
)
from .orders import Order, OrderBook
from .verifier import PaymentVerifier

logger = logging.getLogger(__name__)


@dataclass
class GatewayResponse:
    status_code: int
    body: JsonDict
    headers: Dict[str, str] = field(default_factory=dict)


class CommandGateway:
    def __init__(
        self,
        fees: FeeBook,
        registry: DeviceRegistry,
        verifier: PaymentVerifier,
        *,
        orders: Optional[OrderBook] = None,
        ledger: Optional[PaymentLedger] = None,
        recipient: str = DEFAULT_RECIPIENT,
        network: str = BASE_SEPOLIA,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        require_order: bool = False,
    ) -> None:
        self.fees = fees
        self.registry = registry
        self.verifier = verifier
        self.orders = orders or OrderBook()
        self.ledger = ledger or PaymentLedger()
        self.recipient = recipient
        self.network = network
        self.command_timeout = command_timeout
        self.require_order = require_order
        self._asset = get_default_asset(network)["address"]

    def requirement_for(self, device_id: str) -> PaymentRequirement:
        """Payment terms for one command at the device's current fee."""
        fee = self.fees.get(device_id)
        return PaymentRequirement(
            amount=fee.amount,
            network=self.network,
            recipient=self.recipient,
            currency=fee.currency,
            asset=self._asset,
        )

    async def handle_command(
        self,
        request: DeviceCommandRequest,
        payment_header: Optional[str] = None,
    ) -> GatewayResponse:
        device_id, command = request.device_id, request.command
        self.fees.get(device_id)
        self._check_available(device_id, command)

        if not payment_header:
            return self._payment_required(device_id, command)

        proof = self._read_proof(payment_header, request)
        order = self._match_order(proof, device_id, command)
        requirement = order.requirement if order is not None else self.requirement_for(device_id)

        record = self.ledger.claim(proof, device_id, command)
        try:
            verified = await self.verifier.verify(proof, requirement)
        except Exception:
            self.ledger.release(record)
            raise

        if order is not None:
            try:
                self.orders.consume(order.order_id, proof.tx_hash)
            except PaymentVerificationFailed:
                self.ledger.mark_unfulfilled(record, "order already used")
                raise
        if record.payer is None and verified.payer:
            record.payer = verified.payer
        self.ledger.mark_verified(record, verified.amount)
        logger.info(
            "payment verified payment=%s tx=%s amount=%s device=%s command=%s",
            record.payment_id,
            proof.tx_hash,
            verified.amount,
            device_id,
            command,
        )

        return await self._execute(record, request, order)

    def _check_available(self, device_id: str, command: str) -> None:
        if not self.registry.is_online(device_id):
            raise DeviceOffline()
        session = self.registry.get(device_id)
        if session is not None and not session.supports(command):
            raise UnsupportedCommand(f"Device {device_id} does not support command {command}")

    def _payment_required(self, device_id: str, command: str) -> GatewayResponse:
        requirement = self.orders.issue(device_id, command, self.requirement_for(device_id))
        logger.info(
            "402 issued device=%s command=%s amount=%s order=%s",
            device_id,
            command,
            requirement.amount,
            requirement.order_id,
        )
        body = {
            "message": "Payment Required",
            "error": "Payment required",
            "payment": {
                "accepts": [requirement.to_payload()],
                "metadata": {
                    "deviceId": device_id,
                    "command": command,
                    "timestamp": utc_now_iso(),
                },
            },
        }
        return GatewayResponse(402, body, {"WWW-Authenticate": "Payment"})

    def _read_proof(self, payment_header: str, request: DeviceCommandRequest) -> PaymentProof:
        payload = decode_payment_header(payment_header)
        try:
            proof = PaymentProof.from_payload(payload)
        except ValueError as exc:
            raise MalformedHeader(f"Invalid payment header: {exc}") from exc

        if proof.device_id and proof.device_id != request.device_id:
            raise PaymentVerificationFailed("Payment was made for a different device")
        if proof.command and proof.command != request.command:
            raise PaymentVerificationFailed("Payment was made for a different command")
        if proof.payer is None and request.wallet_address:
            proof = replace(proof, payer=request.wallet_address)
        return proof

    def _match_order(self, proof: PaymentProof, device_id: str, command: str) -> Optional[Order]:
        if proof.order_id:
            return self.orders.validate(proof.order_id, proof.nonce, device_id, command)
        if self.require_order:
            raise PaymentVerificationFailed("Payment is missing orderId")
        return None

    async def _execute(
        self,
        record: PaymentRecord,
        request: DeviceCommandRequest,
        order: Optional[Order],
    ) -> GatewayResponse:
        metadata = {
            "paymentId": record.payment_id,
            "txHash": record.tx_hash,
            "walletAddress": request.wallet_address,
            "orderId": order.order_id if order is not None else None,
        }
        try:
            response = await self.registry.dispatch(
                request.device_id,
                request.command,
                metadata,
                timeout=self.command_timeout,
            )
        except Exception as exc:
            self.ledger.mark_unfulfilled(record, getattr(exc, "code", type(exc).__name__))
            raise

        if not response.success:
            reason = response.error or "Device failed to execute command"
            self.ledger.mark_unfulfilled(record, reason)
            raise DeviceCommandFailed(reason)

        self.ledger.mark_completed(record)
        payment = PaymentResponse(
            payment_id=record.payment_id,
            tx_hash=record.tx_hash,
            amount=record.amount,
            network=record.network,
            currency=record.currency,
        )
        body = {
            "success": True,
            "message": f"Command {request.command} executed on {request.device_id}",
            "deviceId": request.device_id,
            "command": request.command,
            "result": response.data,
            "payment": payment.to_payload(),
        }
        return GatewayResponse(200, body, {PAYMENT_RESPONSE_HEADER: encode_payment_header(payment)})
