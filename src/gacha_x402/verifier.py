"""Payment proof verification.

``ChainPaymentVerifier`` checks the named transaction against the chain before
any device command is dispatched: the receipt must exist and have succeeded,
be buried under enough blocks, and contain a USDC ``Transfer`` to the
recipient for at least the required amount.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

import httpx

from .amounts import from_base_units, parse_amount, to_base_units
from .constants import DEFAULT_ASSETS, DEFAULT_RPC_URLS, ERC20_TRANSFER_TOPIC, USDC
from .errors import PaymentVerificationFailed
from .models import PaymentProof, PaymentRequirement
from .rpc import JsonRpcClient, RpcError

logger = logging.getLogger(__name__)

TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class VerifiedPayment:
    tx_hash: str
    payer: Optional[str]
    amount: str
    base_units: int
    confirmations: Optional[int] = None
    block_number: Optional[int] = None


@dataclass(frozen=True)
class TransferLog:
    token: str
    sender: str
    recipient: str
    value: int


def check_proof_terms(proof: PaymentProof, requirement: PaymentRequirement) -> None:
    """Cheap consistency checks between the proof and the requirement."""
    if not TX_HASH_RE.match(proof.tx_hash):
        raise PaymentVerificationFailed("Invalid transaction hash")
    if proof.network != requirement.network:
        raise PaymentVerificationFailed(
            f"Payment network {proof.network} does not match {requirement.network}"
        )
    if proof.currency != USDC:
        raise PaymentVerificationFailed(f"Unsupported currency {proof.currency}")
    if proof.recipient and proof.recipient.lower() != requirement.recipient.lower():
        raise PaymentVerificationFailed("Payment recipient does not match")
    try:
        paid = parse_amount(proof.amount)
        due = parse_amount(requirement.amount)
    except ValueError as exc:
        raise PaymentVerificationFailed(f"Invalid payment amount: {exc}") from exc
    if paid < due:
        raise PaymentVerificationFailed(f"Payment amount {proof.amount} is below {requirement.amount}")


def parse_transfer_logs(receipt: Mapping) -> List[TransferLog]:
    transfers: List[TransferLog] = []
    for log in receipt.get("logs") or []:
        topics = log.get("topics") or []
        if len(topics) < 3 or str(topics[0]).lower() != ERC20_TRANSFER_TOPIC:
            continue
        try:
            value = int(log.get("data") or "0x0", 16)
        except ValueError:
            continue
        transfers.append(
            TransferLog(
                token=str(log.get("address", "")).lower(),
                sender="0x" + str(topics[1])[-40:].lower(),
                recipient="0x" + str(topics[2])[-40:].lower(),
                value=value,
            )
        )
    return transfers


class PaymentVerifier(ABC):
    @abstractmethod
    async def verify(self, proof: PaymentProof, requirement: PaymentRequirement) -> VerifiedPayment:
        """Return the verified payment or raise ``PaymentVerificationFailed``."""


class ChainPaymentVerifier(PaymentVerifier):
    def __init__(
        self,
        rpc_urls: Mapping[str, str] | None = None,
        *,
        min_confirmations: int = 1,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._rpc_urls: Dict[str, str] = dict(DEFAULT_RPC_URLS)
        if rpc_urls:
            self._rpc_urls.update(rpc_urls)
        self.min_confirmations = min_confirmations
        self._http_client = http_client
        self._clients: Dict[str, JsonRpcClient] = {}

    def _rpc(self, network: str) -> JsonRpcClient:
        client = self._clients.get(network)
        if client is None:
            rpc_url = self._rpc_urls.get(network)
            if not rpc_url:
                raise PaymentVerificationFailed(f"No RPC configured for network {network}")
            client = JsonRpcClient(rpc_url, http_client=self._http_client)
            self._clients[network] = client
        return client

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    async def verify(self, proof: PaymentProof, requirement: PaymentRequirement) -> VerifiedPayment:
        check_proof_terms(proof, requirement)
        token = (requirement.asset or DEFAULT_ASSETS.get(requirement.network, {}).get("address") or "").lower()
        if not token:
            raise PaymentVerificationFailed(f"No USDC contract known for {requirement.network}")
        required_units = to_base_units(requirement.amount)

        rpc = self._rpc(requirement.network)
        try:
            receipt = await rpc.get_transaction_receipt(proof.tx_hash)
            if not receipt:
                raise PaymentVerificationFailed("Transaction not found")
            if int(str(receipt.get("status", "0x0")), 16) != 1:
                raise PaymentVerificationFailed("Transaction failed")
            block_number = int(str(receipt["blockNumber"]), 16)
            confirmations = await rpc.block_number() - block_number
        except RpcError as exc:
            logger.warning("chain verification unavailable tx=%s: %s", proof.tx_hash, exc)
            raise PaymentVerificationFailed(f"Unable to verify transaction: {exc.rpc_message}") from exc

        if confirmations < self.min_confirmations:
            raise PaymentVerificationFailed(
                f"Insufficient confirmations: {confirmations}/{self.min_confirmations}"
            )

        recipient = requirement.recipient.lower()
        payer = proof.payer.lower() if proof.payer else None
        for transfer in parse_transfer_logs(receipt):
            if transfer.token != token or transfer.recipient != recipient:
                continue
            if payer is not None and transfer.sender != payer:
                continue
            if transfer.value < required_units:
                continue
            logger.info(
                "verified tx=%s amount=%s confirmations=%d",
                proof.tx_hash,
                from_base_units(transfer.value),
                confirmations,
            )
            return VerifiedPayment(
                tx_hash=proof.tx_hash,
                payer=transfer.sender,
                amount=f"{from_base_units(transfer.value):f}",
                base_units=transfer.value,
                confirmations=confirmations,
                block_number=block_number,
            )

        raise PaymentVerificationFailed("No valid USDC transfer found")


class FieldPaymentVerifier(PaymentVerifier):
    """Accepts any well-formed proof without touching the chain.

    Only for local development against the device simulator.
    """

    def __init__(self) -> None:
        logger.warning("payment proofs are NOT verified on-chain (fields verify mode)")

    async def verify(self, proof: PaymentProof, requirement: PaymentRequirement) -> VerifiedPayment:
        check_proof_terms(proof, requirement)
        return VerifiedPayment(
            tx_hash=proof.tx_hash,
            payer=proof.payer,
            amount=proof.amount,
            base_units=to_base_units(proof.amount),
        )
