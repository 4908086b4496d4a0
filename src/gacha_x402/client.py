"""x402 client: request a device command, pay on 402, resubmit with proof.

The flow is a small state machine::

    IDLE -> REQUESTING -> COMPLETED | PAYMENT_REQUIRED | FAILED
    PAYMENT_REQUIRED -> PAYING -> RESUBMITTING -> COMPLETED | FAILED

There is exactly one payment and one resubmission per flow. A second 402 is
a terminal failure. The transaction hash is written to the payment journal
before the resubmission goes out, so a paid command is never forgotten.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from .codec import decode_payment_header, encode_payment_header
from .constants import PAYMENT_HEADER, PAYMENT_RESPONSE_HEADER
from .errors import MalformedHeader, PaymentError
from .executor import PaymentExecutor
from .models import PaymentProof, PaymentRequirement, PaymentResponse, utc_now_iso
from .negotiator import AcceptsSelector, parse_payment_required, select_first
from .store import InMemoryStore, Store

logger = logging.getLogger(__name__)


class CommandState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    PAYMENT_REQUIRED = "payment_required"
    PAYING = "paying"
    RESUBMITTING = "resubmitting"
    COMPLETED = "completed"
    FAILED = "failed"


TRANSITIONS: Dict[CommandState, Tuple[CommandState, ...]] = {
    CommandState.IDLE: (CommandState.REQUESTING, CommandState.FAILED),
    CommandState.REQUESTING: (
        CommandState.PAYMENT_REQUIRED,
        CommandState.COMPLETED,
        CommandState.FAILED,
    ),
    CommandState.PAYMENT_REQUIRED: (CommandState.PAYING, CommandState.FAILED),
    CommandState.PAYING: (CommandState.RESUBMITTING, CommandState.FAILED),
    CommandState.RESUBMITTING: (CommandState.COMPLETED, CommandState.FAILED),
    CommandState.COMPLETED: (),
    CommandState.FAILED: (),
}


class InvalidTransition(RuntimeError):
    def __init__(self, current: CommandState, target: CommandState) -> None:
        super().__init__(f"cannot move from {current.value} to {target.value}")
        self.current = current
        self.target = target


@dataclass
class CommandOutcome:
    device_id: str
    command: str
    state: CommandState = CommandState.IDLE
    history: List[CommandState] = field(default_factory=lambda: [CommandState.IDLE])
    requirement: Optional[PaymentRequirement] = None
    payment: Optional[PaymentResponse] = None
    tx_hash: Optional[str] = None
    status_code: Optional[int] = None
    body: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state == CommandState.COMPLETED

    @property
    def payment_required(self) -> bool:
        return self.state == CommandState.PAYMENT_REQUIRED

    def advance(self, state: CommandState) -> None:
        if state not in TRANSITIONS[self.state]:
            raise InvalidTransition(self.state, state)
        logger.debug("%s/%s: %s -> %s", self.device_id, self.command, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def fail(self, error: str, code: Optional[str] = None) -> "CommandOutcome":
        self.advance(CommandState.FAILED)
        self.error = error
        self.error_code = code
        logger.warning("%s/%s failed: %s", self.device_id, self.command, error)
        return self


class PaymentJournal:
    """Client-side record of submitted payments, keyed by transaction hash."""

    SUBMITTED = "submitted"
    COMPLETED = "completed"
    FAILED = "failed"

    def __init__(self, store: Optional[Store] = None) -> None:
        self._store = store or InMemoryStore()

    def record(self, proof: PaymentProof) -> Dict[str, Any]:
        entry = {
            "txHash": proof.tx_hash,
            "deviceId": proof.device_id,
            "command": proof.command,
            "amount": proof.amount,
            "currency": proof.currency,
            "network": proof.network,
            "payer": proof.payer,
            "orderId": proof.order_id,
            "status": self.SUBMITTED,
            "createdAt": utc_now_iso(),
            "updatedAt": utc_now_iso(),
        }
        self._store.set(proof.tx_hash.lower(), entry)
        return entry

    def mark(self, tx_hash: str, status: str, detail: Optional[str] = None) -> None:
        entry = self._store.get(tx_hash.lower())
        if entry is None:
            return
        entry = dict(entry, status=status, updatedAt=utc_now_iso())
        if detail is not None:
            entry["detail"] = detail
        self._store.set(tx_hash.lower(), entry)

    def get(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self._store.get(tx_hash.lower())

    def pending(self) -> List[Dict[str, Any]]:
        """Payments that went out but never got a final answer from the gateway."""
        return [entry for _, entry in self._store.items() if entry.get("status") == self.SUBMITTED]


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return json.loads(response.text, parse_float=Decimal)
    except ValueError:
        return None


def _error_details(response: httpx.Response) -> Tuple[str, Optional[str]]:
    body = _json_or_none(response)
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if message:
            return f"{response.status_code}: {message}", body.get("code")
    text = response.text.strip()
    return f"{response.status_code}: {text or f'HTTP {response.status_code}'}", None


class X402Client:
    def __init__(
        self,
        base_url: str,
        executor: Optional[PaymentExecutor] = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        journal: Optional[PaymentJournal] = None,
        selector: AcceptsSelector = select_first,
        timeout: float = 60.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._executor = executor
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http_client is None
        self.journal = journal or PaymentJournal()
        self._selector = selector

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "X402Client":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def command_url(self, device_id: str, command: str) -> str:
        return f"{self.base_url}/devices/{quote(device_id, safe='')}/commands/{quote(command, safe='')}"

    async def execute_device_command(
        self,
        device_id: str,
        command: str,
        wallet_address: Optional[str] = None,
    ) -> CommandOutcome:
        """Run the whole flow: request, pay if asked, resubmit once."""
        outcome = await self.request_command(device_id, command, wallet_address)
        if outcome.state != CommandState.PAYMENT_REQUIRED:
            return outcome
        if self._executor is None:
            return outcome.fail("Payment required but no payment executor is configured", "no_executor")

        outcome.advance(CommandState.PAYING)
        requirement = outcome.requirement
        logger.info(
            "paying %s %s to %s on %s for %s/%s",
            requirement.amount,
            requirement.currency,
            requirement.recipient,
            requirement.network,
            device_id,
            command,
        )
        try:
            receipt = await self._executor.pay(requirement)
        except PaymentError as exc:
            return outcome.fail(exc.message, exc.code)
        except Exception as exc:
            logger.exception("payment for %s/%s raised unexpectedly", device_id, command)
            return outcome.fail(f"Payment failed: {exc}", PaymentError.code)

        return await self._resubmit(outcome, receipt.tx_hash, wallet_address or receipt.payer)

    async def request_command(
        self,
        device_id: str,
        command: str,
        wallet_address: Optional[str] = None,
    ) -> CommandOutcome:
        """Phase one: issue the command without proof and negotiate any 402."""
        outcome = CommandOutcome(device_id=device_id, command=command)
        outcome.advance(CommandState.REQUESTING)
        try:
            response = await self._post(device_id, command, wallet_address)
        except httpx.HTTPError as exc:
            return outcome.fail(f"Request failed: {exc}", "network_error")

        outcome.status_code = response.status_code
        if response.is_success:
            return self._complete(outcome, response)
        if response.status_code == 402:
            outcome.body = _json_or_none(response)
            outcome.requirement = parse_payment_required(outcome.body, self._selector)
            outcome.advance(CommandState.PAYMENT_REQUIRED)
            logger.info(
                "402 for %s/%s amount=%s network=%s degraded=%s",
                device_id,
                command,
                outcome.requirement.amount,
                outcome.requirement.network,
                outcome.requirement.degraded,
            )
            return outcome

        outcome.body = _json_or_none(response)
        error, code = _error_details(response)
        return outcome.fail(error, code)

    async def submit_payment(
        self,
        outcome: CommandOutcome,
        tx_hash: str,
        wallet_address: Optional[str] = None,
    ) -> CommandOutcome:
        """Phase two: resubmit ``outcome`` with a transfer paid elsewhere."""
        if outcome.state != CommandState.PAYMENT_REQUIRED:
            raise InvalidTransition(outcome.state, CommandState.PAYING)
        outcome.advance(CommandState.PAYING)
        return await self._resubmit(outcome, tx_hash, wallet_address)

    async def _resubmit(
        self,
        outcome: CommandOutcome,
        tx_hash: str,
        payer: Optional[str],
    ) -> CommandOutcome:
        requirement = outcome.requirement
        proof = PaymentProof(
            tx_hash=tx_hash,
            amount=requirement.amount,
            network=requirement.network,
            payer=payer,
            currency=requirement.currency,
            recipient=requirement.recipient,
            device_id=outcome.device_id,
            command=outcome.command,
            order_id=requirement.order_id,
            nonce=requirement.nonce,
        )
        outcome.tx_hash = tx_hash
        self.journal.record(proof)
        outcome.advance(CommandState.RESUBMITTING)

        try:
            response = await self._post(
                outcome.device_id,
                outcome.command,
                payer,
                headers={PAYMENT_HEADER: encode_payment_header(proof)},
            )
        except httpx.HTTPError as exc:
            # Journal entry stays "submitted" for later recovery.
            return outcome.fail(f"Resubmission failed after payment {tx_hash}: {exc}", "network_error")

        outcome.status_code = response.status_code
        if response.is_success:
            self.journal.mark(tx_hash, PaymentJournal.COMPLETED)
            return self._complete(outcome, response)

        outcome.body = _json_or_none(response)
        error, code = _error_details(response)
        if response.status_code == 402:
            code = code or "payment_rejected"
        self.journal.mark(tx_hash, PaymentJournal.FAILED, error)
        return outcome.fail(error, code)

    def _complete(self, outcome: CommandOutcome, response: httpx.Response) -> CommandOutcome:
        outcome.body = _json_or_none(response)
        header = response.headers.get(PAYMENT_RESPONSE_HEADER)
        if header:
            try:
                outcome.payment = PaymentResponse.from_payload(decode_payment_header(header))
            except MalformedHeader as exc:
                logger.warning("ignoring unreadable %s header: %s", PAYMENT_RESPONSE_HEADER, exc)
        outcome.advance(CommandState.COMPLETED)
        logger.info("%s/%s completed status=%s", outcome.device_id, outcome.command, response.status_code)
        return outcome

    async def _post(
        self,
        device_id: str,
        command: str,
        wallet_address: Optional[str],
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        payload = {"walletAddress": wallet_address} if wallet_address else {}
        return await self._http.post(self.command_url(device_id, command), json=payload, headers=headers)
