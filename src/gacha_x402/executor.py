"""Drive a USDC transfer through a ``Wallet`` and return its transaction hash."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from eth_abi import encode as abi_encode

from .amounts import to_base_units
from .constants import (
    CHAIN_IDS,
    EOA_GAS_LIMIT,
    ERC20_TRANSFER_SELECTOR,
    GAS_ESTIMATE_BUFFER,
    SMART_WALLET_GAS_LIMIT,
    USDC,
    UnsupportedNetworkError,
    get_chain_id,
    get_default_asset,
)
from .errors import InsufficientFunds, NoAccount, TransferFailed, WrongNetwork
from .models import PaymentRequirement
from .wallet import USER_REJECTED, Wallet, WalletError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentReceipt:
    tx_hash: str
    payer: str
    recipient: str
    amount: str
    base_units: int
    network: str
    gas_limit: int


def encode_transfer(recipient: str, base_units: int) -> str:
    clean = recipient.lower()
    if not clean.startswith("0x") or len(clean) != 42:
        raise ValueError(f"invalid address: {recipient}")
    encoded_args = abi_encode(["address", "uint256"], [clean, base_units])
    return ERC20_TRANSFER_SELECTOR + encoded_args.hex()


class PaymentExecutor:
    """Executes one on-chain stablecoin transfer per call. Never retries."""

    def __init__(
        self,
        wallet: Wallet,
        supported_chain_ids: Optional[Sequence[int]] = None,
    ) -> None:
        self._wallet = wallet
        self._supported_chain_ids = list(supported_chain_ids or CHAIN_IDS.values())

    async def pay(self, requirement: PaymentRequirement) -> PaymentReceipt:
        return await self.transfer(
            recipient=requirement.recipient,
            amount=requirement.amount,
            network=requirement.network,
            currency=requirement.currency,
            asset=requirement.asset,
        )

    async def transfer(
        self,
        recipient: str,
        amount: str,
        network: str,
        currency: str = USDC,
        asset: Optional[str] = None,
    ) -> PaymentReceipt:
        if currency != USDC:
            raise TransferFailed(f"Unsupported currency {currency}")
        try:
            target_chain_id = get_chain_id(network)
            token = asset or get_default_asset(network)["address"]
        except UnsupportedNetworkError as exc:
            raise WrongNetwork(str(exc)) from exc

        payer = await self._require_account()
        await self._ensure_network(target_chain_id)

        try:
            base_units = to_base_units(amount)
            data = encode_transfer(recipient, base_units)
        except ValueError as exc:
            raise TransferFailed(str(exc)) from exc
        if base_units <= 0:
            raise TransferFailed(f"Amount {amount} is below the smallest USDC unit")

        tx = {"from": payer, "to": token, "data": data, "value": 0}
        gas_limit = await self._gas_limit(tx, payer)
        tx["gas"] = gas_limit

        logger.info(
            "submitting USDC transfer amount=%s units=%d to=%s network=%s gas=%d",
            amount,
            base_units,
            recipient,
            network,
            gas_limit,
        )
        try:
            tx_hash = await self._wallet.send_transaction(tx)
        except WalletError as exc:
            if exc.code == USER_REJECTED:
                raise TransferFailed("Transaction rejected by user") from exc
            raise self._classify_failure(exc) from exc
        except Exception as exc:
            raise self._classify_failure(exc) from exc

        return PaymentReceipt(
            tx_hash=tx_hash,
            payer=payer,
            recipient=recipient,
            amount=amount,
            base_units=base_units,
            network=network,
            gas_limit=gas_limit,
        )

    async def _require_account(self) -> str:
        try:
            accounts = await self._wallet.get_accounts()
        except Exception as exc:
            raise NoAccount(f"Unable to read wallet accounts: {exc}") from exc
        if not accounts:
            raise NoAccount()
        return accounts[0]

    async def _ensure_network(self, target_chain_id: int) -> None:
        if target_chain_id not in self._supported_chain_ids:
            raise WrongNetwork(f"Chain {target_chain_id} is not supported")

        current = await self._read_chain_id()
        if current == target_chain_id:
            return

        logger.info("wallet on chain %s, switching to %s", current, target_chain_id)
        try:
            await self._wallet.switch_chain(target_chain_id)
        except Exception as exc:
            raise WrongNetwork(
                f"Wallet is on chain {current}; switch to {target_chain_id} failed: {exc}"
            ) from exc

        current = await self._read_chain_id()
        if current != target_chain_id:
            raise WrongNetwork(f"Wallet is on chain {current}, expected {target_chain_id}")

    async def _read_chain_id(self) -> int:
        try:
            return await self._wallet.get_chain_id()
        except Exception as exc:
            raise WrongNetwork(f"Unable to read wallet chain: {exc}") from exc

    async def _gas_limit(self, tx: dict, payer: str) -> int:
        try:
            estimate = await self._wallet.estimate_gas(
                {"from": tx["from"], "to": tx["to"], "data": tx["data"]}
            )
            return int(estimate * GAS_ESTIMATE_BUFFER)
        except Exception as exc:
            smart_wallet = await self._is_contract(payer)
            fallback = SMART_WALLET_GAS_LIMIT if smart_wallet else EOA_GAS_LIMIT
            logger.warning(
                "gas estimation failed (%s); using fallback %d for %s",
                exc,
                fallback,
                "smart wallet" if smart_wallet else "EOA",
            )
            return fallback

    async def _is_contract(self, address: str) -> bool:
        try:
            code = await self._wallet.get_code(address)
        except Exception:
            return False
        return bool(code) and code not in ("0x", "0x0")

    @staticmethod
    def _classify_failure(exc: Exception) -> Exception:
        message = str(exc)
        if "insufficient" in message.lower():
            return InsufficientFunds(message)
        return TransferFailed(f"Transfer failed: {message}")
