"""Wallet abstraction used by the payment executor.

In the dashboard the wallet is an injected browser provider; here it is an
interface so that any signer (local key, remote signer, test stub) can drive
the executor. ``LocalAccountWallet`` signs with an ``eth_account`` key and
broadcasts over JSON-RPC.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional

import httpx
from eth_account import Account
from eth_utils import to_checksum_address

from .constants import BASE_SEPOLIA, DEFAULT_RPC_URLS, UnsupportedNetworkError, get_chain_id, network_for_chain_id
from .rpc import JsonRpcClient

logger = logging.getLogger(__name__)

# EIP-1193 error codes
USER_REJECTED = 4001
UNRECOGNIZED_CHAIN = 4902


class WalletError(RuntimeError):
    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class Wallet(ABC):
    """Operations the executor needs from a connected wallet."""

    @abstractmethod
    async def get_accounts(self) -> List[str]:
        ...

    @abstractmethod
    async def get_chain_id(self) -> int:
        ...

    @abstractmethod
    async def switch_chain(self, chain_id: int) -> None:
        ...

    @abstractmethod
    async def get_code(self, address: str) -> str:
        ...

    @abstractmethod
    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        ...

    @abstractmethod
    async def send_transaction(self, tx: Dict[str, Any]) -> str:
        """Submit ``tx`` and return its hash. May wait on user approval."""


class LocalAccountWallet(Wallet):
    def __init__(
        self,
        private_key: str,
        *,
        network: str = BASE_SEPOLIA,
        rpc_urls: Mapping[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._account = Account.from_key(private_key)
        self._rpc_urls: Dict[str, str] = dict(DEFAULT_RPC_URLS)
        if rpc_urls:
            self._rpc_urls.update(rpc_urls)
        self._network = network
        self._http_client = http_client
        self._clients: Dict[str, JsonRpcClient] = {}

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def network(self) -> str:
        return self._network

    def _rpc(self) -> JsonRpcClient:
        client = self._clients.get(self._network)
        if client is None:
            rpc_url = self._rpc_urls.get(self._network)
            if not rpc_url:
                raise WalletError(f"No RPC URL configured for network {self._network}")
            client = JsonRpcClient(rpc_url, http_client=self._http_client)
            self._clients[self._network] = client
        return client

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    async def get_accounts(self) -> List[str]:
        return [self._account.address]

    async def get_chain_id(self) -> int:
        return await self._rpc().chain_id()

    async def switch_chain(self, chain_id: int) -> None:
        try:
            network = network_for_chain_id(chain_id)
        except UnsupportedNetworkError as exc:
            raise WalletError(str(exc), code=UNRECOGNIZED_CHAIN) from exc
        if network not in self._rpc_urls:
            raise WalletError(f"No RPC URL configured for network {network}", code=UNRECOGNIZED_CHAIN)
        logger.info("switching wallet network %s -> %s", self._network, network)
        self._network = network

    async def get_code(self, address: str) -> str:
        return await self._rpc().get_code(address)

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return await self._rpc().estimate_gas(tx)

    async def send_transaction(self, tx: Dict[str, Any]) -> str:
        rpc = self._rpc()
        gas_price = await rpc.gas_price()
        nonce = await rpc.get_transaction_count(self._account.address)
        tx_payload = {
            "chainId": get_chain_id(self._network),
            "nonce": nonce,
            "gas": int(tx["gas"]),
            "gasPrice": int(tx.get("gasPrice", gas_price)),
            "to": to_checksum_address(tx["to"]),
            "value": int(tx.get("value", 0)),
            "data": tx.get("data", "0x"),
        }
        signed = self._account.sign_transaction(tx_payload)
        raw_tx = signed.raw_transaction.hex()
        if not raw_tx.startswith("0x"):
            raw_tx = "0x" + raw_tx
        return await rpc.send_raw_transaction(raw_tx)
