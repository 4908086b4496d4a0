"""Minimal async Ethereum JSON-RPC client."""

from __future__ import annotations

import itertools
from typing import Any, Optional, Sequence

import httpx


class RpcError(RuntimeError):
    def __init__(self, method: str, message: str, code: Optional[int] = None) -> None:
        super().__init__(f"ethereum RPC call {method} failed: {message}")
        self.method = method
        self.code = code
        self.rpc_message = message


class JsonRpcClient:
    """Posts JSON-RPC 2.0 requests to a single endpoint."""

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None
        self._ids = itertools.count(1)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def request(self, method: str, params: Sequence[Any] = ()) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params),
        }
        try:
            response = await self._get_client().post(self.rpc_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as err:
            raise RpcError(method, str(err)) from err
        except ValueError as err:
            raise RpcError(method, "invalid JSON response") from err

        if not isinstance(data, dict):
            raise RpcError(method, "unexpected response shape")
        if data.get("error") is not None:
            error = data["error"]
            if isinstance(error, dict):
                raise RpcError(method, str(error.get("message", "unknown error")), error.get("code"))
            raise RpcError(method, str(error))
        return data.get("result")

    async def chain_id(self) -> int:
        return int(await self.request("eth_chainId"), 16)

    async def block_number(self) -> int:
        return int(await self.request("eth_blockNumber"), 16)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        return await self.request("eth_getTransactionReceipt", [tx_hash])

    async def get_code(self, address: str) -> str:
        return await self.request("eth_getCode", [address, "latest"]) or "0x"

    async def estimate_gas(self, tx: dict) -> int:
        return int(await self.request("eth_estimateGas", [tx]), 16)

    async def gas_price(self) -> int:
        return int(await self.request("eth_gasPrice"), 16)

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return int(await self.request("eth_getTransactionCount", [address, block]), 16)

    async def send_raw_transaction(self, raw_tx: str) -> str:
        tx_hash = await self.request("eth_sendRawTransaction", [raw_tx])
        if tx_hash is None:
            raise RpcError("eth_sendRawTransaction", "RPC returned null transaction hash")
        return tx_hash
