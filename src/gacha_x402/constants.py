"""Shared constants for the gacha x402 gateway and client."""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, TypedDict


BASE_MAINNET = "eip155:8453"
BASE_SEPOLIA = "eip155:84532"

SUPPORTED_NETWORKS: List[str] = [BASE_MAINNET, BASE_SEPOLIA]

CHAIN_IDS: Dict[str, int] = {
    BASE_MAINNET: 8453,
    BASE_SEPOLIA: 84532,
}

DEFAULT_RPC_URLS: Dict[str, str] = {
    BASE_MAINNET: "https://mainnet.base.org",
    BASE_SEPOLIA: "https://sepolia.base.org",
}


class DefaultAsset(TypedDict):
    address: str
    symbol: str
    decimals: int


DEFAULT_ASSETS: Dict[str, DefaultAsset] = {
    BASE_MAINNET: {
        "address": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        "symbol": "USDC",
        "decimals": 6,
    },
    BASE_SEPOLIA: {
        "address": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        "symbol": "USDC",
        "decimals": 6,
    },
}

USDC = "USDC"
USDC_DECIMALS = 6

PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

# Used by the negotiator when a 402 body carries no usable accepts entry.
FALLBACK_AMOUNT = "0.01"
FALLBACK_NETWORK = BASE_SEPOLIA
FALLBACK_RECIPIENT = "0x1c7d4b196cb0c7b01d743fbc6116a902379c7238"

DEFAULT_RECIPIENT = FALLBACK_RECIPIENT
DEFAULT_DEVICE_FEES: Dict[str, str] = {
    "ESP32_001": "0.01",
    "ESP32_002": "0.005",
}
DEFAULT_FEE = Decimal("0.01")
MIN_FEE = Decimal("0.001")
MAX_FEE = Decimal("999")

ERC20_TRANSFER_SELECTOR = "0xa9059cbb"
ERC20_TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
GAS_ESTIMATE_BUFFER = Decimal("1.2")
SMART_WALLET_GAS_LIMIT = 90_000
EOA_GAS_LIMIT = 50_000

DEFAULT_COMMAND_TIMEOUT = 30.0
DEFAULT_HEARTBEAT_INTERVAL = 30.0
DEFAULT_HEARTBEAT_TIMEOUT = 90.0
DEFAULT_ORDER_TTL = 300.0


class UnsupportedNetworkError(ValueError):
    """Raised when a network is not one of the supported Base networks."""


def get_default_asset(network: str) -> DefaultAsset:
    try:
        return DEFAULT_ASSETS[network]
    except KeyError as exc:
        raise UnsupportedNetworkError(f"No default asset configured for network {network}") from exc


def get_chain_id(network: str) -> int:
    try:
        return CHAIN_IDS[network]
    except KeyError as exc:
        raise UnsupportedNetworkError(f"Unsupported network {network}") from exc


def network_for_chain_id(chain_id: int) -> str:
    for network, known in CHAIN_IDS.items():
        if known == chain_id:
            return network
    raise UnsupportedNetworkError(f"Unsupported chain id {chain_id}")
