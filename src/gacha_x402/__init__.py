"""Pay-per-command x402 gateway and client for networked gacha machines."""

from __future__ import annotations

from .client import CommandOutcome, CommandState, PaymentJournal, X402Client
from .codec import decode_payment_header, encode_payment_header
from .constants import (
    BASE_MAINNET,
    BASE_SEPOLIA,
    DEFAULT_ASSETS,
    DEFAULT_RPC_URLS,
    SUPPORTED_NETWORKS,
    UnsupportedNetworkError,
    get_default_asset,
)
from .devices import DeviceRegistry
from .errors import GachaX402Error
from .executor import PaymentExecutor
from .fees import FeeBook
from .gateway import CommandGateway
from .ledger import PaymentLedger
from .models import (
    DeviceCommandRequest,
    DeviceResponse,
    PaymentProof,
    PaymentRequirement,
    PaymentResponse,
)
from .negotiator import parse_payment_required
from .orders import OrderBook
from .store import InMemoryStore, JsonFileStore, Store
from .verifier import ChainPaymentVerifier, FieldPaymentVerifier
from .wallet import LocalAccountWallet, Wallet

__all__ = [
    "BASE_MAINNET",
    "BASE_SEPOLIA",
    "SUPPORTED_NETWORKS",
    "DEFAULT_RPC_URLS",
    "DEFAULT_ASSETS",
    "UnsupportedNetworkError",
    "get_default_asset",
    "encode_payment_header",
    "decode_payment_header",
    "parse_payment_required",
    "PaymentRequirement",
    "PaymentProof",
    "PaymentResponse",
    "DeviceCommandRequest",
    "DeviceResponse",
    "GachaX402Error",
    "Wallet",
    "LocalAccountWallet",
    "PaymentExecutor",
    "X402Client",
    "CommandOutcome",
    "CommandState",
    "PaymentJournal",
    "Store",
    "InMemoryStore",
    "JsonFileStore",
    "FeeBook",
    "OrderBook",
    "PaymentLedger",
    "ChainPaymentVerifier",
    "FieldPaymentVerifier",
    "DeviceRegistry",
    "CommandGateway",
]

try:  # Optional: the HTTP server depends on fastapi
    from .server import build_gateway, create_app

    __all__.extend(["create_app", "build_gateway"])
except ImportError:
    create_app = None  # type: ignore[assignment]
    build_gateway = None  # type: ignore[assignment]

try:  # Optional: the device simulator depends on websockets
    from .simulator import DeviceSimulator

    __all__.append("DeviceSimulator")
except ImportError:
    DeviceSimulator = None  # type: ignore[assignment]
