"""Gateway settings read from the environment (and a local ``.env``)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

from .amounts import parse_amount
from .constants import (
    BASE_SEPOLIA,
    CHAIN_IDS,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_DEVICE_FEES,
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_HEARTBEAT_TIMEOUT,
    DEFAULT_ORDER_TTL,
    DEFAULT_RECIPIENT,
    SUPPORTED_NETWORKS,
    USDC_DECIMALS,
)

LOG_FORMAT = "%(name)s %(levelname)s: %(message)s"
VERIFY_MODES = ("chain", "fields")


class ConfigError(ValueError):
    pass


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def _value(env: Mapping[str, str], key: str, default: Optional[str] = None) -> Optional[str]:
    value = env.get(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _value(env, key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as err:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from err
    if value <= 0:
        raise ConfigError(f"{key} must be positive")
    return value


def _int(env: Mapping[str, str], key: str, default: int, minimum: int = 0) -> int:
    raw = _value(env, key)
    if raw is None:
        return default
    try:
        value = int(raw, 10)
    except ValueError as err:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from err
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}")
    return value


def _bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _value(env, key)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{key} must be a boolean, got {raw!r}")


def _list(env: Mapping[str, str], key: str) -> Tuple[str, ...]:
    raw = _value(env, key, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _address(value: str, key: str) -> str:
    if not value.lower().startswith("0x") or len(value) != 42:
        raise ConfigError(f"{key} must be a 42-character 0x-prefixed address")
    try:
        int(value[2:], 16)
    except ValueError as err:
        raise ConfigError(f"{key} must be hexadecimal") from err
    return value


def parse_device_fees(raw: str) -> Dict[str, Decimal]:
    """Parse ``ID=fee,ID=fee`` into a fee table."""
    fees: Dict[str, Decimal] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        device_id, sep, fee = item.partition("=")
        if not sep or not device_id.strip():
            raise ConfigError(f"GACHA_DEVICE_FEES entry {item!r} must look like ID=fee")
        try:
            value = parse_amount(fee.strip())
        except ValueError as err:
            raise ConfigError(f"GACHA_DEVICE_FEES entry {item!r}: {err}") from err
        if value.normalize().as_tuple().exponent < -USDC_DECIMALS:
            raise ConfigError(f"GACHA_DEVICE_FEES entry {item!r} has more than {USDC_DECIMALS} decimals")
        fees[device_id.strip()] = value
    return fees


@dataclass(frozen=True)
class GatewaySettings:
    host: str = "0.0.0.0"
    port: int = 3000
    recipient: str = DEFAULT_RECIPIENT
    network: str = BASE_SEPOLIA
    rpc_urls: Dict[str, str] = field(default_factory=dict)
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    heartbeat_timeout: float = DEFAULT_HEARTBEAT_TIMEOUT
    order_ttl: float = DEFAULT_ORDER_TTL
    require_order: bool = False
    min_confirmations: int = 1
    verify_mode: str = "chain"
    fee_store: Optional[str] = None
    ledger_store: Optional[str] = None
    device_fees: Dict[str, Decimal] = field(
        default_factory=lambda: {k: Decimal(v) for k, v in DEFAULT_DEVICE_FEES.items()}
    )
    locked_fee_devices: Tuple[str, ...] = ()
    fee_admins: Tuple[str, ...] = ()
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "GatewaySettings":
        if env is None:
            load_dotenv()
            env = os.environ

        network = _value(env, "GACHA_NETWORK", BASE_SEPOLIA)
        if network not in SUPPORTED_NETWORKS:
            raise ConfigError(
                f"GACHA_NETWORK {network!r} is not supported; use one of {', '.join(SUPPORTED_NETWORKS)}"
            )

        rpc_urls: Dict[str, str] = {}
        for name, chain_id in CHAIN_IDS.items():
            url = _value(env, f"GACHA_RPC_URL_{chain_id}")
            if url:
                rpc_urls[name] = url

        verify_mode = _value(env, "GACHA_VERIFY_MODE", "chain").lower()
        if verify_mode not in VERIFY_MODES:
            raise ConfigError(f"GACHA_VERIFY_MODE must be one of {', '.join(VERIFY_MODES)}")

        log_level = _value(env, "GACHA_LOG_LEVEL", "INFO").upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ConfigError(f"GACHA_LOG_LEVEL {log_level!r} is not a logging level")

        raw_fees = _value(env, "GACHA_DEVICE_FEES")
        device_fees = (
            parse_device_fees(raw_fees)
            if raw_fees is not None
            else {k: Decimal(v) for k, v in DEFAULT_DEVICE_FEES.items()}
        )

        return cls(
            host=_value(env, "GACHA_HOST", "0.0.0.0"),
            port=_int(env, "GACHA_PORT", 3000, minimum=1),
            recipient=_address(_value(env, "PAYMENT_RECIPIENT", DEFAULT_RECIPIENT), "PAYMENT_RECIPIENT"),
            network=network,
            rpc_urls=rpc_urls,
            command_timeout=_float(env, "GACHA_COMMAND_TIMEOUT", DEFAULT_COMMAND_TIMEOUT),
            heartbeat_interval=_float(env, "GACHA_HEARTBEAT_INTERVAL", DEFAULT_HEARTBEAT_INTERVAL),
            heartbeat_timeout=_float(env, "GACHA_HEARTBEAT_TIMEOUT", DEFAULT_HEARTBEAT_TIMEOUT),
            order_ttl=_float(env, "GACHA_ORDER_TTL", DEFAULT_ORDER_TTL),
            require_order=_bool(env, "GACHA_REQUIRE_ORDER", False),
            min_confirmations=_int(env, "GACHA_MIN_CONFIRMATIONS", 1),
            verify_mode=verify_mode,
            fee_store=_value(env, "GACHA_FEE_STORE"),
            ledger_store=_value(env, "GACHA_LEDGER_STORE"),
            device_fees=device_fees,
            locked_fee_devices=_list(env, "GACHA_LOCKED_FEE_DEVICES"),
            fee_admins=_list(env, "GACHA_FEE_ADMINS"),
            log_level=log_level,
        )
