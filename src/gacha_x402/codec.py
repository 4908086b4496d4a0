"""Base64-JSON codec for the ``X-PAYMENT`` and ``X-PAYMENT-RESPONSE`` headers."""

from __future__ import annotations

import base64
import binascii
import json
from decimal import Decimal
from typing import Any, Dict, Mapping

from .errors import MalformedHeader

JsonDict = Dict[str, Any]


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "to_payload"):
        return value.to_payload()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_payment_header(descriptor: Mapping[str, Any] | Any) -> str:
    """Serialize a payment descriptor to base64(JSON).

    Accepts a mapping or any model exposing ``to_payload()``. Amounts are
    expected as decimal strings and are emitted untouched.
    """
    if hasattr(descriptor, "to_payload"):
        descriptor = descriptor.to_payload()
    encoded = json.dumps(descriptor, separators=(",", ":"), default=_json_default)
    return base64.b64encode(encoded.encode("utf-8")).decode("ascii")


def decode_payment_header(value: str | bytes | None) -> JsonDict:
    """Decode a base64(JSON) header into a descriptor dict.

    Raises ``MalformedHeader`` for anything that is not base64 of a JSON object.
    JSON floats are parsed as ``Decimal`` so amounts never pass through ``float``.
    """
    if value is None:
        raise MalformedHeader("Payment header is missing")
    if isinstance(value, bytes):
        try:
            value = value.decode("ascii")
        except UnicodeDecodeError as exc:
            raise MalformedHeader("Payment header is not ASCII") from exc

    clean = "".join(value.split())
    if not clean:
        raise MalformedHeader("Payment header is empty")
    clean += "=" * (-len(clean) % 4)

    try:
        raw = base64.b64decode(clean, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedHeader("Payment header is not valid base64") from exc

    try:
        payload = json.loads(raw.decode("utf-8"), parse_float=Decimal)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedHeader("Payment header is not valid JSON") from exc

    if not isinstance(payload, dict):
        raise MalformedHeader("Payment header must encode a JSON object")
    return payload
