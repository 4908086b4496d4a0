"""Turn a 402 response body into a ``PaymentRequirement``."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from .constants import (
    DEFAULT_ASSETS,
    FALLBACK_AMOUNT,
    FALLBACK_NETWORK,
    FALLBACK_RECIPIENT,
    USDC,
)
from .models import PaymentRequirement

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]
AcceptsSelector = Callable[[List[JsonDict]], Optional[JsonDict]]

_KNOWN_USDC = {asset["address"].lower() for asset in DEFAULT_ASSETS.values()}


def select_first(accepts: List[JsonDict]) -> Optional[JsonDict]:
    """Default selector: the first accepted payment option wins."""
    return accepts[0] if accepts else None


def fallback_requirement() -> PaymentRequirement:
    return PaymentRequirement(
        amount=FALLBACK_AMOUNT,
        network=FALLBACK_NETWORK,
        recipient=FALLBACK_RECIPIENT,
        currency=USDC,
        asset=DEFAULT_ASSETS[FALLBACK_NETWORK]["address"],
        degraded=True,
    )


def currency_for_asset(asset: Any) -> str:
    # Only USDC is modelled; unknown assets are still labelled USDC.
    if isinstance(asset, str) and asset.lower() not in _KNOWN_USDC:
        logger.debug("unrecognised asset %s; treating as USDC", asset)
    return USDC


def parse_payment_required(
    body: Any,
    selector: AcceptsSelector = select_first,
) -> PaymentRequirement:
    """Normalize a 402 body of shape ``{payment: {accepts: [...]}}``.

    Never raises: a missing or malformed ``accepts`` list yields the fallback
    requirement, flagged ``degraded`` and logged as DegradedNegotiation.
    """
    payment = body.get("payment") if isinstance(body, dict) else None
    accepts = payment.get("accepts") if isinstance(payment, dict) else None
    if not isinstance(accepts, list):
        return _degraded("402 body has no payment.accepts list")

    options = [entry for entry in accepts if isinstance(entry, dict)]
    chosen = selector(options)
    if chosen is None:
        return _degraded("402 body has an empty payment.accepts list")

    try:
        requirement = PaymentRequirement.from_payload(chosen)
    except ValueError as exc:
        return _degraded(f"accepted payment option is unusable: {exc}")

    currency = currency_for_asset(chosen.get("asset"))
    if requirement.currency != currency:
        requirement = replace(requirement, currency=currency)
    return requirement


def _degraded(reason: str) -> PaymentRequirement:
    requirement = fallback_requirement()
    logger.warning(
        "DegradedNegotiation: %s; using fallback amount=%s network=%s recipient=%s",
        reason,
        requirement.amount,
        requirement.network,
        requirement.recipient,
    )
    return requirement
