import logging

import pytest

from gacha_x402.constants import DEFAULT_ASSETS, FALLBACK_RECIPIENT
from gacha_x402.negotiator import fallback_requirement, parse_payment_required


def _body(*accepts):
    return {"payment": {"accepts": list(accepts)}}


def test_selects_first_accepted_option():
    body = _body(
        {"amount": "0.010", "network": "eip155:84532", "recipient": "0xaaa", "asset": DEFAULT_ASSETS["eip155:84532"]["address"]},
        {"amount": "9.000", "network": "eip155:8453", "recipient": "0xbbb"},
    )
    requirement = parse_payment_required(body)
    assert requirement.amount == "0.010"
    assert requirement.network == "eip155:84532"
    assert requirement.recipient == "0xaaa"
    assert requirement.currency == "USDC"
    assert not requirement.degraded


def test_keeps_order_and_nonce():
    body = _body(
        {"amount": "0.005", "network": "eip155:84532", "recipient": "0xaaa", "orderId": "ord_1", "nonce": "nx_1"}
    )
    requirement = parse_payment_required(body)
    assert requirement.order_id == "ord_1"
    assert requirement.nonce == "nx_1"


def test_unknown_asset_is_labelled_usdc():
    body = _body({"amount": "1", "network": "eip155:84532", "recipient": "0xaaa", "asset": "0xdeadbeef"})
    assert parse_payment_required(body).currency == "USDC"


def test_custom_selector():
    body = _body(
        {"amount": "1", "network": "eip155:8453", "recipient": "0xaaa"},
        {"amount": "2", "network": "eip155:84532", "recipient": "0xbbb"},
    )
    requirement = parse_payment_required(body, selector=lambda options: options[-1])
    assert requirement.amount == "2"


@pytest.mark.parametrize(
    "body",
    [
        {},
        None,
        "not a dict",
        {"payment": None},
        {"payment": {"accepts": "nope"}},
        _body(),
        _body({"network": "eip155:84532"}),
    ],
)
def test_falls_back_and_logs_degraded_negotiation(body, caplog):
    with caplog.at_level(logging.WARNING, logger="gacha_x402.negotiator"):
        requirement = parse_payment_required(body)
    assert requirement == fallback_requirement()
    assert requirement.degraded
    assert requirement.amount == "0.01"
    assert requirement.network == "eip155:84532"
    assert requirement.recipient == FALLBACK_RECIPIENT
    assert "DegradedNegotiation" in caplog.text
