import asyncio

import pytest

httpx = pytest.importorskip("httpx")
pytest.importorskip("fastapi")

from fastapi.testclient import TestClient

from gacha_x402.codec import decode_payment_header, encode_payment_header
from gacha_x402.config import GatewaySettings
from gacha_x402.constants import DEFAULT_RECIPIENT
from gacha_x402.devices import DeviceRegistry
from gacha_x402.fees import FeeBook
from gacha_x402.gateway import CommandGateway
from gacha_x402.ledger import PaymentStatus
from gacha_x402.models import PaymentProof
from gacha_x402.server import create_app
from gacha_x402.verifier import FieldPaymentVerifier, PaymentVerifier

PAYER = "0x" + "ab" * 20


class ExplodingVerifier(PaymentVerifier):
    async def verify(self, proof, requirement):
        raise RuntimeError("rpc exploded")


def _gateway(verifier=None, locked=(), timeout=1.0):
    fees = FeeBook(locked_devices=locked)
    registry = DeviceRegistry(on_register=fees.ensure)
    return CommandGateway(
        fees,
        registry,
        verifier or FieldPaymentVerifier(),
        command_timeout=timeout,
    )


def _http(gateway):
    app = create_app(GatewaySettings(), gateway=gateway)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://gateway.test")


def _proof_header(body, tx_byte="12", device_id="ESP32_001", command="play", amount=None):
    accepted = body["payment"]["accepts"][0]
    proof = PaymentProof(
        tx_hash="0x" + tx_byte * 32,
        amount=amount or accepted["amount"],
        network=accepted["network"],
        payer=PAYER,
        recipient=accepted["recipient"],
        device_id=device_id,
        command=command,
        order_id=accepted.get("orderId"),
        nonce=accepted.get("nonce"),
    )
    return encode_payment_header(proof)


async def _pay_and_run(http, tx_byte="12"):
    first = await http.post("/devices/ESP32_001/commands/play", json={"walletAddress": PAYER})
    assert first.status_code == 402
    return await http.post(
        "/devices/ESP32_001/commands/play",
        json={"walletAddress": PAYER},
        headers={"X-PAYMENT": _proof_header(first.json(), tx_byte)},
    )


@pytest.mark.asyncio
async def test_unpaid_request_gets_402_at_current_fee(make_device):
    gateway = _gateway()
    await make_device(gateway.registry).register()
    async with _http(gateway) as http:
        response = await http.post("/devices/ESP32_001/commands/play", json={"walletAddress": PAYER})

    assert response.status_code == 402
    assert response.headers["WWW-Authenticate"] == "Payment"
    body = response.json()
    accepted = body["payment"]["accepts"][0]
    assert accepted["amount"] == "0.010"
    assert accepted["currency"] == "USDC"
    assert accepted["network"] == "eip155:84532"
    assert accepted["recipient"] == DEFAULT_RECIPIENT
    assert accepted["orderId"].startswith("ord_")
    assert body["payment"]["metadata"]["deviceId"] == "ESP32_001"


@pytest.mark.asyncio
async def test_offline_device_is_rejected_before_payment():
    gateway = _gateway()
    async with _http(gateway) as http:
        response = await http.post("/devices/ESP32_001/commands/play", json={"walletAddress": PAYER})
    assert response.status_code == 503
    assert response.json() == {"error": "Device offline", "code": "device_offline"}
    assert gateway.orders.stats()["totalOrders"] == 0


@pytest.mark.asyncio
async def test_unknown_device_and_unsupported_command(make_device):
    gateway = _gateway()
    await make_device(gateway.registry).register(capabilities=("play",))
    async with _http(gateway) as http:
        missing = await http.post("/devices/ESP32_404/commands/play", json={})
        unsupported = await http.post("/devices/ESP32_001/commands/dance", json={})
    assert missing.status_code == 404
    assert missing.json()["error"] == "Device not found"
    assert unsupported.status_code == 400
    assert unsupported.json()["code"] == "unsupported_command"


@pytest.mark.asyncio
async def test_paid_command_is_dispatched_once(make_device):
    gateway = _gateway()
    device = await make_device(gateway.registry).register()
    async with _http(gateway) as http:
        response = await _pay_and_run(http)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["result"] == {"prize": "Rare Card"}
    assert body["payment"]["txHash"] == "0x" + "12" * 32
    payment = decode_payment_header(response.headers["X-PAYMENT-RESPONSE"])
    assert payment["paymentId"] == body["payment"]["paymentId"]
    assert len(device.commands()) == 1
    assert device.commands()[0]["metadata"]["txHash"] == "0x" + "12" * 32
    assert gateway.ledger.get("0x" + "12" * 32).status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_replayed_transaction_is_rejected(make_device):
    gateway = _gateway()
    device = await make_device(gateway.registry).register()
    async with _http(gateway) as http:
        assert (await _pay_and_run(http)).status_code == 200
        replay = await _pay_and_run(http)
    assert replay.status_code == 409
    assert replay.json()["error"] == "Payment already used"
    assert len(device.commands()) == 1


@pytest.mark.asyncio
async def test_racing_resubmissions_dispatch_once(make_device):
    gateway = _gateway()
    device = await make_device(gateway.registry, delay=0.05).register()
    tx_hash = "0x" + "77" * 32
    header = encode_payment_header(
        PaymentProof(
            tx_hash=tx_hash,
            amount="0.010",
            network="eip155:84532",
            payer=PAYER,
            recipient=DEFAULT_RECIPIENT,
            device_id="ESP32_001",
            command="play",
        )
    )
    async with _http(gateway) as http:
        responses = await asyncio.gather(
            *[
                http.post("/devices/ESP32_001/commands/play", json={}, headers={"X-PAYMENT": header})
                for _ in range(5)
            ]
        )

    codes = sorted(r.status_code for r in responses)
    assert codes == [200, 409, 409, 409, 409]
    assert len(device.commands()) == 1
    assert gateway.ledger.get(tx_hash).status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_racing_resubmissions_for_one_order_dispatch_once(make_device):
    gateway = _gateway()
    device = await make_device(gateway.registry, delay=0.05).register()
    async with _http(gateway) as http:
        first = await http.post("/devices/ESP32_001/commands/play", json={})
        header = _proof_header(first.json(), "78")
        responses = await asyncio.gather(
            *[
                http.post("/devices/ESP32_001/commands/play", json={}, headers={"X-PAYMENT": header})
                for _ in range(5)
            ]
        )

    codes = [r.status_code for r in responses]
    assert codes.count(200) == 1
    assert set(codes) <= {200, 402, 409}
    assert len(device.commands()) == 1


@pytest.mark.asyncio
async def test_malformed_header(make_device):
    gateway = _gateway()
    await make_device(gateway.registry).register()
    async with _http(gateway) as http:
        response = await http.post(
            "/devices/ESP32_001/commands/play", json={}, headers={"X-PAYMENT": "%%%not-base64%%%"}
        )
    assert response.status_code == 400
    assert response.json()["code"] == "malformed_header"


@pytest.mark.asyncio
async def test_underpayment_fails_and_releases_claim(make_device):
    gateway = _gateway()
    device = await make_device(gateway.registry).register()
    async with _http(gateway) as http:
        first = await http.post("/devices/ESP32_001/commands/play", json={})
        response = await http.post(
            "/devices/ESP32_001/commands/play",
            json={},
            headers={"X-PAYMENT": _proof_header(first.json(), amount="0.001")},
        )
    assert response.status_code == 402
    assert response.json()["code"] == "payment_verification_failed"
    assert gateway.ledger.get("0x" + "12" * 32) is None
    assert device.commands() == []


@pytest.mark.asyncio
async def test_proof_for_another_command_is_rejected(make_device):
    gateway = _gateway()
    await make_device(gateway.registry).register(capabilities=())
    async with _http(gateway) as http:
        first = await http.post("/devices/ESP32_001/commands/play", json={})
        response = await http.post(
            "/devices/ESP32_001/commands/reset",
            json={},
            headers={"X-PAYMENT": _proof_header(first.json(), command="play")},
        )
    assert response.status_code == 402


@pytest.mark.asyncio
async def test_device_timeout_leaves_unfulfilled_payment(make_device):
    gateway = _gateway(timeout=0.05)
    await make_device(gateway.registry, reply=False).register()
    async with _http(gateway) as http:
        response = await _pay_and_run(http)
        unfulfilled = await http.get("/payments/unfulfilled")
        history = await http.get(f"/payments/{PAYER}")

    assert response.status_code == 504
    assert response.json()["code"] == "device_timeout"
    payments = unfulfilled.json()["payments"]
    assert unfulfilled.json()["count"] == 1
    assert payments[0]["reason"] == "device_timeout"
    assert history.json()["payments"][0]["status"] == "unfulfilled"


@pytest.mark.asyncio
async def test_device_failure_is_502(make_device):
    gateway = _gateway()
    await make_device(gateway.registry, success=False).register()
    async with _http(gateway) as http:
        response = await _pay_and_run(http)
    assert response.status_code == 502
    assert response.json()["error"] == "Capsule jammed"
    assert gateway.ledger.unfulfilled()[0].reason == "Capsule jammed"


@pytest.mark.asyncio
async def test_unexpected_error_is_500(make_device):
    gateway = _gateway(verifier=ExplodingVerifier())
    await make_device(gateway.registry).register()
    async with _http(gateway) as http:
        response = await _pay_and_run(http)
    assert response.status_code == 500
    assert response.json() == {"error": "Failed to execute device command"}
    assert gateway.ledger.get("0x" + "12" * 32) is None


@pytest.mark.asyncio
async def test_fee_endpoints(make_device):
    gateway = _gateway(locked=("ESP32_002",))
    await make_device(gateway.registry).register()
    async with _http(gateway) as http:
        current = await http.get("/devices/ESP32_001/fee")
        too_low = await http.post("/devices/ESP32_001/fee", json={"fee": 0.0005, "walletAddress": PAYER})
        too_high = await http.post("/devices/ESP32_001/fee", json={"fee": 1000, "walletAddress": PAYER})
        as_string = await http.post("/devices/ESP32_001/fee", json={"fee": "5", "walletAddress": PAYER})
        locked = await http.post("/devices/ESP32_002/fee", json={"fee": 5, "walletAddress": PAYER})
        missing = await http.get("/devices/ESP32_404/fee")
        updated = await http.post("/devices/ESP32_001/fee", json={"fee": 0.25, "walletAddress": PAYER})
        quote = await http.post("/devices/ESP32_001/commands/play", json={})

    assert current.status_code == 200
    assert current.json()["currentFee"] == 0.01
    assert current.json()["currency"] == "USDC"
    assert too_low.status_code == 400
    assert too_low.json()["error"] == "Invalid fee. Must be between 0.001 and 999 USDC"
    assert too_high.status_code == 400
    assert as_string.status_code == 400
    assert locked.status_code == 403
    assert missing.status_code == 404
    assert updated.status_code == 200
    assert updated.json()["newFee"] == 0.25
    assert updated.json()["updatedBy"] == PAYER
    assert quote.json()["payment"]["accepts"][0]["amount"] == "0.250"


@pytest.mark.asyncio
async def test_invalid_fee_body():
    async with _http(_gateway()) as http:
        response = await http.post(
            "/devices/ESP32_001/fee", content=b"{not json", headers={"content-type": "application/json"}
        )
    assert response.status_code == 400
    assert "error" in response.json()


@pytest.mark.asyncio
async def test_device_listing_and_health(make_device):
    gateway = _gateway(locked=("ESP32_002",))
    await make_device(gateway.registry).register()
    async with _http(gateway) as http:
        devices = (await http.get("/devices")).json()["devices"]
        health = (await http.get("/health")).json()

    by_id = {d["deviceId"]: d for d in devices}
    assert by_id["ESP32_001"]["online"] is True
    assert by_id["ESP32_001"]["capabilities"] == ["play"]
    assert by_id["ESP32_002"]["online"] is False
    assert by_id["ESP32_002"]["status"] == "offline"
    assert by_id["ESP32_002"]["feeLocked"] is True
    assert health == {"status": "ok", "connectedDevices": 1, "pendingCommands": 0}


def test_websocket_registration_and_protocol():
    gateway = _gateway()
    app = create_app(GatewaySettings(heartbeat_interval=3600), gateway=gateway)
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "device_register", "deviceId": "ESP32_009", "capabilities": ["play"]})
            ack = ws.receive_json()
            assert ack["type"] == "registration_ack"
            assert ack["deviceId"] == "ESP32_009"

            ws.send_json({"type": "ping", "deviceId": "ESP32_009"})
            assert ws.receive_json()["type"] == "pong"
            ws.send_json({"type": "mystery", "deviceId": "ESP32_009"})
            assert ws.receive_json()["type"] == "error"
            ws.send_text("not json")
            assert ws.receive_json() == {"type": "error", "error": "Invalid JSON"}

            fee = client.get("/devices/ESP32_009/fee")
            assert fee.status_code == 200
            assert fee.json()["currentFee"] == 0.01
            listing = {d["deviceId"]: d for d in client.get("/devices").json()["devices"]}
            assert listing["ESP32_009"]["online"] is True

        listing = {d["deviceId"]: d for d in client.get("/devices").json()["devices"]}
        assert listing["ESP32_009"]["online"] is False
