"""FastAPI application exposing the gateway over HTTP and the device WebSocket.

Run with:

    uvicorn gacha_x402.server:app --factory --port 3000

or the ``gacha-x402-gateway`` console script, which reads ``GatewaySettings``
from the environment.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Body, FastAPI, Header, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import GatewaySettings, configure_logging
from .devices import DeviceRegistry
from .errors import GachaX402Error
from .fees import FeeBook
from .gateway import CommandGateway
from .ledger import PaymentLedger
from .models import DeviceCommandRequest
from .orders import OrderBook
from .store import InMemoryStore, JsonFileStore, Store
from .verifier import ChainPaymentVerifier, FieldPaymentVerifier, PaymentVerifier

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]


def _store(path: Optional[str]) -> Store:
    return JsonFileStore(path) if path else InMemoryStore()


def build_gateway(settings: GatewaySettings) -> CommandGateway:
    fees = FeeBook(
        _store(settings.fee_store),
        defaults=settings.device_fees,
        locked_devices=settings.locked_fee_devices,
        admins=settings.fee_admins,
    )
    registry = DeviceRegistry(settings.heartbeat_timeout, on_register=fees.ensure)
    verifier: PaymentVerifier
    if settings.verify_mode == "fields":
        verifier = FieldPaymentVerifier()
    else:
        verifier = ChainPaymentVerifier(settings.rpc_urls, min_confirmations=settings.min_confirmations)
    return CommandGateway(
        fees,
        registry,
        verifier,
        orders=OrderBook(settings.order_ttl),
        ledger=PaymentLedger(_store(settings.ledger_store)),
        recipient=settings.recipient,
        network=settings.network,
        command_timeout=settings.command_timeout,
        require_order=settings.require_order,
    )


def create_app(
    settings: Optional[GatewaySettings] = None,
    *,
    gateway: Optional[CommandGateway] = None,
) -> FastAPI:
    settings = settings or GatewaySettings.from_env()
    gateway = gateway or build_gateway(settings)
    registry = gateway.registry

    async def _sweep_stale_devices() -> None:
        while True:
            await asyncio.sleep(settings.heartbeat_interval)
            registry.prune_stale()
            gateway.orders.prune()

    @contextlib.asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        sweeper = asyncio.create_task(_sweep_stale_devices())
        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            aclose = getattr(gateway.verifier, "aclose", None)
            if aclose is not None:
                await aclose()

    app = FastAPI(title="Gacha x402 Gateway", lifespan=lifespan)
    app.state.gateway = gateway
    app.state.settings = settings

    @app.exception_handler(GachaX402Error)
    async def _gateway_error(request: Request, exc: GachaX402Error) -> JSONResponse:
        log = logger.warning if exc.status_code >= 500 else logger.info
        log("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.message)
        return JSONResponse(exc.to_body(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            {"error": "Invalid request body", "code": "invalid_request"},
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    @app.get("/")
    async def index() -> JsonDict:
        return {
            "message": "Gacha x402 gateway",
            "endpoints": {
                "command": "POST /devices/{deviceId}/commands/{command}",
                "fee": "GET|POST /devices/{deviceId}/fee",
                "devices": "GET /devices",
                "websocket": "/ws",
            },
        }

    @app.get("/health")
    async def health() -> JsonDict:
        return {
            "status": "ok",
            "connectedDevices": registry.online_count(),
            "pendingCommands": registry.pending_count(),
        }

    @app.get("/devices")
    async def list_devices() -> JsonDict:
        devices = []
        for fee in gateway.fees.all():
            session = registry.get(fee.device_id)
            online = registry.is_online(fee.device_id)
            devices.append(
                {
                    "deviceId": fee.device_id,
                    "name": session.name if session else None,
                    "fee": float(fee.fee),
                    "currency": fee.currency,
                    "feeLocked": fee.locked,
                    "online": online,
                    "busy": registry.is_busy(fee.device_id),
                    "status": session.status if session and online else "offline",
                    "capabilities": session.capabilities if session else [],
                    "lastSeen": session.last_seen_at if session else None,
                }
            )
        return {"devices": devices}

    @app.post("/devices/{device_id}/commands/{command}")
    async def device_command(
        device_id: str,
        command: str,
        payload: Optional[JsonDict] = Body(default=None),
        x_payment: Optional[str] = Header(default=None, alias="X-PAYMENT"),
    ) -> JSONResponse:
        wallet_address = (payload or {}).get("walletAddress")
        request = DeviceCommandRequest(
            device_id=device_id,
            command=command,
            wallet_address=wallet_address if isinstance(wallet_address, str) else None,
        )
        logger.info(
            "command request device=%s command=%s has_x_payment=%s",
            device_id,
            command,
            bool(x_payment),
        )
        try:
            result = await gateway.handle_command(request, x_payment)
        except GachaX402Error:
            raise
        except Exception:
            logger.exception("unexpected failure executing %s on %s", command, device_id)
            return JSONResponse(
                {"error": "Failed to execute device command"},
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        return JSONResponse(result.body, status_code=result.status_code, headers=result.headers)

    @app.get("/devices/{device_id}/fee")
    async def get_fee(device_id: str) -> JsonDict:
        return gateway.fees.get(device_id).to_payload()

    @app.post("/devices/{device_id}/fee")
    async def update_fee(device_id: str, payload: JsonDict) -> JsonDict:
        wallet_address = payload.get("walletAddress")
        logger.info("fee update request device=%s wallet=%s", device_id, wallet_address)
        entry = gateway.fees.update(device_id, payload.get("fee"), wallet_address)
        return {
            "success": True,
            "deviceId": entry.device_id,
            "currentFee": float(entry.fee),
            "newFee": float(entry.fee),
            "currency": entry.currency,
            "updatedBy": entry.updated_by,
            "lastUpdated": entry.last_updated,
        }

    @app.get("/payments/unfulfilled")
    async def unfulfilled_payments() -> JsonDict:
        records = gateway.ledger.unfulfilled()
        return {"count": len(records), "payments": [r.to_payload() for r in records]}

    @app.get("/payments/{wallet_address}")
    async def wallet_payments(wallet_address: str) -> JsonDict:
        records = gateway.ledger.by_payer(wallet_address)
        return {
            "walletAddress": wallet_address,
            "count": len(records),
            "payments": [r.to_payload() for r in records],
        }

    @app.websocket("/ws")
    async def device_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        logger.info("device websocket connected from %s", websocket.client)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    await websocket.send_json({"type": "error", "error": "Invalid JSON"})
                    continue
                if not isinstance(message, dict):
                    await websocket.send_json({"type": "error", "error": "Message must be a JSON object"})
                    continue
                await registry.handle_message(websocket, message)
        except WebSocketDisconnect as exc:
            logger.info("device websocket closed code=%s", exc.code)
        finally:
            registry.unregister(websocket)

    _ = (index, health, list_devices, device_command, get_fee, update_fee)
    _ = (unfulfilled_payments, wallet_payments, device_socket, _gateway_error, _invalid_request)
    return app


def app() -> FastAPI:
    return create_app()


def main() -> None:
    import uvicorn

    settings = GatewaySettings.from_env()
    configure_logging(settings.log_level)
    logger.info(
        "starting gateway on %s:%d network=%s recipient=%s verify=%s",
        settings.host,
        settings.port,
        settings.network,
        settings.recipient,
        settings.verify_mode,
    )
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
