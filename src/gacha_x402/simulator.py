"""Simulated ESP32 gacha machine speaking the gateway's WebSocket protocol.

Usage::

    gacha-x402-device ESP32_001 --url ws://localhost:3000/ws
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import random
from typing import Any, Dict, Iterable, Optional, Set, Tuple

import websockets
from dotenv import load_dotenv

from .config import configure_logging
from .constants import DEFAULT_HEARTBEAT_INTERVAL
from .models import utc_now_iso

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]

DEFAULT_URL = "ws://localhost:3000/ws"
DEFAULT_CAPABILITIES = ("play", "get_status", "reset")
PRIZES = ("Common Sticker", "Rare Card", "Super Rare Figure", "Ultra Rare Plush")
RECONNECT_DELAY = 5.0


class DeviceSimulator:
    def __init__(
        self,
        url: str = DEFAULT_URL,
        device_id: str = "ESP32_001",
        *,
        name: Optional[str] = None,
        capabilities: Iterable[str] = DEFAULT_CAPABILITIES,
        response_delay: float = 2.0,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        reconnect_delay: float = RECONNECT_DELAY,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.url = url
        self.device_id = device_id
        self.name = name or f"Smart Gacha #{device_id.rsplit('_', 1)[-1]}"
        self.capabilities = list(capabilities)
        self.response_delay = response_delay
        self.heartbeat_interval = heartbeat_interval
        self.reconnect_delay = reconnect_delay
        self.plays = 0
        self._rng = rng or random.Random()
        self._stopping = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

    def registration_message(self) -> JsonDict:
        return {
            "type": "device_register",
            "deviceId": self.device_id,
            "name": self.name,
            "capabilities": self.capabilities,
            "status": "online",
        }

    def heartbeat_message(self) -> JsonDict:
        return {"type": "heartbeat", "deviceId": self.device_id, "timestamp": utc_now_iso()}

    def execute(self, command: str) -> Tuple[bool, JsonDict, Optional[str]]:
        """Perform ``command`` and return ``(success, data, error)``."""
        if command not in self.capabilities:
            return False, {}, f"Unsupported command: {command}"
        if command == "play":
            self.plays += 1
            return True, {"prize": self._rng.choice(PRIZES), "playCount": self.plays}, None
        if command == "get_status":
            return True, {"status": "idle", "playCount": self.plays}, None
        if command == "reset":
            self.plays = 0
            return True, {"reset": True}, None
        return True, {}, None

    def build_reply(self, message: JsonDict) -> Optional[JsonDict]:
        msg_type = message.get("type")
        if msg_type == "command":
            success, data, error = self.execute(str(message.get("command", "")))
            reply: JsonDict = {
                "type": "command_response",
                "deviceId": self.device_id,
                "commandId": message.get("commandId"),
                "success": success,
                "data": data,
                "timestamp": utc_now_iso(),
            }
            if error:
                reply["error"] = error
            return reply
        if msg_type == "ping":
            return {"type": "pong", "deviceId": self.device_id, "timestamp": utc_now_iso()}
        if msg_type == "registration_ack":
            logger.info("registered as %s", self.device_id)
        elif msg_type == "error":
            logger.warning("gateway error: %s", message.get("error"))
        else:
            logger.info("ignoring message type %r", msg_type)
        return None

    def stop(self) -> None:
        self._stopping.set()

    async def run_forever(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except (OSError, websockets.WebSocketException) as exc:
                logger.warning("connection to %s lost: %s", self.url, exc)
            if self._stopping.is_set():
                break
            logger.info("reconnecting in %.0fs", self.reconnect_delay)
            try:
                await asyncio.wait_for(self._stopping.wait(), self.reconnect_delay)
            except asyncio.TimeoutError:
                continue

    async def run_once(self) -> None:
        async with websockets.connect(self.url) as ws:
            logger.info("connected to %s", self.url)
            await ws.send(json.dumps(self.registration_message()))
            heartbeat = asyncio.create_task(self._heartbeat(ws))
            try:
                async for raw in ws:
                    try:
                        message = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning("gateway sent invalid JSON: %r", raw)
                        continue
                    if not isinstance(message, dict):
                        continue
                    if message.get("type") == "command":
                        task = asyncio.create_task(self._respond(ws, message))
                        self._tasks.add(task)
                        task.add_done_callback(self._tasks.discard)
                        continue
                    reply = self.build_reply(message)
                    if reply is not None:
                        await ws.send(json.dumps(reply))
                    if self._stopping.is_set():
                        break
            finally:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError, websockets.ConnectionClosed):
                    await heartbeat

    async def _respond(self, ws: Any, message: JsonDict) -> None:
        logger.info("executing %s command_id=%s", message.get("command"), message.get("commandId"))
        await asyncio.sleep(self.response_delay)
        reply = self.build_reply(message)
        try:
            await ws.send(json.dumps(reply))
        except websockets.ConnectionClosed:
            logger.warning("connection closed before answering %s", message.get("commandId"))

    async def _heartbeat(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await ws.send(json.dumps(self.heartbeat_message()))
            logger.debug("heartbeat sent")


def main(argv: Optional[list] = None) -> None:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Simulated ESP32 gacha machine")
    parser.add_argument("device_id", nargs="?", default="ESP32_001")
    parser.add_argument("--url", default=os.getenv("DEVICE_WEBSOCKET_URL", DEFAULT_URL))
    parser.add_argument("--delay", type=float, default=2.0, help="seconds before answering a command")
    parser.add_argument("--heartbeat", type=float, default=DEFAULT_HEARTBEAT_INTERVAL)
    parser.add_argument("--log-level", default=os.getenv("GACHA_LOG_LEVEL", "INFO"))
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    simulator = DeviceSimulator(
        args.url,
        args.device_id,
        response_delay=args.delay,
        heartbeat_interval=args.heartbeat,
    )
    try:
        asyncio.run(simulator.run_forever())
    except KeyboardInterrupt:
        logger.info("simulator stopped")


if __name__ == "__main__":
    main()
