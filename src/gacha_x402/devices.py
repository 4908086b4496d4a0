"""Live device connections and in-flight command correlation.

Devices connect over a WebSocket, register themselves, heartbeat, and answer
``command`` messages with ``command_response`` messages that echo the
``commandId``. At most one command is in flight per device; commands to
different devices run in parallel.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .constants import DEFAULT_COMMAND_TIMEOUT, DEFAULT_HEARTBEAT_TIMEOUT
from .errors import DeviceBusy, DeviceOffline, DeviceTimeout
from .models import DeviceResponse, JsonDict, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass
class DeviceSession:
    """A registered device. ``connection`` is anything with ``async send_json``."""

    device_id: str
    connection: Any
    capabilities: List[str] = field(default_factory=list)
    status: str = "online"
    name: Optional[str] = None
    connected_at: str = field(default_factory=utc_now_iso)
    last_seen: float = 0.0
    last_seen_at: str = field(default_factory=utc_now_iso)

    def supports(self, command: str) -> bool:
        return not self.capabilities or command in self.capabilities


@dataclass
class PendingCommand:
    command_id: str
    device_id: str
    command: str
    future: asyncio.Future


class DeviceRegistry:
    def __init__(
        self,
        heartbeat_timeout: float = DEFAULT_HEARTBEAT_TIMEOUT,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_register: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.heartbeat_timeout = heartbeat_timeout
        self._clock = clock
        self._on_register = on_register
        self._sessions: Dict[str, DeviceSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._pending: Dict[str, PendingCommand] = {}

    # Connection bookkeeping

    def register(
        self,
        device_id: str,
        connection: Any,
        capabilities: Optional[List[str]] = None,
        name: Optional[str] = None,
    ) -> DeviceSession:
        previous = self._sessions.get(device_id)
        if previous is not None and previous.connection is not connection:
            logger.info("device %s re-registered on a new connection", device_id)
        session = DeviceSession(
            device_id=device_id,
            connection=connection,
            capabilities=[str(c) for c in capabilities or []],
            name=name,
            last_seen=self._clock(),
        )
        self._sessions[device_id] = session
        if self._on_register is not None:
            self._on_register(device_id)
        logger.info("device %s registered capabilities=%s", device_id, session.capabilities)
        return session

    def unregister(self, connection: Any) -> List[str]:
        """Drop every device bound to ``connection`` and fail its in-flight commands."""
        removed = [
            device_id
            for device_id, session in self._sessions.items()
            if session.connection is connection
        ]
        for device_id in removed:
            del self._sessions[device_id]
            self._fail_pending(device_id, DeviceOffline("Device disconnected"))
            logger.info("device %s disconnected", device_id)
        return removed

    def prune_stale(self) -> List[str]:
        """Forget devices whose last message is older than the heartbeat timeout."""
        now = self._clock()
        stale = [
            session
            for session in self._sessions.values()
            if now - session.last_seen > self.heartbeat_timeout
        ]
        for session in stale:
            logger.warning(
                "device %s missed heartbeats for %.0fs, marking offline",
                session.device_id,
                now - session.last_seen,
            )
            del self._sessions[session.device_id]
            self._fail_pending(session.device_id, DeviceOffline("Device stopped heartbeating"))
        return [session.device_id for session in stale]

    def get(self, device_id: str) -> Optional[DeviceSession]:
        return self._sessions.get(device_id)

    def sessions(self) -> List[DeviceSession]:
        return list(self._sessions.values())

    def is_online(self, device_id: str) -> bool:
        session = self._sessions.get(device_id)
        if session is None:
            return False
        return self._clock() - session.last_seen <= self.heartbeat_timeout

    def online_count(self) -> int:
        return sum(1 for device_id in self._sessions if self.is_online(device_id))

    def is_busy(self, device_id: str) -> bool:
        lock = self._locks.get(device_id)
        return lock is not None and lock.locked()

    def pending_count(self) -> int:
        return len(self._pending)

    # Inbound messages

    async def handle_message(self, connection: Any, message: JsonDict) -> None:
        msg_type = message.get("type")
        device_id = message.get("deviceId")

        if msg_type == "device_register":
            if not device_id:
                await self._reply(connection, {"type": "error", "error": "deviceId is required"})
                return
            capabilities = message.get("capabilities")
            self.register(
                str(device_id),
                connection,
                capabilities if isinstance(capabilities, list) else None,
                name=message.get("name"),
            )
            await self._reply(
                connection,
                {"type": "registration_ack", "deviceId": device_id, "timestamp": utc_now_iso()},
            )
        elif msg_type in ("heartbeat", "pong"):
            if self._touch(device_id, connection):
                logger.debug("%s from %s", msg_type, device_id)
        elif msg_type == "ping":
            self._touch(device_id, connection)
            await self._reply(connection, {"type": "pong", "timestamp": utc_now_iso()})
        elif msg_type == "device_status":
            if self._touch(device_id, connection) and message.get("status"):
                self._sessions[device_id].status = str(message["status"])
        elif msg_type == "command_response":
            self._touch(device_id, connection)
            self._resolve(DeviceResponse.from_message(message))
        else:
            logger.info("unknown message type %r from %s", msg_type, device_id or "unregistered connection")
            await self._reply(
                connection,
                {"type": "error", "error": f"Unknown message type: {msg_type}"},
            )

    def _touch(self, device_id: Optional[str], connection: Any) -> bool:
        session = self._sessions.get(device_id) if device_id else None
        if session is None or session.connection is not connection:
            return False
        session.last_seen = self._clock()
        session.last_seen_at = utc_now_iso()
        return True

    def _resolve(self, response: DeviceResponse) -> None:
        pending = self._pending.get(response.command_id)
        if pending is None:
            logger.warning(
                "ignoring response for unknown or expired command %r from %s",
                response.command_id,
                response.device_id,
            )
            return
        if response.device_id and response.device_id != pending.device_id:
            logger.warning(
                "ignoring response for command %s from %s, expected %s",
                response.command_id,
                response.device_id,
                pending.device_id,
            )
            return
        if not pending.future.done():
            pending.future.set_result(response)

    def _fail_pending(self, device_id: str, exc: Exception) -> None:
        for pending in list(self._pending.values()):
            if pending.device_id == device_id and not pending.future.done():
                pending.future.set_exception(exc)

    @staticmethod
    async def _reply(connection: Any, message: JsonDict) -> None:
        try:
            await connection.send_json(message)
        except Exception as exc:
            logger.warning("failed to send %s to device connection: %s", message.get("type"), exc)

    # Outbound commands

    async def dispatch(
        self,
        device_id: str,
        command: str,
        metadata: Optional[JsonDict] = None,
        *,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        queue_timeout: Optional[float] = None,
    ) -> DeviceResponse:
        """Send one command and wait for its correlated response.

        Commands to the same device queue behind the device lock for up to
        ``queue_timeout`` seconds (defaults to ``timeout``) and then fail with
        ``DeviceBusy``; a ``queue_timeout`` of 0 rejects immediately when busy.
        The command is never re-sent.
        """
        if not self.is_online(device_id):
            raise DeviceOffline()

        lock = self._locks.setdefault(device_id, asyncio.Lock())
        wait = timeout if queue_timeout is None else queue_timeout
        if wait <= 0:
            if lock.locked():
                raise DeviceBusy()
            await lock.acquire()
        else:
            try:
                await asyncio.wait_for(lock.acquire(), wait)
            except asyncio.TimeoutError as exc:
                raise DeviceBusy() from exc

        command_id = uuid.uuid4().hex
        try:
            session = self._sessions.get(device_id)
            if session is None or not self.is_online(device_id):
                raise DeviceOffline()

            future = asyncio.get_running_loop().create_future()
            self._pending[command_id] = PendingCommand(command_id, device_id, command, future)
            message = {
                "type": "command",
                "deviceId": device_id,
                "command": command,
                "commandId": command_id,
                "metadata": metadata or {},
                "timestamp": utc_now_iso(),
            }
            try:
                await session.connection.send_json(message)
            except Exception as exc:
                raise DeviceOffline(f"Failed to send command to device: {exc}") from exc
            logger.info("dispatched %s to %s command_id=%s", command, device_id, command_id)

            try:
                response = await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError as exc:
                logger.warning(
                    "device %s did not answer %s within %.1fs command_id=%s",
                    device_id,
                    command,
                    timeout,
                    command_id,
                )
                raise DeviceTimeout() from exc
            logger.info(
                "device %s answered %s success=%s command_id=%s",
                device_id,
                command,
                response.success,
                command_id,
            )
            return response
        finally:
            self._pending.pop(command_id, None)
            lock.release()
