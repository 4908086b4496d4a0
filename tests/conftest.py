import asyncio

import pytest


class FakeDevice:
    """Device connection stub that answers commands through the registry."""

    def __init__(self, registry, device_id="ESP32_001", reply=True, success=True, delay=0.0, data=None):
        self.registry = registry
        self.device_id = device_id
        self.reply = reply
        self.success = success
        self.delay = delay
        self.data = data if data is not None else {"prize": "Rare Card"}
        self.sent = []

    async def send_json(self, message):
        self.sent.append(message)
        if message.get("type") == "command" and self.reply:
            asyncio.get_running_loop().create_task(self._answer(message))

    async def _answer(self, message):
        await asyncio.sleep(self.delay)
        response = {
            "type": "command_response",
            "deviceId": self.device_id,
            "commandId": message["commandId"],
            "success": self.success,
            "data": self.data,
        }
        if not self.success:
            response["error"] = "Capsule jammed"
        await self.registry.handle_message(self, response)

    async def register(self, capabilities=("play",)):
        await self.registry.handle_message(
            self,
            {"type": "device_register", "deviceId": self.device_id, "capabilities": list(capabilities)},
        )
        return self

    def commands(self):
        return [m for m in self.sent if m.get("type") == "command"]


@pytest.fixture
def make_device():
    return FakeDevice
