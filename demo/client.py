import asyncio
import os

from dotenv import load_dotenv

from gacha_x402 import LocalAccountWallet, PaymentExecutor, X402Client
from gacha_x402.config import configure_logging

load_dotenv()
configure_logging(os.getenv("GACHA_LOG_LEVEL", "INFO"))

PRIVATE_KEY = os.getenv("PRIVATE_KEY")
if not PRIVATE_KEY or not PRIVATE_KEY.startswith("0x"):
    raise SystemExit("PRIVATE_KEY env var must be set and start with 0x")

API_URL = os.getenv("API_URL", "http://localhost:3000")
DEVICE_ID = os.getenv("DEVICE_ID", "ESP32_001")
COMMAND = os.getenv("COMMAND", "play")


async def main():
    wallet = LocalAccountWallet(PRIVATE_KEY)
    try:
        async with X402Client(API_URL, PaymentExecutor(wallet)) as client:
            outcome = await client.execute_device_command(DEVICE_ID, COMMAND, wallet.address)
    finally:
        await wallet.aclose()

    print("State:", outcome.state.value)
    print("Status:", outcome.status_code)
    if outcome.success:
        print("Result:", outcome.body.get("result") if isinstance(outcome.body, dict) else outcome.body)
        if outcome.payment is not None:
            print("Paid:", outcome.payment.amount, outcome.payment.currency, "tx", outcome.payment.tx_hash)
    else:
        print("Error:", outcome.error)
        if outcome.tx_hash:
            print("Payment sent but command not confirmed, tx", outcome.tx_hash)


asyncio.run(main())
