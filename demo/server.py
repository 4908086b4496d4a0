import uvicorn
from dotenv import load_dotenv

from gacha_x402.config import ConfigError, GatewaySettings, configure_logging
from gacha_x402.server import create_app

load_dotenv()

try:
    settings = GatewaySettings.from_env()
except ConfigError as exc:
    raise SystemExit(f"invalid configuration: {exc}")

configure_logging(settings.log_level)
app = create_app(settings)

if __name__ == "__main__":
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
