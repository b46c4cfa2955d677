"""Serverless entry point: exposes the ledger app behind the /api prefix."""

from mangum import Mangum

from reward_ledger.api import create_app
from reward_ledger.config import get_settings
from reward_ledger.logging_config import setup_logging

# Mangum runs without the ASGI lifespan, so logging is configured at import.
settings = get_settings()
setup_logging(settings.log_level, settings.log_json)

app = create_app()
app.root_path = "/api"

handler = Mangum(app, lifespan="off")
