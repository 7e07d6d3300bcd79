"""Send a test digest email."""

from __future__ import annotations

import asyncio
import os
from dataclasses import replace

from dotenv import load_dotenv

from arbwatch.config import load_settings
from arbwatch.db.session import create_engine_from_env
from arbwatch.jobs.cycle import Pipeline
from arbwatch.logging_config import configure_logging


async def main() -> None:
    load_dotenv()
    configure_logging()
    recipient = os.environ.get("TEST_RECIPIENT")
    if not recipient:
        raise SystemExit("TEST_RECIPIENT env var required")
    settings = load_settings()
    settings = replace(settings, alerts=replace(settings.alerts, recipient=recipient, daily_summary=True))
    pipeline = Pipeline(create_engine_from_env(), settings)
    try:
        result = await pipeline.dispatcher.send_digest()
    finally:
        await pipeline.close()
    print(f"Digest to {recipient}: {result.outcome.value} ({result.included} opportunities)")


if __name__ == "__main__":
    asyncio.run(main())
