import json
import logging
import sys

import uvicorn
from dotenv import load_dotenv

from chat_gateway.config import config_summary, get_settings, validate_config
from chat_gateway.utils.logging import configure_logging

logger = logging.getLogger("chat_gateway")


def main() -> None:
    load_dotenv()
    settings = get_settings()
    configure_logging(settings.log_level)

    errors = validate_config(settings)
    for error in errors:
        logger.error("Configuration error: %s", error)
    if errors and settings.is_production:
        sys.exit(1)

    logger.info("Configuration: %s", json.dumps(config_summary(settings)))

    uvicorn.run(
        "chat_gateway.api.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
