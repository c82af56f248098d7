"""Standalone process: `python -m infinitequiz.server` or the `infinitequiz` script."""
import uvicorn

from .config import settings
from .logging_utils import get_logger

logger = get_logger("infinitequiz.server")


def main():
    logger.info("server_starting", extra={"url": f"http://{settings.HOST}:{settings.PORT}"})
    # log_config=None keeps the handlers installed by setup_logging
    uvicorn.run("infinitequiz.main:app", host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    main()
