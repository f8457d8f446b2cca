"""Run the server: ``python -m tictactoe``."""
import sys

import uvicorn

from .config import get_settings
from .logging_utils import get_logger, setup_logging

logger = get_logger("tictactoe")


def main() -> int:
    settings = get_settings()
    setup_logging(settings.log_level)
    from .main import app

    try:
        # log_config=None keeps the handlers installed by setup_logging
        uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
    except SystemExit as exc:
        if exc.code:
            logger.critical("listener_failed", extra={"error": f"exit status {exc.code}"})
            return 1
    except OSError as exc:
        logger.critical("listener_failed", extra={"error": str(exc)})
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
