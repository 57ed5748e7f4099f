import uvicorn
import os
from logging_config import setup_logging

# Setup logging before importing app
log_level = os.getenv("LOG_LEVEL", "DEBUG")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)

from app import app
from constants import HOST, PORT
from logging_config import get_logger

logger = get_logger(__name__)


def main():
    logger.info(f"Starting rendezvous server on {HOST}:{PORT}")
    # A single worker: the in-memory room map is process-local
    uvicorn.run(app, host=HOST, port=PORT)


if __name__ == "__main__":
    main()
