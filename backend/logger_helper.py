import gzip
import logging
import os
import shutil
import time
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler

from fastapi import Request

LOG_FILE = os.getenv("LOG_FILE", "request_performance.log")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_MAX_SIZE = 20 * 1024 * 1024  # 20 MB
LOG_BACKUP_COUNT = 5             # Keep last 5 log files
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _gzip_namer(default_name: str) -> str:
    # Size rollovers can happen several times per week, keep each one
    return f"{default_name}.{datetime.now():%H%M%S}.gz"


def _gzip_rotator(source: str, dest: str) -> None:
    with open(source, "rb") as f_in, gzip.open(dest, "wb") as f_out:
        shutil.copyfileobj(f_in, f_out)
    os.remove(source)


class SizeCappedTimedRotatingFileHandler(TimedRotatingFileHandler):
    """
    Rotates weekly (Monday at midnight) or as soon as the file reaches
    ``max_bytes``, whichever comes first. Rotated files are gzip-compressed.
    """

    def __init__(self, filename, max_bytes=LOG_MAX_SIZE, backup_count=LOG_BACKUP_COUNT):
        super().__init__(filename, when="W0", backupCount=backup_count, encoding="utf-8", delay=True)
        self.max_bytes = max_bytes
        self.namer = _gzip_namer
        self.rotator = _gzip_rotator

    def shouldRollover(self, record):
        if super().shouldRollover(record):
            return True
        if self.max_bytes > 0 and os.path.exists(self.baseFilename):
            return os.path.getsize(self.baseFilename) >= self.max_bytes
        return False


def configure_logging(level: str = LOG_LEVEL):
    """Console logging for the application modules."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
               for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(console)


def setup_logger(log_file: str = LOG_FILE):
    """
    Configure the request performance logger.
    Rotation:
      - Weekly (every Monday at midnight)
      - Max file size: 20 MB
      - Automatically compresses old logs
    """
    logger = logging.getLogger("performance_logger")
    logger.setLevel(logging.INFO)

    if not any(getattr(h, "baseFilename", None) == os.path.abspath(log_file) for h in logger.handlers):
        handler = SizeCappedTimedRotatingFileHandler(log_file)
        handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
        logger.addHandler(handler)

    return logger


def create_logging_middleware(app, logger):
    """
    Adds a middleware to log request & response time, IP and status.
    Bodies are not logged: frames and photos travel as base64 images.
    """
    @app.middleware("http")
    async def log_request_response_time(request: Request, call_next):
        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "-"

        response = await call_next(request)
        process_time = time.perf_counter() - start_time

        logger.info(
            f"IP={client_ip} | {request.method} {request.url.path} | Status={response.status_code} | "
            f"Time={process_time:.4f}s | Length={request.headers.get('content-length', 0)}"
        )
        response.headers["X-Process-Time"] = str(round(process_time, 4))
        return response

    return app
