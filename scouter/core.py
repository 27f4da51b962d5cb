"""
FILE DESCRIPTION: Foundational module for global configuration and logging.
CONSOLIDATED FROM: config, logger
KEY FUNCTIONS/CLASSES: setup_logger, CompanyFormatter, env_int, logger
"""

import logging
import sys
import os
from datetime import datetime
from pathlib import Path
from dotenv import load_dotenv

# === CONFIGURATION SECTION ===

# Load .env from the repository root
load_dotenv(Path(__file__).resolve().parents[1] / '.env')


def env_int(name, default=None, environ=None):
    """Read a positive integer from the environment, ignoring blank or invalid values."""
    environ = os.environ if environ is None else environ
    raw = environ.get(name)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        value = int(str(raw).strip())
    except ValueError:
        return default
    return value if value > 0 else default


def env_float(name, default):
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# Network timeouts (seconds)
CONNECT_TIMEOUT = env_float("CONNECT_TIMEOUT", 3.0)
REQUEST_TIMEOUT = env_float("REQUEST_TIMEOUT", 5.0)
ROBOTS_TIMEOUT = env_float("ROBOTS_TIMEOUT", 5.0)
RENDER_TIMEOUT = env_float("RENDER_TIMEOUT", 60.0)
RENDER_CONNECT_TIMEOUT = env_float("RENDER_CONNECT_TIMEOUT", 10.0)
RENDER_HEALTH_TIMEOUT = env_float("RENDER_HEALTH_TIMEOUT", 5.0)

# External JS rendering service
RENDERER_URL = os.getenv("RENDERER_URL", "http://renderer:3000").rstrip("/")

DEFAULT_USER_AGENT = "Scouter/0.3 (Crawler developed by Lokoe SASU; +https://lokoe.fr/scouter-crawler)"

# canonical data directory for crawl databases and watchdog state
DATA_DIR = Path(os.getenv("SCOUTER_DATA_DIR", Path(__file__).resolve().parents[1] / 'data'))
DATABASE_PATH = Path(os.getenv("SCOUTER_DATABASE", DATA_DIR / "scouter.db"))
WATCHDOG_STATE_FILE = Path(os.getenv("WATCHDOG_STATE_FILE", DATA_DIR / "watchdog_state.json"))

# Hamming distance under which two pages of a crawl are near-duplicates
DUPLICATE_THRESHOLD = env_int("DUPLICATE_THRESHOLD", 3)

# Worker polling interval (seconds)
WORKER_POLL_INTERVAL = env_float("WORKER_POLL_INTERVAL", 2.0)


# === LOGGING SECTION ===

class CompanyFormatter(logging.Formatter):
    """
    FLOW: Receives a log record -> Extracts timestamp -> Formats according to company standard
    (e.g., [ Tue Jan 06 05:32:41 AM UTC 2026 ]) -> Prepends level and context -> Returns final string.
    """
    def format(self, record):
        dt = datetime.fromtimestamp(record.created)
        timestamp = dt.strftime("%a %b %d %I:%M:%S %p UTC %Y")
        context = getattr(record, 'context', 'root')
        message = f"[ {timestamp} ] : {record.levelname} : {context} : {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def setup_logger(name="scouter", log_file=None, level=logging.INFO):
    """
    FLOW: Initializes/Retrieves logger -> Checks for existing handlers to prevent duplicates ->
    Sets propagation for child loggers -> Attaches Console and optional File handlers with CompanyFormatter.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    if name != "scouter":
        logger.propagate = True
        setup_logger("scouter", log_file=log_file, level=level)
        return logger

    formatter = CompanyFormatter()

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # File handler (optional)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


# Global logger instance
logger = setup_logger(log_file=os.getenv("SCOUTER_LOG_FILE") or None)

# --- Environment Checks ---
try:
    import brotli  # noqa: F401
    logger.debug("[SYSTEM] Brotli library found. Decompression enabled.")
except ImportError:
    logger.warning("[SYSTEM] Brotli library NOT found. Brotli-encoded responses will fail to decompress.")
