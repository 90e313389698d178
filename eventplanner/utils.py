import logging
import random
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple, Type, TypeVar

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from eventplanner.config import settings
from eventplanner.errors import TransientCollaboratorError

T = TypeVar("T")

# --- Logger Setup ---
_loggers: Dict[str, logging.Logger] = {}


def setup_logger(logger_name: str, log_file_prefix: str, level: int = logging.INFO) -> logging.Logger:
    """Configures and returns a logger that outputs to console and a timestamped file."""
    if logger_name in _loggers:
        return _loggers[logger_name]

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False

    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(module)s.%(funcName)s:%(lineno)d - %(message)s"
    )

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    log_dir = settings.log_output_directory
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file_path = log_dir / f"{log_file_prefix}_{timestamp}.log"
        fh = logging.FileHandler(log_file_path)
        fh.setLevel(level)
        fh.setFormatter(formatter)
        logger.addHandler(fh)
    except OSError as e:
        logger.error(f"Failed to create file handler for logger {logger_name} at {log_dir}: {e}")

    _loggers[logger_name] = logger
    return logger


# --- Time helpers ---

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """MongoDB hands back naive datetimes in UTC; attach the zone so comparisons stay aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# --- Retry ---

def backoff_delay(attempt: int, base_delay: float = 1.0, multiplier: float = 2.0,
                  max_delay: float = 30.0, jitter: bool = True) -> float:
    """Exponential delay for the given zero-based retry attempt, scaled into 50-100% when jittered."""
    delay = min(base_delay * (multiplier ** attempt), max_delay)
    if jitter:
        delay *= 0.5 + random.random() * 0.5
    return delay


def retry_with_backoff(
    operation: Callable[[], T],
    *,
    retryable: Tuple[Type[BaseException], ...] = (TransientCollaboratorError,),
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    multiplier: float = 2.0,
    jitter: bool = True,
    sleep: Callable[[float], None] = time.sleep,
    logger: Optional[logging.Logger] = None,
    operation_name: str = "operation",
) -> T:
    """
    Runs `operation`, retrying only the exception types in `retryable`.

    Anything else propagates immediately. When retries are exhausted the last
    retryable exception is re-raised.
    """
    log = logger or logging.getLogger(__name__)
    attempt = 0
    while True:
        try:
            return operation()
        except retryable as e:
            if attempt >= max_retries:
                log.error(f"{operation_name} failed after {attempt + 1} attempts: {e}")
                raise
            delay = backoff_delay(attempt, base_delay, multiplier, max_delay, jitter)
            log.warning(f"{operation_name} attempt {attempt + 1}/{max_retries + 1} failed: {e}. Retrying in {delay:.2f}s")
            sleep(delay)
            attempt += 1


# --- HTTP ---

RETRY_STATUSES = (429, 500, 502, 503, 504)


def create_retrying_session(total: int = 3, backoff_factor: float = 1,
                            allowed_methods: Tuple[str, ...] = ("GET",)) -> requests.Session:
    """requests session that retries throttling and 5xx responses via urllib3."""
    session = requests.Session()
    retry_strategy = Retry(
        total=total,
        backoff_factor=backoff_factor,
        status_forcelist=list(RETRY_STATUSES),
        allowed_methods=list(allowed_methods),
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session
