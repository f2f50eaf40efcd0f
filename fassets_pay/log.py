"""
Logging setup and rate-limited logging.

Observers hit the same failure every poll cycle while a node is down;
rate_limited_log() emits each distinct message at most once per
interval so the log stays readable.
"""

import logging
import threading
from typing import Optional

from cachetools import TTLCache

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# One cache per interval; keys are "level:message".
_caches: dict[int, TTLCache] = {}
_caches_lock = threading.RLock()


def configure_logging(level: str = "INFO") -> None:
    """Install a root handler for the daemon."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def rate_limited_log(
    message: str,
    level: str = "warning",
    interval: int = 60,
    logger_instance: Optional[logging.Logger] = None
) -> bool:
    """
    Log a message at most once per interval, in a thread-safe manner.

    Args:
        message: Message to log
        level: Log level (debug, info, warning, error, critical)
        interval: Minimum interval between identical logs in seconds
        logger_instance: Logger to use (defaults to module logger)

    Returns:
        True if the message was emitted, False if suppressed
    """
    log_instance = logger_instance or logger
    log_method = getattr(log_instance, level.lower(), log_instance.warning)
    key = f"{log_instance.name}:{level}:{message}"

    with _caches_lock:
        cache = _caches.get(interval)
        if cache is None:
            cache = TTLCache(maxsize=256, ttl=interval)
            _caches[interval] = cache
        if key in cache:
            return False
        cache[key] = True

    log_method(message)
    return True


def reset_rate_limits() -> None:
    """Forget all suppressed messages (tests)."""
    with _caches_lock:
        _caches.clear()
