"""
Thread-safe rate-limited logging utilities.

Polling loops hit the same failure on every tick while a node or backend is
down; this keeps the first occurrence visible without flooding the log.
"""
import logging
import threading
from typing import Dict, Optional

from cachetools import TTLCache

logger = logging.getLogger(__name__)

_MAX_KEYS = 256

# One TTL cache per interval so each caller's interval is honoured
_caches: Dict[int, TTLCache] = {}
_cache_lock = threading.RLock()


def _cache_for(interval: int) -> TTLCache:
    cache = _caches.get(interval)
    if cache is None:
        cache = TTLCache(maxsize=_MAX_KEYS, ttl=interval)
        _caches[interval] = cache
    return cache


def rate_limited_log(
    message: str,
    level: str = "warning",
    interval: int = 60,
    logger_instance: Optional[logging.Logger] = None,
    key: Optional[str] = None
) -> bool:
    """
    Log a message at most once per ``interval`` seconds.

    Args:
        message: Message to log
        level: Log level (debug, info, warning, error, critical)
        interval: Minimum interval between identical logs in seconds
        logger_instance: Logger to use (defaults to module logger)
        key: Deduplication key (defaults to level and message)

    Returns:
        True if the message was logged, False if it was suppressed
    """
    log_instance = logger_instance or logger
    log_method = getattr(log_instance, level.lower(), log_instance.warning)
    cache_key = key or f"{level}:{message}"

    with _cache_lock:
        cache = _cache_for(interval)
        if cache_key in cache:
            return False
        cache[cache_key] = True

    log_method(message)
    return True


def reset_rate_limits() -> None:
    """Forget all suppressed messages."""
    with _cache_lock:
        for cache in _caches.values():
            cache.clear()
