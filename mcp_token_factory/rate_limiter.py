"""
Caller Rate Limiting

Limits how many factory requests a single caller identity may submit per minute through the
MCP server. Every InitiateNew deploys up to two entities, so unbounded bursts from one caller
would grow the sandbox without limit.

Rate Limiting Algorithm:
- Fixed 60-second window per caller, started by the caller's first request
- Counter resets once the window has expired
- OrderedDict keeps callers in least-recently-used order so stale entries are cheap to drop
"""
import time
from typing import Tuple
from collections import OrderedDict

from mcp_token_factory.config import RATE_LIMIT_PER_MINUTE
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

WINDOW_SECONDS = 60
MAX_TRACKED_CALLERS = 1000

# {caller: (count, first_request_timestamp_in_window)}
rate_limit_cache: "OrderedDict[str, Tuple[int, int]]" = OrderedDict()


def check_rate_limit(caller: str) -> bool:
    """
    Checks if the given caller has exceeded the rate limit, counting this request.

    Args:
        caller: Base58 identity of the caller.

    Returns:
        True if the request is allowed, False if rate limit exceeded.
    """
    now = int(time.time())
    limit = RATE_LIMIT_PER_MINUTE

    if len(rate_limit_cache) > MAX_TRACKED_CALLERS:
        cleanup_old_entries(now - WINDOW_SECONDS)

    if caller not in rate_limit_cache:
        rate_limit_cache[caller] = (1, now)
        logger.debug(f"Rate limit initiated for caller: {caller}")
        return True

    count, timestamp = rate_limit_cache[caller]
    rate_limit_cache.move_to_end(caller)
    if now - timestamp >= WINDOW_SECONDS:
        rate_limit_cache[caller] = (1, now)
        logger.debug(f"Rate limit window reset for caller: {caller}")
        return True
    if count >= limit:
        logger.warning(f"Rate limit exceeded for caller: {caller}. Count: {count}, Limit: {limit}")
        return False

    rate_limit_cache[caller] = (count + 1, timestamp)
    logger.debug(f"Rate limit check passed for caller: {caller}. Count: {count + 1}")
    return True


def cleanup_old_entries(cutoff_time: int):
    """
    Removes entries whose window started before the cutoff time.

    Args:
        cutoff_time: Unix timestamp, entries before this time will be removed.
    """
    to_remove = [caller for caller, (_, timestamp) in rate_limit_cache.items() if timestamp < cutoff_time]
    for caller in to_remove:
        del rate_limit_cache[caller]

    if to_remove:
        logger.debug(f"Cleaned up {len(to_remove)} old rate limit entries")
