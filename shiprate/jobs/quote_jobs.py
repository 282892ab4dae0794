"""
Quote Session Jobs

Background housekeeping for quote sessions:
- Purge unbooked sessions once they are past expiry plus retention
- Drop expired entries from the in-memory catalog cache
"""

import logging
from datetime import datetime, timedelta, timezone

logger = logging.getLogger(__name__)


async def purge_expired_quote_sessions() -> int:
    """
    Delete quote sessions that expired more than
    QUOTE_SESSION_RETENTION_HOURS ago and were never booked.

    Booked sessions are kept; their shipments reference them.
    """
    from shiprate.config import settings
    from shiprate.database import get_db_session
    from shiprate.services.quote_session_store import QuoteSessionStore

    start_time = datetime.now(timezone.utc)
    cutoff = start_time - timedelta(hours=settings.QUOTE_SESSION_RETENTION_HOURS)

    try:
        async with get_db_session() as session:
            purged = await QuoteSessionStore(session).purge_expired(cutoff)

        elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
        logger.info(f"Purged {purged} expired quote sessions in {elapsed:.2f}s")
        return purged

    except Exception as e:
        logger.error(f"Quote session purge failed: {e}")
        raise


async def cleanup_memory_cache() -> int:
    """Evict expired entries when running on the in-memory cache backend."""
    from shiprate.services.cache_service import InMemoryCache, get_cache

    backend = get_cache().backend
    if not isinstance(backend, InMemoryCache):
        return 0
    removed = await backend.cleanup_expired()
    if removed:
        logger.info(f"Evicted {removed} expired cache entries")
    return removed
