import logging
from datetime import datetime, timedelta, timezone

from ..config.config import settings
from ..db.db_client import AsyncPostgresClient

logger = logging.getLogger(__name__)


async def purge_expired_qr_tokens_task(db_client: AsyncPostgresClient):
    """
    Deletes QR tokens that expired more than TOKEN_PURGE_RETENTION_HOURS ago.

    Dynamic QR issues a token every refresh interval, so the table grows
    quickly during lectures. Attempts keep the raw token string, so the audit
    trail does not depend on these rows. Sessions are not touched: whether a
    session is live is always decided at read time.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(hours=settings.TOKEN_PURGE_RETENTION_HOURS)
    logger.info(f"Purging QR tokens expired before {cutoff.isoformat()}...")
    try:
        deleted = await db_client.purge_expired_qr_tokens(cutoff)
        logger.info(f"Purged {deleted} expired QR tokens.")
        return deleted
    except Exception as e:
        logger.error(f"QR token purge failed: {e}", exc_info=True)
        return 0
