"""
Supabase-backed store for cached frame descriptions.

Rows live in the ``frame_analysis_cache`` table keyed by ``image_hash``.
The store is synchronous; ``ContentCache`` runs it in a worker thread.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from src.shared.batch.cache import CacheEntry
from src.shared.batch.retry import retry_on_network_error

logger = logging.getLogger(__name__)

_CLEANUP_RPC = "cleanup_expired_frame_cache"


def _to_iso(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


def _to_epoch(value: str) -> float:
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


class SupabaseCacheStore:
    """
    Cache store writing frame results to Supabase.

    Reads ignore expired rows, writes upsert on ``image_hash`` and sweeps
    call the database cleanup function.
    """

    def __init__(self, client, table_name: str = "frame_analysis_cache"):
        """
        Initialize the store.

        Args:
            client: Supabase client (see ``src.shared.db.get_supabase_client``)
            table_name: Name of the cache table
        """
        self.client = client
        self.table_name = table_name
        logger.info(f"Initialized SupabaseCacheStore for table: {table_name}")

    def get(self, fingerprint: str) -> Optional[CacheEntry]:
        now_iso = _to_iso(datetime.now(timezone.utc).timestamp())
        response = retry_on_network_error(
            lambda: self.client.table(self.table_name)
            .select("image_hash, ai_description, created_at, expires_at")
            .eq("image_hash", fingerprint)
            .gt("expires_at", now_iso)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None

        row = rows[0]
        return CacheEntry(
            fingerprint=row["image_hash"],
            result=row["ai_description"],
            created_at=_to_epoch(row["created_at"]),
            expires_at=_to_epoch(row["expires_at"]),
        )

    def put(self, entry: CacheEntry) -> None:
        record = {
            "image_hash": entry.fingerprint,
            "ai_description": str(entry.result),
            "created_at": _to_iso(entry.created_at),
            "expires_at": _to_iso(entry.expires_at),
        }
        retry_on_network_error(
            lambda: self.client.table(self.table_name)
            .upsert(record, on_conflict="image_hash")
            .execute()
        )
        logger.debug(f"Cached frame result {entry.fingerprint[:12]}")

    def delete_expired(self, now: float) -> int:
        """
        Remove expired rows.

        Returns:
            Number of rows deleted; 0 when the database function did the work
            (it does not report a count).
        """
        try:
            self.client.rpc(_CLEANUP_RPC).execute()
            logger.debug("Expired frame cache rows removed via %s()", _CLEANUP_RPC)
            return 0
        except Exception as e:
            logger.warning(f"{_CLEANUP_RPC}() unavailable, deleting expired rows directly: {e}")

        response = (
            self.client.table(self.table_name)
            .delete()
            .lt("expires_at", _to_iso(now))
            .execute()
        )
        return len(response.data or [])
