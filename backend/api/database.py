"""
Supabase connection manager: lazily created service-role client plus a retry helper
"""
import os
import threading
import time
import random
from supabase import create_client, Client
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def retry(f, tries=3, base=0.15):
    """Retry with exponential backoff + jitter"""
    for i in range(tries):
        try:
            return f()
        except Exception as e:
            if i == tries - 1:
                raise
            logger.warning(f"Supabase call failed (attempt {i + 1}/{tries}): {e}")
            time.sleep(base * (2 ** i) + random.random() * 0.05)


class SB:
    """Supabase singleton client manager"""
    _client: Optional[Client] = None
    _lock = threading.Lock()

    @classmethod
    def client(cls) -> Client:
        """Get or create singleton Supabase client"""
        if cls._client is None:
            with cls._lock:
                if cls._client is None:
                    url = os.environ.get("SUPABASE_URL", "")
                    key = os.environ.get("SUPABASE_KEY", "")
                    if not url or not key:
                        raise RuntimeError("SUPABASE_URL and SUPABASE_KEY must be set")
                    cls._client = retry(lambda: create_client(url, key))
                    logger.info("Supabase client initialized")
        return cls._client

    @classmethod
    def ping(cls) -> bool:
        """Lightweight health probe against the balance table"""
        try:
            r = cls.client().table("user_token_balance").select("user_id").limit(1).execute()
            return r.data is not None
        except Exception as e:
            logger.error(f"Health probe failed: {e}")
            return False

    @classmethod
    def dispose(cls):
        """Drop the cached client"""
        cls._client = None
        logger.info("Supabase client disposed")


def get_db() -> Client:
    """FastAPI dependency returning the shared Supabase client"""
    return SB.client()
