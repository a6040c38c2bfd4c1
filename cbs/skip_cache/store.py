# The MIT License (MIT)
# Copyright © 2025 Entrius

import json
import logging
from typing import Optional

import redis

from cbs.classes import CacheRecord
from cbs.constants import CACHE_KEY_PREFIX, CACHE_TIMEOUT_SECONDS
from cbs.utils.config import CacheConfig

logger = logging.getLogger(__name__)


def cache_key(dependent: str, pr_number: int) -> str:
    return f"{CACHE_KEY_PREFIX}/{dependent}/PR-{pr_number}"


class SkipCacheStore:
    """Redis store of skip-cache records, one JSON document per key.

    Records are only ever replaced as a whole. Failures are logged and reported
    as a missing record (reads) or as False (writes).
    """

    def __init__(self, config: CacheConfig, client: Optional[redis.Redis] = None):
        self.config = config
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(
                self.config.redis_url,
                password=self.config.redis_password,
                socket_timeout=CACHE_TIMEOUT_SECONDS,
                socket_connect_timeout=CACHE_TIMEOUT_SECONDS,
                decode_responses=True,
            )
        return self._client

    def get(self, key: str) -> Optional[CacheRecord]:
        logger.info(f"Fetching skip cache record from {key}")
        try:
            raw = self.client.get(key)
        except (redis.RedisError, ValueError) as e:
            logger.warning(f"Failed to read skip cache record {key}: {e}")
            return None

        if not raw:
            logger.info(f"No skip cache record found at {key}")
            return None

        try:
            return CacheRecord.from_payload(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Skip cache record {key} could not be parsed: {e}")
            return None

    def put(self, key: str, record: CacheRecord) -> bool:
        payload = json.dumps(record.to_payload())
        logger.info(f"Uploading skip cache record to key {key}")
        logger.debug(f"Skip cache payload: {payload}")
        try:
            self.client.set(key, payload)
        except (redis.RedisError, ValueError) as e:
            logger.warning(f"Failed to write skip cache record {key}: {e}")
            return False
        return True
