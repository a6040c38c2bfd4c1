# The MIT License (MIT)
# Copyright © 2025 Entrius

import json
from unittest.mock import Mock, patch

import redis

from cbs.skip_cache.store import SkipCacheStore, cache_key
from cbs.utils.config import CacheConfig

CONFIG = CacheConfig(redis_url='redis://cache.example.com:6379/0', redis_password='hunter2')


def test_cache_key():
    assert cache_key('polkadot', 7) == 'cbs/polkadot/PR-7'


class TestSkipCacheStore:
    def test_round_trip_through_client(self, record):
        client = Mock()
        store = SkipCacheStore(CONFIG, client=client)

        assert store.put('cbs/polkadot/PR-7', record)
        key, payload = client.set.call_args[0]
        assert key == 'cbs/polkadot/PR-7'
        assert json.loads(payload)['dependent']['sha'] == 'dependent-sha'

        client.get.return_value = payload
        loaded = store.get('cbs/polkadot/PR-7')
        assert loaded.dependent_files == record.dependent_files
        assert set(loaded.dependencies) == set(record.dependencies)

    def test_missing_key(self):
        client = Mock()
        client.get.return_value = None

        assert SkipCacheStore(CONFIG, client=client).get('cbs/polkadot/PR-7') is None

    def test_unreadable_record(self):
        client = Mock()
        client.get.return_value = '{not json'

        assert SkipCacheStore(CONFIG, client=client).get('cbs/polkadot/PR-7') is None

    def test_connection_errors_are_not_fatal(self, record):
        client = Mock()
        client.get.side_effect = redis.ConnectionError('connection refused')
        client.set.side_effect = redis.ConnectionError('connection refused')
        store = SkipCacheStore(CONFIG, client=client)

        assert store.get('cbs/polkadot/PR-7') is None
        assert store.put('cbs/polkadot/PR-7', record) is False

    @patch('cbs.skip_cache.store.redis.Redis.from_url')
    def test_client_is_created_lazily(self, mock_from_url):
        store = SkipCacheStore(CONFIG)
        mock_from_url.assert_not_called()

        assert store.client is mock_from_url.return_value
        mock_from_url.assert_called_once_with(
            'redis://cache.example.com:6379/0',
            password='hunter2',
            socket_timeout=32,
            socket_connect_timeout=32,
            decode_responses=True,
        )

    def test_malformed_url_is_not_fatal(self, record):
        store = SkipCacheStore(CacheConfig(redis_url='cache.example.com:6379'))

        assert store.get('cbs/polkadot/PR-7') is None
        assert store.put('cbs/polkadot/PR-7', record) is False
