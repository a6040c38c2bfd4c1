# The MIT License (MIT)
# Copyright © 2025 Entrius

"""Shared fixtures for skip cache tests."""

from unittest.mock import Mock

import pytest

from cbs.classes import CachedDependency, CacheRecord, FileFingerprint, FingerprintSet
from cbs.skip_cache.store import SkipCacheStore
from cbs.utils.git_client import GitClient

SUBSTRATE_PREFIX = 'git+https://github.com/acme/substrate?branch=master#'

DEPENDENT_FILES = FingerprintSet(
    [
        FileFingerprint('Cargo.toml', '100644', 'aaa'),
        FileFingerprint('src/main.rs', '100644', 'bbb'),
    ]
)
SUBSTRATE_FILES = FingerprintSet([FileFingerprint('primitives/core/src/lib.rs', '100644', 'ccc')])

LOCK = {
    'package': [
        {'name': 'polkadot', 'version': '0.9.20'},
        {'name': 'serde', 'version': '1.0.0', 'source': 'registry+https://github.com/rust-lang/crates.io-index'},
        {'name': 'sp-core', 'version': '6.0.0', 'source': f'{SUBSTRATE_PREFIX}old-sha'},
        {'name': 'sp-io', 'version': '6.0.0', 'source': f'{SUBSTRATE_PREFIX}old-sha'},
    ]
}


def lock_at(sha, extra=()):
    """The recorded lock with substrate moved to ``sha``, plus ``extra`` packages."""
    packages = []
    for package in LOCK['package']:
        package = dict(package)
        if package.get('source', '').startswith(SUBSTRATE_PREFIX):
            package['source'] = f'{SUBSTRATE_PREFIX}{sha}'
        packages.append(package)
    return {'package': packages + list(extra)}


def make_record():
    return CacheRecord(
        manifest_lock=LOCK,
        dependencies={
            SUBSTRATE_PREFIX: CachedDependency(
                url='https://github.com/acme/substrate/archive/old-sha.tar.gz',
                files=SUBSTRATE_FILES,
                repository='substrate',
                sha='old-sha',
            )
        },
        dependent_files=DEPENDENT_FILES,
        dependent_sha='dependent-sha',
        jobs='https://gitlab.parity.io/api/v4/projects/12/pipelines/345/jobs',
    )


@pytest.fixture
def record():
    return make_record()


@pytest.fixture
def current_lock():
    return lock_at


@pytest.fixture
def store(record):
    store = Mock(spec=SkipCacheStore)
    store.get.return_value = record
    store.put.return_value = True
    return store


@pytest.fixture
def git():
    client = Mock(spec=GitClient)
    client.ls_files_stage.return_value = '100644 ccc 0\tprimitives/core/src/lib.rs\n'
    return client
