# The MIT License (MIT)
# Copyright © 2025 Entrius

"""Shared fixtures for resolver tests."""

from unittest.mock import Mock, patch

import pytest

from cbs.utils.git_client import GitClient

ORG = 'acme'


def make_pull_request(body='', base='master', state='open', mergeable=True, sha='0' * 40, default_branch='master'):
    """Minimal GitHub /pulls/<number> payload."""
    return {
        'body': body,
        'state': state,
        'mergeable': mergeable,
        'head': {'sha': sha},
        'base': {'ref': base, 'repo': {'default_branch': default_branch}},
    }


class FakePullRequests:
    """Serves pull request payloads by (repository, number) and records every fetch."""

    def __init__(self, pull_requests):
        self.pull_requests = pull_requests
        self.fetched = []

    def __call__(self, org, repo, pr_number, token):
        self.fetched.append((repo, pr_number))
        return self.pull_requests.get((repo, pr_number))


@pytest.fixture
def git():
    client = Mock(spec=GitClient)
    client.rev_parse.return_value = 'f' * 40
    client.merge_upstream.return_value = True
    return client


@pytest.fixture
def make_pr():
    return make_pull_request


@pytest.fixture
def serve_pull_requests():
    """Patch the resolver's GitHub lookups with canned payloads keyed by (repository, number)."""
    patchers = []

    def serve(pull_requests):
        fake = FakePullRequests(pull_requests)
        patcher = patch('cbs.resolver.companion_graph.get_pull_request', side_effect=fake)
        patcher.start()
        patchers.append(patcher)
        return fake

    yield serve

    for patcher in patchers:
        patcher.stop()
