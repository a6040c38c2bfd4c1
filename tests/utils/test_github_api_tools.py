#!/usr/bin/env python3
# The MIT License (MIT)
# Copyright © 2025 Entrius

"""
Unit tests for github_api_tools module.

Tests the GitHub API interaction functions, particularly focusing on:
- Retry logic for transient failures (502, 503, 504)
- Exponential backoff behavior
- Rate limit detection
- Branch listing order and archive extraction

Run with: python run_tests.py tests/utils/
"""

import tarfile
import time
from unittest.mock import call, patch

import pytest
import requests

from cbs.utils.github_api_tools import (
    archive_url,
    branch_exists,
    branch_matches_pattern,
    download_archive,
    execute_graphql_query,
    get_most_recent_branches,
    get_pull_request,
    is_rate_limited,
    parse_rate_limit_headers,
)


# ============================================================================
# Pull requests and branches
# ============================================================================


class TestGetPullRequest:
    @patch('cbs.utils.github_api_tools.requests.get')
    def test_success(self, mock_get, make_response):
        mock_get.return_value = make_response(200, {'number': 5, 'state': 'open'})

        result = get_pull_request('acme', 'polkadot', 5, 'token')

        assert result == {'number': 5, 'state': 'open'}
        assert mock_get.call_args[0][0] == 'https://api.github.com/repos/acme/polkadot/pulls/5'
        assert mock_get.call_args[1]['headers']['Authorization'] == 'token token'

    @patch('cbs.utils.github_api_tools.requests.get')
    @patch('cbs.utils.github_api_tools.time.sleep')
    def test_retry_on_502_then_success(self, mock_sleep, mock_get, make_response):
        mock_get.side_effect = [make_response(502, text='Bad Gateway'), make_response(200, {'number': 5})]

        result = get_pull_request('acme', 'polkadot', 5, 'token')

        assert result == {'number': 5}
        assert mock_get.call_count == 2
        mock_sleep.assert_called_once_with(2)

    @patch('cbs.utils.github_api_tools.requests.get')
    @patch('cbs.utils.github_api_tools.time.sleep')
    def test_gives_up_after_three_attempts(self, mock_sleep, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError('Connection refused')

        assert get_pull_request('acme', 'polkadot', 5, 'token') is None
        assert mock_get.call_count == 3
        assert mock_sleep.call_count == 2

    @patch('cbs.utils.github_api_tools.requests.get')
    def test_not_found_is_not_retried(self, mock_get, make_response):
        mock_get.return_value = make_response(404)

        assert get_pull_request('acme', 'polkadot', 5, 'token') is None
        assert mock_get.call_count == 1


class TestBranchExists:
    @patch('cbs.utils.github_api_tools.requests.get')
    def test_existing_branch(self, mock_get, make_response):
        mock_get.return_value = make_response(200, {'name': 'release-v1'})
        assert branch_exists('acme', 'polkadot', 'release-v1', 'token') is True

    @patch('cbs.utils.github_api_tools.requests.get')
    def test_missing_branch(self, mock_get, make_response):
        mock_get.return_value = make_response(404)
        assert branch_exists('acme', 'polkadot', 'release-v1', 'token') is False

    @patch('cbs.utils.github_api_tools.requests.get')
    @patch('cbs.utils.github_api_tools.time.sleep')
    def test_unreachable(self, mock_sleep, mock_get):
        mock_get.side_effect = requests.exceptions.Timeout('timed out')
        assert branch_exists('acme', 'polkadot', 'release-v1', 'token') is None


class TestBranchMatchesPattern:
    def test_wildcard_suffix(self):
        assert branch_matches_pattern('release-v1.2', ['release-v*'])

    def test_case_sensitive(self):
        assert not branch_matches_pattern('Release-v1.2', ['release-v*'])

    def test_empty_patterns(self):
        assert not branch_matches_pattern('master', [])


# ============================================================================
# GraphQL
# ============================================================================


class TestGraphQLRetryLogic:
    @patch('cbs.utils.github_api_tools.requests.post')
    @patch('cbs.utils.github_api_tools.time.sleep')
    def test_retry_on_502_then_success(self, mock_sleep, mock_post, make_response):
        mock_post.side_effect = [
            make_response(502, text='<html><title>502 Bad Gateway</title></html>'),
            make_response(502, text='<html><title>502 Bad Gateway</title></html>'),
            make_response(200, {'data': {}}),
        ]

        result = execute_graphql_query('query {}', {}, 'token')

        assert result == {'data': {}}
        assert mock_post.call_count == 3
        # Verify exponential backoff: 5s, 10s
        mock_sleep.assert_has_calls([call(5), call(10)])

    @patch('cbs.utils.github_api_tools.requests.post')
    @patch('cbs.utils.github_api_tools.time.sleep')
    def test_gives_up_after_max_attempts(self, mock_sleep, mock_post, make_response):
        mock_post.return_value = make_response(503, text='Service Unavailable')

        assert execute_graphql_query('query {}', {}, 'token', max_attempts=4) is None
        assert mock_post.call_count == 4
        assert mock_sleep.call_count == 3

    @patch('cbs.utils.github_api_tools.requests.post')
    def test_graphql_errors_return_none(self, mock_post, make_response):
        mock_post.return_value = make_response(200, {'errors': [{'message': 'Bad credentials'}]})

        assert execute_graphql_query('query {}', {}, 'token') is None

    @patch('cbs.utils.github_api_tools.requests.post')
    @patch('cbs.utils.github_api_tools.time.sleep')
    def test_connection_error_then_success(self, mock_sleep, mock_post, make_response):
        mock_post.side_effect = [requests.exceptions.ConnectionError('reset'), make_response(200, {'data': {}})]

        assert execute_graphql_query('query {}', {}, 'token') == {'data': {}}
        mock_sleep.assert_called_once_with(5)


class TestGetMostRecentBranches:
    @staticmethod
    def refs(*branches):
        edges = [{'node': {'name': name, 'target': {'committedDate': date}}} for name, date in branches]
        return {'data': {'repository': {'refs': {'edges': edges}}}}

    @patch('cbs.utils.github_api_tools.execute_graphql_query')
    def test_most_recent_first_ties_by_name(self, mock_query):
        mock_query.return_value = self.refs(
            ('release-v2', '2024-05-01T10:00:00Z'),
            ('release-v1', '2024-06-01T10:00:00Z'),
            ('release-v1b', '2024-05-01T10:00:00Z'),
        )

        branches = get_most_recent_branches('acme', 'polkadot', 'release-v', 'token')

        assert [branch['name'] for branch in branches] == ['release-v1', 'release-v1b', 'release-v2']
        variables = mock_query.call_args[0][1]
        assert variables['refsQuery'] == 'release-v'
        assert variables['repo'] == 'polkadot'

    @patch('cbs.utils.github_api_tools.execute_graphql_query', return_value=None)
    def test_query_failure(self, mock_query):
        assert get_most_recent_branches('acme', 'polkadot', 'release-v', 'token') is None

    @patch('cbs.utils.github_api_tools.execute_graphql_query')
    def test_missing_repository(self, mock_query):
        mock_query.return_value = {'data': {'repository': None}}
        assert get_most_recent_branches('acme', 'polkadot', 'release-v', 'token') == []


# ============================================================================
# Rate limits
# ============================================================================


class TestRateLimit:
    def test_parse_headers(self, make_response):
        response = make_response(
            200,
            headers={
                'X-RateLimit-Limit': '5000',
                'X-RateLimit-Remaining': '0',
                'X-RateLimit-Reset': str(int(time.time()) + 30),
                'X-RateLimit-Used': '5000',
            },
        )

        info = parse_rate_limit_headers(response)

        assert info.limit == 5000
        assert info.is_exceeded

    def test_missing_headers(self, make_response):
        assert parse_rate_limit_headers(make_response(200)) is None

    def test_exceeded_limit_waits_until_reset(self, make_response):
        response = make_response(
            403,
            headers={
                'X-RateLimit-Limit': '5000',
                'X-RateLimit-Remaining': '0',
                'X-RateLimit-Reset': str(int(time.time()) + 30),
            },
        )

        limited, wait_seconds = is_rate_limited(response)

        assert limited
        assert 30 <= wait_seconds <= 36

    def test_forbidden_without_rate_limit(self, make_response):
        assert is_rate_limited(make_response(403, text='Resource not accessible')) == (False, None)

    @patch('cbs.utils.github_api_tools.requests.get')
    @patch('cbs.utils.github_api_tools.wait_for_rate_limit_reset')
    def test_request_is_retried_after_reset(self, mock_wait, mock_get, make_response):
        mock_get.side_effect = [
            make_response(429, text='API rate limit exceeded'),
            make_response(200, {'number': 1}),
        ]

        assert get_pull_request('acme', 'polkadot', 1, 'token') == {'number': 1}
        mock_wait.assert_called_once()


# ============================================================================
# Archives
# ============================================================================


class TestArchives:
    def test_archive_url(self):
        assert archive_url('https://github.com/acme/substrate', 'abc') == 'https://github.com/acme/substrate/archive/abc.tar.gz'

    @patch('cbs.utils.github_api_tools.requests.get')
    def test_download_strips_top_level_directory(self, mock_get, make_response, archive_bytes, tmp_path):
        mock_get.return_value = make_response(
            200, content=archive_bytes({'Cargo.toml': '[package]\nname = "sp-core"\n', 'src/lib.rs': ''})
        )

        assert download_archive('https://github.com/acme/substrate/archive/abc.tar.gz', tmp_path / 'out')

        assert (tmp_path / 'out' / 'Cargo.toml').read_text().startswith('[package]')
        assert (tmp_path / 'out' / 'src' / 'lib.rs').exists()

    @patch('cbs.utils.github_api_tools.requests.get')
    @patch('cbs.utils.github_api_tools.time.sleep')
    def test_download_failure(self, mock_sleep, mock_get, make_response, tmp_path):
        mock_get.return_value = make_response(404)

        assert not download_archive('https://github.com/acme/substrate/archive/abc.tar.gz', tmp_path, max_attempts=2)
        assert mock_get.call_count == 2

    @pytest.mark.parametrize('content', [b'\x1f\x8b\x08\x00truncated', b'not an archive at all'])
    @patch('cbs.utils.github_api_tools.requests.get')
    def test_corrupt_archive(self, mock_get, make_response, content, tmp_path):
        mock_get.return_value = make_response(200, content=content)

        assert not download_archive('https://github.com/acme/substrate/archive/abc.tar.gz', tmp_path / 'out')

    @patch('cbs.utils.github_api_tools.requests.get')
    def test_truncated_archive(self, mock_get, make_response, archive_bytes, tmp_path):
        content = archive_bytes({'src/lib.rs': 'x' * 4096})
        mock_get.return_value = make_response(200, content=content[: len(content) // 2])

        assert not download_archive('https://github.com/acme/substrate/archive/abc.tar.gz', tmp_path / 'out')

    @pytest.mark.skipif(not hasattr(tarfile, 'data_filter'), reason='tarfile extraction filters unavailable')
    @patch('cbs.utils.github_api_tools.requests.get')
    def test_members_outside_destination_are_rejected(self, mock_get, make_response, archive_bytes, tmp_path):
        mock_get.return_value = make_response(200, content=archive_bytes({'../../escaped.txt': 'x'}))

        assert not download_archive('https://github.com/acme/substrate/archive/abc.tar.gz', tmp_path / 'a' / 'out')
        assert not (tmp_path / 'escaped.txt').exists()


@pytest.mark.parametrize('header_value', ['not-a-number', ''])
def test_unparsable_rate_limit_headers(make_response, header_value):
    response = make_response(200, headers={'X-RateLimit-Limit': header_value, 'X-RateLimit-Reset': '1'})
    assert parse_rate_limit_headers(response) is None
