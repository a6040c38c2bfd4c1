# The MIT License (MIT)
# Copyright © 2025 Entrius
import fnmatch
import io
import logging
import tarfile
import time
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import requests

from cbs.constants import (
    BASE_GITHUB_API_URL,
    GITHUB_GRAPHQL_API_URL,
    GITHUB_MAX_ATTEMPTS,
    GITHUB_REQUEST_TIMEOUT,
    RECENT_BRANCHES_LIMIT,
)
from cbs.utils.models import BranchInfo

logger = logging.getLogger(__name__)

# =============================================================================
# Rate Limit Configuration
# =============================================================================
RATE_LIMIT_BUFFER_SECONDS = 5  # Extra buffer time when waiting for rate limit reset
RATE_LIMIT_MIN_REMAINING = 10  # Minimum remaining requests before preemptive wait
RATE_LIMIT_MAX_WAIT_SECONDS = 900  # Maximum time to wait for rate limit reset (15 min)


@dataclass
class RateLimitInfo:
    """Represents GitHub API rate limit information extracted from response headers."""

    limit: int  # Maximum requests allowed per hour
    remaining: int  # Requests remaining in current window
    reset_timestamp: int  # Unix timestamp when the rate limit resets
    used: int  # Requests used in current window

    @property
    def is_exceeded(self) -> bool:
        """Check if rate limit has been exceeded."""
        return self.remaining == 0

    @property
    def seconds_until_reset(self) -> int:
        """Calculate seconds until rate limit resets."""
        current_time = int(time.time())
        return max(0, self.reset_timestamp - current_time)

    def __str__(self) -> str:
        return f"RateLimit(remaining={self.remaining}/{self.limit}, resets_in={self.seconds_until_reset}s)"


def parse_rate_limit_headers(response: requests.Response) -> Optional[RateLimitInfo]:
    """
    Parse GitHub API rate limit information from response headers.

    Args:
        response: The HTTP response from GitHub API

    Returns:
        RateLimitInfo object if headers are present, None otherwise
    """
    headers = response.headers

    try:
        limit = int(headers.get('X-RateLimit-Limit', 0))
        remaining = int(headers.get('X-RateLimit-Remaining', 0))
        reset_timestamp = int(headers.get('X-RateLimit-Reset', 0))
        used = int(headers.get('X-RateLimit-Used', 0))

        if limit == 0 and reset_timestamp == 0:
            return None

        return RateLimitInfo(limit=limit, remaining=remaining, reset_timestamp=reset_timestamp, used=used)
    except (ValueError, TypeError) as e:
        logger.debug(f"Could not parse rate limit headers: {e}")
        return None


def is_rate_limited(response: requests.Response) -> Tuple[bool, Optional[int]]:
    """
    Check if a response indicates rate limiting and calculate wait time.

    Returns:
        Tuple of (is_rate_limited, seconds_to_wait)
    """
    if response.status_code not in (403, 429):
        return (False, None)

    rate_limit_info = parse_rate_limit_headers(response)

    if rate_limit_info and rate_limit_info.is_exceeded:
        wait_seconds = min(rate_limit_info.seconds_until_reset + RATE_LIMIT_BUFFER_SECONDS, RATE_LIMIT_MAX_WAIT_SECONDS)
        return (True, wait_seconds)

    response_text = response.text.lower()
    if 'rate limit' in response_text:
        reset_header = response.headers.get('X-RateLimit-Reset')
        if reset_header:
            try:
                wait_seconds = min(
                    max(0, int(reset_header) - int(time.time())) + RATE_LIMIT_BUFFER_SECONDS,
                    RATE_LIMIT_MAX_WAIT_SECONDS,
                )
                return (True, wait_seconds)
            except ValueError:
                pass
        return (True, 60)

    return (False, None)


def check_preemptive_rate_limit(response: requests.Response) -> None:
    """Log a warning when we are approaching the rate limit."""
    rate_limit_info = parse_rate_limit_headers(response)

    if rate_limit_info and rate_limit_info.remaining <= RATE_LIMIT_MIN_REMAINING:
        logger.warning(
            f"Approaching GitHub API rate limit: {rate_limit_info.remaining} requests remaining, "
            f"resets in {rate_limit_info.seconds_until_reset}s"
        )


def wait_for_rate_limit_reset(wait_seconds: int, context: str = "") -> None:
    """
    Wait for rate limit to reset with progress logging.

    Args:
        wait_seconds: Number of seconds to wait
        context: Optional context string for logging (e.g., "GraphQL query")
    """
    context_str = f" for {context}" if context else ""
    logger.warning(f"GitHub API rate limit exceeded{context_str}. Waiting {wait_seconds}s for reset...")

    if wait_seconds <= 60:
        time.sleep(wait_seconds)
    else:
        intervals = wait_seconds // 60
        remaining = wait_seconds % 60

        for i in range(intervals):
            time.sleep(60)
            elapsed = (i + 1) * 60
            logger.info(f"Rate limit wait: {elapsed}s elapsed, {wait_seconds - elapsed}s remaining")

        if remaining > 0:
            time.sleep(remaining)

    logger.info("Rate limit wait complete, resuming API requests")


MOST_RECENT_BRANCHES_QUERY = """
    query($org: String!, $repo: String!, $refsQuery: String!, $limit: Int!) {
      repository(owner: $org, name: $repo) {
        refs(
          refPrefix: "refs/heads/",
          first: $limit,
          query: $refsQuery,
          orderBy: { field: TAG_COMMIT_DATE, direction: DESC }
        ) {
          edges {
            node {
              name
              target {
                ... on Commit {
                  committedDate
                }
              }
            }
          }
        }
      }
    }
    """


def branch_matches_pattern(branch_name: str, patterns: List[str]) -> bool:
    """Check if a branch name matches any of the wildcard patterns (for example, "release-v*")."""
    for pattern in patterns:
        if fnmatch.fnmatchcase(branch_name, pattern):
            return True
    return False


def make_headers(token: str) -> Dict[str, str]:
    """Build standard GitHub HTTP headers for a PAT."""
    return {
        "Authorization": f"token {token}",
        "Accept": "application/vnd.github.v3+json",
    }


def _github_get(url: str, token: str, context: str, max_attempts: int = GITHUB_MAX_ATTEMPTS) -> Optional[requests.Response]:
    """GET with rate limit handling and retries on connection errors and 5xx responses.

    Returns the last response received (which may be a 4xx), or None if no response could be obtained.
    """
    headers = make_headers(token)
    response = None

    for attempt in range(max_attempts):
        try:
            response = requests.get(url, headers=headers, timeout=GITHUB_REQUEST_TIMEOUT)

            rate_limited, wait_seconds = is_rate_limited(response)
            if rate_limited and wait_seconds:
                if attempt < max_attempts - 1:
                    wait_for_rate_limit_reset(wait_seconds, context=context)
                    continue
                logger.error(f"Rate limit exceeded on final attempt for {context}")
                return None

            if response.status_code < 500:
                check_preemptive_rate_limit(response)
                return response

            logger.warning(
                f"Request for {context} failed with status {response.status_code} (attempt {attempt + 1}/{max_attempts})"
            )
        except requests.exceptions.RequestException as e:
            logger.warning(f"Could not fetch {context} (attempt {attempt + 1}/{max_attempts}): {e}")
            response = None

        if attempt < max_attempts - 1:
            time.sleep(2)

    return response


def get_pull_request(org: str, repo: str, pr_number: int, token: str) -> Optional[Dict[str, Any]]:
    """Fetch a pull request.

    Args:
        org (str): Organization owning the repository
        repo (str): Repository name
        pr_number (int): PR number
        token (str): GitHub pat

    Returns:
        Optional[Dict[str, Any]]: Parsed JSON pull request, or None on failure.
    """
    context = f"PR {org}/{repo}#{pr_number}"
    response = _github_get(f"{BASE_GITHUB_API_URL}/repos/{org}/{repo}/pulls/{pr_number}", token, context)
    if response is None:
        return None

    if response.status_code != 200:
        logger.warning(f"Failed to get {context}: status {response.status_code}")
        return None

    try:
        return response.json()
    except ValueError as e:
        logger.warning(f"Failed to parse {context} JSON response: {e}")
        return None


def branch_exists(org: str, repo: str, branch: str, token: str) -> Optional[bool]:
    """Check whether ``branch`` exists in ``org/repo``.

    Returns:
        Optional[bool]: True/False from a definitive answer, None if GitHub could not be reached.
    """
    response = _github_get(
        f"{BASE_GITHUB_API_URL}/repos/{org}/{repo}/branches/{branch}", token, f"branch {branch} of {org}/{repo}"
    )
    if response is None:
        return None
    if response.status_code == 200:
        return True
    logger.info(f"Branch {branch} doesn't exist in {repo} (status code {response.status_code})")
    return False


def execute_graphql_query(
    query: str, variables: Dict[str, Any], token: str, max_attempts: int = GITHUB_MAX_ATTEMPTS
) -> Optional[Dict[str, Any]]:
    """
    Execute a GraphQL query with exponential backoff on failures.

    Returns:
        Optional[Dict[str, Any]]: The parsed JSON body, or None if every attempt failed.
    """
    headers = {'Authorization': f'Bearer {token}', 'Content-Type': 'application/json'}

    for attempt in range(max_attempts):
        try:
            response = requests.post(
                GITHUB_GRAPHQL_API_URL,
                headers=headers,
                json={"query": query, "variables": variables},
                timeout=GITHUB_REQUEST_TIMEOUT,
            )

            rate_limited, wait_seconds = is_rate_limited(response)
            if rate_limited and wait_seconds:
                if attempt < (max_attempts - 1):
                    wait_for_rate_limit_reset(wait_seconds, context="GraphQL query")
                    continue
                logger.error("Rate limit exceeded on final attempt for GraphQL query")
                return None

            if response.status_code == 200:
                check_preemptive_rate_limit(response)
                data = response.json()
                if 'errors' in data:
                    logger.error(f"GraphQL errors: {data['errors']}")
                    return None
                return data

            if attempt < (max_attempts - 1):
                # Exponential backoff: 5s, 10s, 20s, ...
                backoff_delay = 5 * (2**attempt)
                logger.warning(
                    f"GraphQL request failed with status {response.status_code} "
                    f"(attempt {attempt + 1}/{max_attempts}), retrying in {backoff_delay}s..."
                )
                time.sleep(backoff_delay)
            else:
                logger.error(
                    f"GraphQL request failed with status {response.status_code} after {max_attempts} attempts: "
                    f"{response.text}"
                )

        except requests.exceptions.RequestException as e:
            if attempt < (max_attempts - 1):
                backoff_delay = 5 * (2**attempt)
                logger.warning(
                    f"GraphQL request connection error (attempt {attempt + 1}/{max_attempts}): {e}, "
                    f"retrying in {backoff_delay}s..."
                )
                time.sleep(backoff_delay)
            else:
                logger.error(f"GraphQL request failed after {max_attempts} attempts: {e}")
                return None

    return None


def get_most_recent_branches(org: str, repo: str, refs_query: str, token: str) -> Optional[List[BranchInfo]]:
    """List the branches of ``org/repo`` containing ``refs_query``, most recently committed first.

    Branches committed at the same instant are ordered by name so that the result is deterministic.
    """
    data = execute_graphql_query(
        MOST_RECENT_BRANCHES_QUERY,
        {"org": org, "repo": repo, "refsQuery": refs_query, "limit": RECENT_BRANCHES_LIMIT},
        token,
    )
    if data is None:
        return None

    repository = (data.get('data') or {}).get('repository')
    if not repository:
        logger.warning(f"Repository {org}/{repo} not found while listing branches")
        return []

    branches: List[BranchInfo] = []
    for edge in repository.get('refs', {}).get('edges', []):
        node = edge.get('node') or {}
        target = node.get('target') or {}
        branches.append(BranchInfo(name=node.get('name', ''), committed_date=target.get('committedDate')))

    # ISO-8601 dates sort lexicographically; stable sort on name first keeps ties deterministic
    branches.sort(key=lambda branch: branch['name'])
    branches.sort(key=lambda branch: branch.get('committed_date') or '', reverse=True)
    return branches


def archive_url(repository_url: str, sha: str) -> str:
    return f"{repository_url}/archive/{sha}.tar.gz"


def download_archive(url: str, destination: Path, max_attempts: int = GITHUB_MAX_ATTEMPTS) -> bool:
    """Download a .tar.gz archive and extract it into ``destination``, dropping its top-level directory."""
    for attempt in range(max_attempts):
        try:
            response = requests.get(url, timeout=GITHUB_REQUEST_TIMEOUT * 4)
            if response.status_code == 200:
                try:
                    _extract_stripped(response.content, destination)
                except (tarfile.TarError, EOFError, zlib.error) as e:
                    logger.warning(f"Archive {url} could not be extracted: {e}")
                    return False
                return True
            logger.warning(
                f"Archive download {url} failed with status {response.status_code} (attempt {attempt + 1}/{max_attempts})"
            )
        except requests.exceptions.RequestException as e:
            logger.warning(f"Archive download {url} failed (attempt {attempt + 1}/{max_attempts}): {e}")

        if attempt < max_attempts - 1:
            time.sleep(2)

    return False


def _extract_stripped(content: bytes, destination: Path) -> None:
    destination.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(content), mode='r:gz') as archive:
        members = []
        for member in archive.getmembers():
            parts = Path(member.name).parts
            if len(parts) <= 1:
                continue
            member.name = str(Path(*parts[1:]))
            members.append(member)
        if hasattr(tarfile, 'data_filter'):
            # rejects absolute paths, links leaving the destination and special files
            archive.extractall(destination, members=members, filter='data')
        else:
            archive.extractall(destination, members=members)
