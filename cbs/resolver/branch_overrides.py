# The MIT License (MIT)
# Copyright © 2025 Entrius

"""
Branch selection for a dependent that has no companion pull request.

An override table correlates release branches across repositories, one
``<repository>: <pattern>`` line per repository:

    polkadot: release-v*
    substrate: polkadot-v*
    cumulus: polkadot-v*

A pull request of substrate targeting ``polkadot-v0.9.20`` then checks cumulus
against ``polkadot-v0.9.20``, or against the most recently committed
``polkadot-v*`` branch of cumulus when that branch does not exist yet.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from cbs.errors import MissingTargetBranch, RemoteUnavailable
from cbs.utils.github_api_tools import branch_exists, branch_matches_pattern, get_most_recent_branches

logger = logging.getLogger(__name__)

WILDCARD = '*'


@dataclass(frozen=True)
class DependentRef:
    """Branch to clone the dependent at. ``branch`` None means its default branch."""

    branch: Optional[str] = None
    overridden: bool = False


def parse_override_table(table: str) -> Dict[str, str]:
    """Parse ``repository: pattern`` lines. Blank or malformed lines are ignored."""
    patterns = {}
    for line in table.splitlines():
        match = re.match(r'^\s*([^\s:]+):\s*(\S*)', line)
        if match and match.group(2):
            patterns[match.group(1)] = match.group(2)
    return patterns


def match_wildcard(branch: str, pattern: str) -> Optional[str]:
    """
    Match ``branch`` against a pattern holding at most one ``*``.

    Returns:
        Optional[str]: The text captured by the wildcard ('' for a pattern without one),
            or None when the branch does not match.
    """
    if WILDCARD not in pattern:
        return '' if branch.startswith(pattern) else None

    head, tail = pattern.split(WILDCARD, 1)
    if not branch.startswith(head) or not branch.endswith(tail) or len(branch) < len(head) + len(tail):
        return None
    return branch[len(head) : len(branch) - len(tail)]


def substitute_wildcard(pattern: str, captured: str) -> str:
    head, tail = pattern.split(WILDCARD, 1)
    return f'{head}{captured}{tail}'


def wildcard_prefix(pattern: str) -> str:
    return pattern.split(WILDCARD, 1)[0]


class BranchOverrideResolver:
    def __init__(self, org: str, github_token: str, tables: List[str]):
        self.org = org
        self.github_token = github_token
        self.tables = [parse_override_table(table) for table in tables]

    def resolve(
        self,
        this_repo: str,
        dependent: str,
        target_branch: str,
        default_branch: str,
        description_overrides: Dict[str, str],
    ) -> DependentRef:
        """
        Pick the branch of ``dependent`` to check against a pull request of ``this_repo``.

        Fallback order: the dependent's default branch when ``target_branch`` is the
        default branch, then a ``<dependent> companion branch:`` directive, then the
        first override table correlating both repositories, then the default branch.
        """
        if target_branch == default_branch:
            logger.info(f"Cloning dependent {dependent} directly as it was not detected as a companion")
            return DependentRef()

        directive = description_overrides.get(dependent)
        if directive:
            logger.info(f"Cloning dependent {dependent} with branch {directive} from manual override")
            return DependentRef(branch=directive, overridden=True)

        for table in self.tables:
            branch = self._from_table(table, this_repo, dependent, target_branch)
            if branch:
                logger.info(f"Setting up the clone of {dependent} with branch {branch}")
                return DependentRef(branch=branch, overridden=True)

        return DependentRef()

    def _from_table(self, table: Dict[str, str], this_repo: str, dependent: str, target_branch: str) -> Optional[str]:
        source_pattern = table.get(this_repo)
        destination_pattern = table.get(dependent)
        if not source_pattern or not destination_pattern:
            return None

        logger.info(f"Detected override {source_pattern} for {this_repo} and override {destination_pattern} for {dependent}")
        captured = match_wildcard(target_branch, source_pattern)
        if captured is None:
            return None

        if not captured or WILDCARD not in destination_pattern:
            return destination_pattern

        branch = substitute_wildcard(destination_pattern, captured)
        logger.info(f"Checking if {branch} exists in {dependent}")
        exists = branch_exists(self.org, dependent, branch, self.github_token)
        if exists:
            logger.info(f"Branch {branch} exists in {dependent}. Proceeding...")
            return branch
        if exists is None:
            logger.warning(f"Could not check whether {branch} exists in {dependent}, looking for a replacement")

        return self.find_replacement(dependent, branch, destination_pattern)

    def find_replacement(self, dependent: str, missing_branch: str, destination_pattern: str) -> str:
        """Most recently committed branch of ``dependent`` matching ``destination_pattern``.

        Equally recent candidates are ordered by name.
        """
        logger.info(f"Fetching the list of branches in {dependent} to find a suitable replacement for {missing_branch}")
        candidates = get_most_recent_branches(
            self.org, dependent, wildcard_prefix(destination_pattern), self.github_token
        )
        if candidates is None:
            raise RemoteUnavailable(f"Failed to list the branches of {self.org}/{dependent}")

        for candidate in candidates:
            logger.debug(f"Got candidate branch {candidate['name']} in {dependent}'s refs")
            if branch_matches_pattern(candidate['name'], [destination_pattern]):
                logger.info(f"Choosing branch {candidate['name']} as a replacement for {missing_branch}")
                return candidate['name']

        raise MissingTargetBranch(dependent, missing_branch)
