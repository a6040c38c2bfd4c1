# The MIT License (MIT)
# Copyright © 2025 Entrius

"""
Classification of pull request description lines.

Every line of a description is one of:
    CompanionReference   "polkadot companion: paritytech/polkadot#123"
    BranchOverride       "cumulus companion branch: polkadot-v0.9.20"
    PlainText            anything else

Accepted companion expressions (keyword is case-insensitive, the leading word is optional):
    companion: https://github.com/<org>/<repo>/pull/<number>
    companion: <org>/<repo>#<number>
    companion: <repo>#<number>
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Union

from cbs.constants import GITHUB_DOMAIN
from cbs.errors import MalformedReference

logger = logging.getLogger(__name__)

COMPANION_LINE = re.compile(r'^\s*(?:[^\s:]+\s+)?companion:\s*(\S+)', re.IGNORECASE)
BRANCH_OVERRIDE_LINE = re.compile(r'^\s*(\S+)\s+companion\s+branch:\s*(\S+)', re.IGNORECASE)


@dataclass(frozen=True)
class CompanionReference:
    expression: str
    repository: str
    number: int


@dataclass(frozen=True)
class BranchOverride:
    repository: str
    branch: str


@dataclass(frozen=True)
class PlainText:
    text: str


DescriptionLine = Union[CompanionReference, BranchOverride, PlainText]


def parse_companion_expression(expression: str, org: str, source: str) -> CompanionReference:
    """Extract (repository, number) from a companion expression, or raise MalformedReference."""
    org_pattern = re.escape(org)
    patterns = (
        rf'^https?://{re.escape(GITHUB_DOMAIN)}/{org_pattern}/([^/\s]+)/pull/(\d+)',
        rf'^{org_pattern}/([^#/\s]+)#(\d+)',
        r'^([^#/\s]+)#(\d+)',
    )
    for pattern in patterns:
        match = re.match(pattern, expression, re.IGNORECASE)
        if match:
            repository, number = match.group(1), int(match.group(2))
            logger.debug(f"Parsed companion repo={repository} and pr_number={number} in {expression} from {source}")
            return CompanionReference(expression=expression, repository=repository, number=number)

    raise MalformedReference(expression, source, org)


def classify_line(line: str, org: str, source: str) -> DescriptionLine:
    override = BRANCH_OVERRIDE_LINE.match(line)
    if override:
        return BranchOverride(repository=override.group(1), branch=override.group(2))

    companion = COMPANION_LINE.match(line)
    if companion:
        logger.info(f"Detected companion in the PR description of {source}: {companion.group(1)}")
        return parse_companion_expression(companion.group(1), org, source)

    return PlainText(text=line)


def parse_description(body: str, org: str, source: str) -> List[DescriptionLine]:
    """Classify every line of a description. ``source`` names the changeset for diagnostics."""
    return [classify_line(line, org, source) for line in (body or '').splitlines()]


def companion_references(lines: List[DescriptionLine]) -> List[CompanionReference]:
    return [line for line in lines if isinstance(line, CompanionReference)]


def branch_overrides(lines: List[DescriptionLine]) -> List[BranchOverride]:
    return [line for line in lines if isinstance(line, BranchOverride)]
