"""Shapes of the raw payloads returned by the remote hosts."""

from typing import List, Optional, TypedDict


class BranchInfo(TypedDict, total=False):
    """Branch returned by the most-recent-branches GraphQL query."""

    name: str
    committed_date: Optional[str]


class PipelineJob(TypedDict, total=False):
    """Job entry of a pipeline's job listing."""

    id: int
    name: str
    status: str
    stage: str


class LockedPackage(TypedDict):
    """A ``[[package]]`` entry of the manifest lock, reduced to its identity."""

    name: str
    version: str
    source: Optional[str]


class PipelineVariable(TypedDict):
    key: str
    value: str


PipelineVariables = List[PipelineVariable]
