# The MIT License (MIT)
# Copyright © 2025 Entrius

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from cbs.constants import (
    BASE_GITHUB_URL,
    FALLBACK_DEFAULT_BRANCH,
    PIPELINE_FAILURE_STATUSES,
    PIPELINE_SUCCESS_STATUSES,
)


@dataclass(frozen=True)
class RepositoryRef:
    """Repository identity"""

    org: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.org}/{self.name}"

    @property
    def url(self) -> str:
        return f"{BASE_GITHUB_URL}/{self.org}/{self.name}"

    def __str__(self) -> str:
        return self.full_name


@dataclass
class Changeset:
    """A pull request as fetched for one resolution run"""

    repository: RepositoryRef
    number: int
    target_branch: str
    body: str
    head_sha: str
    state: str
    closed: bool = False
    mergeable: Optional[bool] = None
    default_branch: str = FALLBACK_DEFAULT_BRANCH

    @property
    def ref(self) -> str:
        return f"{self.repository.name}#{self.number}"

    @property
    def is_closed(self) -> bool:
        return self.state == "closed" or self.closed

    @property
    def is_unmergeable(self) -> bool:
        # GitHub reports None while mergeability is still being computed
        return self.mergeable is False

    @classmethod
    def from_github_response(cls, repository: RepositoryRef, number: int, payload: Dict[str, Any]) -> 'Changeset':
        """Create Changeset from a GitHub /pulls/<number> response"""
        base = payload.get("base") or {}
        base_repo = base.get("repo") or {}
        return cls(
            repository=repository,
            number=number,
            target_branch=base.get("ref") or FALLBACK_DEFAULT_BRANCH,
            body=payload.get("body") or "",
            head_sha=(payload.get("head") or {}).get("sha", ""),
            state=payload.get("state", ""),
            closed=bool(payload.get("closed", False)),
            mergeable=payload.get("mergeable"),
            default_branch=base_repo.get("default_branch") or FALLBACK_DEFAULT_BRANCH,
        )


@dataclass(frozen=True)
class CompanionEdge:
    """A companion reference found in the description of ``source_ref``"""

    source_repository: str
    source_number: int
    target_repository: str
    target_number: int

    @property
    def source_ref(self) -> str:
        return f"{self.source_repository}#{self.source_number}"

    @property
    def target_ref(self) -> str:
        return f"{self.target_repository}#{self.target_number}"


@dataclass
class DependencyGraphNode:
    """One repository discovered during resolution.

    ``changeset`` is None when the repository is used at its default branch.
    """

    repository: str
    working_dir: Path
    head_sha: str
    changeset: Optional[Changeset] = None
    edges: List[CompanionEdge] = field(default_factory=list)

    @property
    def upstream_branch(self) -> str:
        if self.changeset is None:
            return FALLBACK_DEFAULT_BRANCH
        return self.changeset.target_branch


@dataclass(frozen=True)
class FileFingerprint:
    path: str
    mode: str
    content_hash: str

    def to_line(self) -> str:
        return f"{self.mode} {self.content_hash} {self.path}"


class FingerprintSet:
    """Listing of (path, mode, content hash) triples of a tree.

    Two sets are equal when their triples are set-equal, regardless of order.
    """

    def __init__(self, entries: Iterable[FileFingerprint] = ()):
        self.entries: List[FileFingerprint] = list(entries)

    @classmethod
    def from_listing(cls, listing: str) -> 'FingerprintSet':
        """Parse a ``mode hash path`` listing, one file per line."""
        entries = []
        for line in listing.splitlines():
            if not line.strip():
                continue
            parts = line.split(None, 2)
            if len(parts) != 3:
                raise ValueError(f"Fingerprint line had unexpected format: {line}")
            mode, content_hash, path = parts
            entries.append(FileFingerprint(path=path, mode=mode, content_hash=content_hash))
        return cls(entries)

    def serialize(self) -> str:
        return "\n".join(entry.to_line() for entry in self.entries)

    def as_frozenset(self) -> FrozenSet[FileFingerprint]:
        return frozenset(self.entries)

    def by_path(self) -> Dict[str, FileFingerprint]:
        return {entry.path: entry for entry in self.entries}

    def mismatches(self, current: 'FingerprintSet') -> List[str]:
        """Describe every difference between this (recorded) set and ``current``."""
        recorded = self.by_path()
        found = current.by_path()
        problems = []

        for path in sorted(found):
            now = found[path]
            before = recorded.get(path)
            if before is None:
                problems.append(f"File was not found within the patched files: {path}")
                continue
            if before.mode != now.mode:
                problems.append(f"File changed its mode from {before.mode} to {now.mode}: {path}")
            if before.content_hash != now.content_hash:
                problems.append(f"File changed its hash from {before.content_hash} to {now.content_hash}: {path}")

        for path in sorted(set(recorded) - set(found)):
            problems.append(f"File was removed since the patched files were recorded: {path}")

        return problems

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FingerprintSet):
            return NotImplemented
        return self.as_frozenset() == other.as_frozenset()

    def __hash__(self) -> int:
        return hash(self.as_frozenset())

    def __len__(self) -> int:
        return len(self.entries)

    def __repr__(self) -> str:
        return f"FingerprintSet({len(self.entries)} files)"


@dataclass
class PatchedSnapshot:
    """A commit of the snapshot chain holding one repository's patched tree"""

    repository: str
    sha: str
    upstream_sha: str
    fingerprints: FingerprintSet
    kind: str  # "extra", "dependency", "companion" or "dependent"


@dataclass
class CachedDependency:
    """Skip-cache entry of one patched dependency, keyed by its lock source prefix"""

    url: str
    files: FingerprintSet
    repository: str
    sha: str

    def to_payload(self) -> Dict[str, str]:
        return {"url": self.url, "files": self.files.serialize(), "repository": self.repository, "sha": self.sha}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'CachedDependency':
        return cls(
            url=payload["url"],
            files=FingerprintSet.from_listing(payload.get("files") or ""),
            repository=payload["repository"],
            sha=payload["sha"],
        )


@dataclass
class CacheRecord:
    """Persisted result of a successful dependent pipeline"""

    manifest_lock: Dict[str, Any]
    dependencies: Dict[str, CachedDependency]
    dependent_files: FingerprintSet
    dependent_sha: str
    jobs: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "manifestLock": self.manifest_lock,
            "dependencies": {prefix: dep.to_payload() for prefix, dep in self.dependencies.items()},
            "dependent": {"files": self.dependent_files.serialize(), "sha": self.dependent_sha},
            "jobs": self.jobs,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'CacheRecord':
        dependent = payload.get("dependent") or {}
        return cls(
            manifest_lock=payload.get("manifestLock") or {},
            dependencies={
                prefix: CachedDependency.from_payload(dep) for prefix, dep in (payload.get("dependencies") or {}).items()
            },
            dependent_files=FingerprintSet.from_listing(dependent.get("files") or ""),
            dependent_sha=dependent.get("sha", ""),
            jobs=payload.get("jobs", ""),
        )


class DispatchResult(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


def classify_pipeline_status(status: str) -> Optional[DispatchResult]:
    """Map a pipeline host status to a terminal result, or None while still running."""
    if status in PIPELINE_SUCCESS_STATUSES:
        return DispatchResult.SUCCESS
    if status == "canceled":
        return DispatchResult.CANCELLED
    if status in PIPELINE_FAILURE_STATUSES:
        return DispatchResult.FAILED
    return None


@dataclass
class DispatchOutcome:
    result: DispatchResult
    status: str
    pipeline_url: str

    @property
    def jobs_url(self) -> str:
        return f"{self.pipeline_url}/jobs"


class SkipDecision(Enum):
    SKIP = "skip"
    MUST_RUN = "must_run"


@dataclass
class ValidationOutcome:
    decision: SkipDecision
    jobs_url: Optional[str] = None
    reason: str = ""
    error: Optional[Exception] = None

    @property
    def should_skip(self) -> bool:
        return self.decision == SkipDecision.SKIP
