# The MIT License (MIT)
# Copyright © 2025 Entrius

"""
Skip-Cache Validator

A pull request's commits change once its target branch moves, so a previous
dependent pipeline can't be matched by commit. It is matched by content instead:
the files (path, mode and hash) of the dependent and of every patched dependency
must be exactly the ones that were recorded, and every other locked package must
be unchanged.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from cbs.classes import (
    CachedDependency,
    CacheRecord,
    DispatchOutcome,
    FingerprintSet,
    SkipDecision,
    ValidationOutcome,
)
from cbs.constants import PASSED_JOBS_DIR
from cbs.errors import CacheMismatch, CBSError, RemoteUnavailable
from cbs.sequencer.hashing import hash_git_files
from cbs.sequencer.manifest import lock_packages
from cbs.sequencer.patch_sequencer import SequenceResult
from cbs.skip_cache.store import SkipCacheStore
from cbs.utils.git_client import GitClient
from cbs.utils.github_api_tools import archive_url, download_archive
from cbs.utils.gitlab_api_tools import get_pipeline_jobs
from cbs.utils.logging import log_event

logger = logging.getLogger(__name__)

LockTriple = Tuple[str, str, str]


def first_difference(recorded: FingerprintSet, current: FingerprintSet) -> Optional[Tuple[str, str, str]]:
    """(path, recorded value, current value) of the first differing file, by path."""
    before = recorded.by_path()
    now = current.by_path()
    for path in sorted(set(before) | set(now)):
        if path not in before:
            return path, '', now[path].content_hash
        if path not in now:
            return path, before[path].content_hash, ''
        if before[path].mode != now[path].mode:
            return path, before[path].mode, now[path].mode
        if before[path].content_hash != now[path].content_hash:
            return path, before[path].content_hash, now[path].content_hash
    return None


def compare_fingerprints(repository: str, recorded_sha: str, recorded: FingerprintSet, current: FingerprintSet) -> None:
    """Raise CacheMismatch unless both sets hold exactly the same files."""
    if recorded == current:
        return

    difference = first_difference(recorded, current)
    problems = recorded.mismatches(current)
    path, recorded_value, current_value = difference if difference else (None, None, None)
    raise CacheMismatch(
        f"Files of {repository} differ from what was used during the patching procedure "
        f"(commit sha {recorded_sha}):\n" + "\n".join(problems),
        path=path,
        recorded=recorded_value,
        current=current_value,
    )


def _triple(package) -> LockTriple:
    return package.get('name') or '', package.get('version') or '', package.get('source') or ''


def _describe(triple: LockTriple) -> str:
    name, version, source = triple
    return f"Name: {name}\nVersion: {version}\nSource: {source}"


def reconcile_lock(record: CacheRecord, current_lock: dict) -> Dict[str, str]:
    """
    Match the current lock file against the recorded one.

    Packages sourced from a patched dependency are grouped by source prefix and must
    all point at the same commit. Every other package must appear in both locks with
    the same name, version and source.

    Returns:
        Dict[str, str]: Commit sha currently locked for each patched dependency prefix
    """
    used: Dict[str, str] = {}
    current: Set[LockTriple] = set()

    for package in lock_packages(current_lock):
        source = package.get('source') or ''
        prefix = next((prefix for prefix in record.dependencies if source.startswith(prefix)), None)
        if prefix is None:
            current.add(_triple(package))
            continue

        sha = source[len(prefix) :]
        if prefix in used and used[prefix] != sha:
            raise CacheMismatch(
                f'Dependency sources for prefix "{prefix}" are different: found one which ends with '
                f'"{used[prefix]}" and another which ends with "{sha}".',
                path=prefix,
                recorded=used[prefix],
                current=sha,
            )
        used[prefix] = sha

    recorded: Set[LockTriple] = set()
    for package in lock_packages(record.manifest_lock):
        source = package.get('source') or ''
        if any(source.startswith(prefix) for prefix in used):
            logger.debug(f"Dependency {package.get('name')} {package.get('version')} (from {source}) is patched")
            continue
        recorded.add(_triple(package))

    missing = sorted(recorded - current)
    if missing:
        raise CacheMismatch(
            f"The following crate was not found in the current lock file\n{_describe(missing[0])}", path=missing[0][0]
        )
    added = sorted(current - recorded)
    if added:
        raise CacheMismatch(
            f"The following crate was not found in the cached lock file\n{_describe(added[0])}", path=added[0][0]
        )

    return used


class SkipCacheValidator:
    """Decides whether a previous dependent pipeline still covers the current state, and records new ones."""

    def __init__(self, store: SkipCacheStore, git: GitClient, workspace_dir: Path, gitlab_token: Optional[str] = None):
        self.store = store
        self.git = git
        self.workspace_dir = Path(workspace_dir)
        self.gitlab_token = gitlab_token

    def validate(self, key: str, repository: str, current_files: FingerprintSet, current_lock: dict) -> ValidationOutcome:
        """
        Compare the record stored at ``key`` with the current state of ``repository``.

        Never raises: every failure, including a remote one, yields MUST_RUN.
        """
        try:
            record = self.store.get(key)
            if record is None:
                return ValidationOutcome(SkipDecision.MUST_RUN, reason=f"No usable skip cache record at {key}")

            compare_fingerprints(repository, record.dependent_sha, record.dependent_files, current_files)
            used = reconcile_lock(record, current_lock)
            for prefix, sha in used.items():
                self.validate_dependency(record.dependencies[prefix], sha)
        except CacheMismatch as e:
            logger.warning(f"Skip cache record {key} does not match: {e.message}")
            return ValidationOutcome(SkipDecision.MUST_RUN, reason=e.message, error=e)
        except (CBSError, OSError, ValueError) as e:
            logger.warning(f"Skip cache record {key} could not be validated: {e}")
            return ValidationOutcome(SkipDecision.MUST_RUN, reason=str(e), error=e)

        log_event(f"Skip cache record {key} matches the current state")
        return ValidationOutcome(SkipDecision.SKIP, jobs_url=record.jobs, reason=f"Pipeline {record.jobs} already passed")

    def validate_dependency(self, dependency: CachedDependency, sha: str) -> None:
        """Download the currently locked commit of a patched dependency and compare its files."""
        repository_url = dependency.url.rsplit('/archive/', 1)[0]
        url = archive_url(repository_url, sha)
        directory = self.workspace_dir / dependency.repository / sha

        logger.info(
            f"Comparing files of {dependency.repository} at commit sha {sha} with what was used during "
            f"the patching procedure (commit sha {dependency.sha} merged with upstream)"
        )
        if not download_archive(url, directory):
            raise RemoteUnavailable(f"Failed to download {url}")

        # archives don't include the .git folder
        self.git.init(directory)
        self.git.commit_all(directory, sha)
        compare_fingerprints(dependency.repository, dependency.sha, dependency.files, hash_git_files(directory, self.git))

    def record(self, key: str, result: SequenceResult, outcome: DispatchOutcome) -> bool:
        """Store the state a successful pipeline ran against. Failures are logged, never raised."""
        record = CacheRecord(
            manifest_lock=result.dependent_lock,
            dependencies=result.cached_dependencies,
            dependent_files=result.dependent_files,
            dependent_sha=result.dependent_sha,
            jobs=outcome.jobs_url,
        )
        try:
            stored = self.store.put(key, record)
        except (TypeError, ValueError) as e:
            logger.warning(f"Skip cache record {key} could not be serialized: {e}")
            return False
        if stored:
            log_event(f"Recorded skip cache entry {key}")
        return stored

    def record_passed_jobs(self, jobs_url: str, artifacts_path: Path) -> List[str]:
        """Create an empty ``<artifacts>/cbs/passed-jobs/<job>`` file for every successful job."""
        jobs = get_pipeline_jobs(jobs_url, self.gitlab_token)
        if jobs is None:
            logger.warning(f"Could not list the jobs of {jobs_url}")
            return []

        passed_jobs_dir = Path(artifacts_path) / PASSED_JOBS_DIR
        passed_jobs_dir.mkdir(parents=True, exist_ok=True)

        passed = []
        for job in jobs:
            if job.get('status') != 'success' or not job.get('name'):
                continue
            # parallel jobs are named like "test 1/3"
            marker = passed_jobs_dir / job['name']
            marker.parent.mkdir(parents=True, exist_ok=True)
            marker.touch()
            passed.append(job['name'])

        logger.info(f"Marked {len(passed)} jobs of {jobs_url} as passed")
        return passed
