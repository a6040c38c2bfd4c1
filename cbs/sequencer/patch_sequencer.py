# The MIT License (MIT)
# Copyright © 2025 Entrius

"""
Patch Sequencer

Turns the resolved companion graph into a linear chain of snapshot commits on an
orphan branch. Each commit holds the tree of one repository whose references to
the repositories committed before it were pinned to their snapshot commits. The
dependent is always the last commit of the chain.
"""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from cbs.classes import CachedDependency, FingerprintSet, PatchedSnapshot
from cbs.constants import BASE_GITHUB_URL, MANIFEST_FILE, SNAPSHOT_INIT_FILE
from cbs.errors import DanglingReference, UnresolvableDependency
from cbs.resolver.companion_graph import ResolutionContext
from cbs.sequencer.cargo import CargoRunner
from cbs.sequencer.hashing import hash_git_files
from cbs.sequencer.manifest import (
    add_patch_table,
    detect_dependencies_among,
    discover_workspace_crates,
    find_dangling_references,
    prune_unused_patches,
    read_lock,
    repository_source_prefix,
    rewrite_git_dependencies,
    workspace_update_specs,
)
from cbs.utils.git_client import GitClient
from cbs.utils.github_api_tools import archive_url
from cbs.utils.logging import log_event

KIND_EXTRA = "extra"
KIND_DEPENDENCY = "dependency"
KIND_COMPANION = "companion"
KIND_DEPENDENT = "dependent"


@dataclass
class PatchNode:
    """A working tree waiting to be committed into the snapshot chain.

    ``upstream_sha`` and ``upstream_branch`` identify the tree on GitHub; they key
    the skip cache entry of the node.
    """

    repository: str
    working_dir: Path
    upstream_sha: str
    upstream_branch: str
    kind: str
    fingerprints: Optional[FingerprintSet] = None
    dependencies: List[str] = field(default_factory=list)


@dataclass
class SequenceResult:
    snapshots: List[PatchedSnapshot]
    cached_dependencies: Dict[str, CachedDependency]
    dependent_files: FingerprintSet
    dependent_lock: dict
    dependent_sha: str

    @property
    def patch_order(self) -> List[str]:
        return [snapshot.repository for snapshot in self.snapshots]

    @property
    def final(self) -> PatchedSnapshot:
        return self.snapshots[-1]


def order_patch_nodes(repositories: List[str], dependencies: Dict[str, Iterable[str]]) -> List[str]:
    """
    Order ``repositories`` so that each one comes after every repository it depends on.

    Among the repositories that are ready at the same time, the one listed first in
    ``repositories`` goes first.

    Raises:
        UnresolvableDependency: When the remaining repositories depend on each other
    """
    known = set(repositories)
    pending = {repo: {dep for dep in dependencies.get(repo, ()) if dep in known and dep != repo} for repo in repositories}
    ordered: List[str] = []

    while pending:
        ready = next((repo for repo in repositories if repo in pending and not pending[repo] - set(ordered)), None)
        if ready is None:
            raise UnresolvableDependency([repo for repo in repositories if repo in pending])
        ordered.append(ready)
        del pending[ready]

    return ordered


def replace_tree(destination: Path, source: Path) -> None:
    """Make ``destination`` hold exactly the files of ``source``, leaving both ``.git`` directories alone."""
    for entry in destination.iterdir():
        if entry.name == ".git":
            continue
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()

    for entry in source.iterdir():
        if entry.name == ".git":
            continue
        target = destination / entry.name
        if entry.is_dir() and not entry.is_symlink():
            shutil.copytree(entry, target, symlinks=True)
        else:
            shutil.copy2(entry, target, follow_symlinks=False)


class PatchSequencer:
    """
    Builds the snapshot chain for one dependent.

    Args:
        org (str): Organization owning every repository of the graph
        destination (str): Url of the snapshot repository, as referenced by patched manifests
        git (GitClient): Git command runner
        cargo (CargoRunner): Cargo command runner
        publish (Callable): Called with (snapshot directory, snapshot) after each commit
    """

    def __init__(
        self,
        org: str,
        destination: str,
        git: GitClient,
        cargo: Optional[CargoRunner] = None,
        publish: Optional[Callable[[Path, PatchedSnapshot], None]] = None,
    ):
        self.org = org
        self.destination = destination
        self.git = git
        self.cargo = cargo or CargoRunner()
        self.publish = publish
        self.logger = logging.getLogger(__name__)

    def repository_url(self, repository: str) -> str:
        return f"{BASE_GITHUB_URL}/{self.org}/{repository}"

    # =========================================================================
    # Node collection
    # =========================================================================

    def companion_dependencies(self, context: ResolutionContext, dependent_dir: Path, dependent: str) -> List[str]:
        """Companions which the dependent's lock file references, in discovery order."""
        candidates = [repo for repo in context.companions if repo != dependent]
        found = detect_dependencies_among(read_lock(dependent_dir), self.org, candidates)
        self.logger.info(f"Detected companions: {', '.join(context.companions) or '(none)'}")
        self.logger.info(f"Detected dependencies among companions: {', '.join(found) or '(none)'}")
        return found

    def clone_extra_dependencies(
        self, names: List[str], workspace_dir: Path, excluded: Dict[str, str]
    ) -> List[PatchNode]:
        """
        Clone each extra dependency at its default branch.

        ``excluded`` maps repositories that must not be cloned as extras to the reason why.
        """
        nodes = []
        for name in names:
            if name in excluded:
                self.logger.info(f"Skipping extra dependency {name} because {excluded[name]}")
                continue

            directory = Path(workspace_dir) / name
            self.logger.info(f"Cloning extra dependency {name} to patch its default branch")
            self.git.clone(f"{self.repository_url(name)}.git", directory, depth=1)
            nodes.append(
                PatchNode(
                    repository=name,
                    working_dir=directory,
                    upstream_sha=self.git.rev_parse(directory),
                    upstream_branch=self.git.current_branch(directory),
                    kind=KIND_EXTRA,
                )
            )
        return nodes

    # =========================================================================
    # Snapshot chain
    # =========================================================================

    def start_chain(self, snapshot_dir: Path, branch_name: str, job_url: str) -> None:
        """Create the orphan branch holding the chain, starting with an ``init`` commit."""
        snapshot_dir.mkdir(parents=True, exist_ok=True)
        self.git.init(snapshot_dir, branch=branch_name)
        (snapshot_dir / SNAPSHOT_INIT_FILE).touch()
        self.git.commit_all(snapshot_dir, f"initial commit for job {job_url}")

    def substitute(self, target_dir: Path, snapshot: PatchedSnapshot, crates: List[str]) -> None:
        """Pin every reference of ``target_dir`` to ``snapshot.repository`` onto the snapshot commit."""
        repository_url = self.repository_url(snapshot.repository)
        self.logger.info(f"Patching {snapshot.repository} ({snapshot.sha}) into {target_dir}")
        rewrite_git_dependencies(target_dir, repository_url, self.destination, snapshot.sha)

        manifest = Path(target_dir) / MANIFEST_FILE
        if manifest.is_file():
            add_patch_table(manifest, repository_url, crates, self.destination, snapshot.sha)

    def _commit_snapshot(self, snapshot_dir: Path, node: PatchNode, message: str) -> PatchedSnapshot:
        replace_tree(snapshot_dir, node.working_dir)
        return self._commit(snapshot_dir, node, message)

    def _commit(self, snapshot_dir: Path, node: PatchNode, message: str) -> PatchedSnapshot:
        sha = self.git.commit_all(snapshot_dir, message)
        snapshot = PatchedSnapshot(
            repository=node.repository,
            sha=sha,
            upstream_sha=node.upstream_sha,
            fingerprints=node.fingerprints or FingerprintSet(),
            kind=node.kind,
        )
        self.logger.info(f"Pushing {node.kind} {node.repository} as commit {sha}")
        if self.publish is not None:
            self.publish(snapshot_dir, snapshot)
        return snapshot

    def sequence(self, nodes: List[PatchNode], dependent: PatchNode, snapshot_dir: Path) -> SequenceResult:
        """
        Commit ``nodes`` in dependency order, then the patched dependent.

        ``snapshot_dir`` must hold a chain started with ``start_chain``. Every node is
        fingerprinted before it is patched.

        Raises:
            UnresolvableDependency: The nodes' lock files reference each other in a cycle
            DanglingReference: The patched dependent references a crate its dependency no longer has
        """
        by_name = {node.repository: node for node in nodes}
        names = list(by_name)
        for node in nodes:
            node.dependencies = detect_dependencies_among(
                read_lock(node.working_dir), self.org, [name for name in names if name != node.repository]
            )
        order = order_patch_nodes(names, {node.repository: node.dependencies for node in nodes})
        self.logger.info(f"Patch order: {' → '.join(order + [dependent.repository])}")

        for node in [*nodes, dependent]:
            if node.fingerprints is None:
                node.fingerprints = hash_git_files(node.working_dir, self.git)
        dependent_lock = read_lock(dependent.working_dir)

        snapshots: List[PatchedSnapshot] = []
        produced: Dict[str, PatchedSnapshot] = {}
        crates: Dict[str, List[str]] = {}
        cached: Dict[str, CachedDependency] = {}

        for name in order:
            node = by_name[name]
            for dependency in node.dependencies:
                self.substitute(node.working_dir, produced[dependency], crates[dependency])

            snapshot = self._commit_snapshot(
                snapshot_dir, node, f"commit {node.kind} {name} (upstream commit {node.upstream_sha})"
            )
            snapshots.append(snapshot)
            produced[name] = snapshot
            crates[name] = discover_workspace_crates(node.working_dir)

            prefix = repository_source_prefix(self.org, name, node.upstream_branch)
            cached[prefix] = CachedDependency(
                url=archive_url(self.repository_url(name), node.upstream_sha),
                files=node.fingerprints,
                repository=name,
                sha=node.upstream_sha,
            )

        for name in order:
            self.substitute(dependent.working_dir, produced[name], crates[name])
        replace_tree(snapshot_dir, dependent.working_dir)

        # only meaningful once patched: the dependent must match the graph it will have after merge
        for name in order:
            dangling = find_dangling_references(snapshot_dir, self.destination, produced[name].sha, crates[name])
            if dangling:
                raise DanglingReference(dependent.repository, name, dangling)

        self.cargo.update(snapshot_dir, workspace_update_specs(read_lock(snapshot_dir)))
        prune_unused_patches(snapshot_dir)

        snapshots.append(
            self._commit(
                snapshot_dir,
                dependent,
                f"commit {KIND_DEPENDENT} {dependent.repository} (upstream commit {dependent.upstream_sha})",
            )
        )
        log_event(f"Built snapshot chain {' → '.join(snap.repository for snap in snapshots)}")

        return SequenceResult(
            snapshots=snapshots,
            cached_dependencies=cached,
            dependent_files=dependent.fingerprints,
            dependent_lock=dependent_lock,
            dependent_sha=dependent.upstream_sha,
        )
