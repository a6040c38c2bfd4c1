# The MIT License (MIT)
# Copyright © 2025 Entrius

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple

from cbs.classes import Changeset, CompanionEdge, DependencyGraphNode, RepositoryRef
from cbs.constants import DEFAULT_GIT_HISTORY_DEPTH, UPSTREAM_REMOTE
from cbs.errors import MergeConflict, RemoteUnavailable, UnmergeableCompanion
from cbs.resolver.description import (
    CompanionReference,
    DescriptionLine,
    branch_overrides,
    companion_references,
    parse_description,
)
from cbs.utils.git_client import GitClient
from cbs.utils.github_api_tools import get_pull_request
from cbs.utils.logging import log_event


@dataclass
class ResolutionContext:
    """State owned by one resolution run.

    ``visited`` holds every repository that was claimed by a reference, including
    the ones whose changeset turned out to be closed. ``nodes`` keeps discovery order.
    """

    org: str
    start_repository: str
    visited: Set[str] = field(default_factory=set)
    nodes: Dict[str, DependencyGraphNode] = field(default_factory=dict)
    edges: List[CompanionEdge] = field(default_factory=list)
    descriptions: Dict[str, List[DescriptionLine]] = field(default_factory=dict)
    branch_overrides: Dict[str, str] = field(default_factory=dict)
    target_branches: Dict[str, str] = field(default_factory=dict)

    @property
    def graph(self) -> List[DependencyGraphNode]:
        """Resolved nodes in discovery order, the start repository first."""
        return list(self.nodes.values())

    @property
    def repositories(self) -> List[str]:
        return [node.repository for node in self.graph]

    @property
    def companions(self) -> List[str]:
        """Every discovered repository except the one the run started from."""
        return [name for name in self.nodes if name != self.start_repository]

    def node(self, repository: str) -> Optional[DependencyGraphNode]:
        return self.nodes.get(repository)

    def changeset_number(self, repository: str) -> Optional[int]:
        node = self.nodes.get(repository)
        if node is None or node.changeset is None:
            return None
        return node.changeset.number


class CompanionGraphResolver:
    """Discovers the companions of a pull request, transitively and without revisiting repositories.

    Companions are processed depth-first: the companions of a companion are discovered
    before the next reference of the description that mentioned it.
    """

    def __init__(
        self,
        org: str,
        github_token: str,
        git: GitClient,
        workspace_dir: Path,
        history_depth: int = DEFAULT_GIT_HISTORY_DEPTH,
    ):
        self.org = org
        self.github_token = github_token
        self.git = git
        self.workspace_dir = Path(workspace_dir)
        self.history_depth = history_depth
        self.logger = logging.getLogger(__name__)

    def fetch_changeset(self, repository: str, number: int) -> Changeset:
        payload = get_pull_request(self.org, repository, number, self.github_token)
        if payload is None:
            raise RemoteUnavailable(f"Failed to fetch pull request {self.org}/{repository}#{number} from GitHub")
        return Changeset.from_github_response(RepositoryRef(self.org, repository), number, payload)

    def resolve(self, start_repository: str, start_number: int, start_dir: Path) -> ResolutionContext:
        """
        Build the companion graph starting at ``start_repository#start_number``.

        Args:
            start_repository (str): Repository the check runs for
            start_number (int): Pull request number of the start changeset
            start_dir (Path): Existing checkout of the start changeset

        Returns:
            ResolutionContext: Discovered nodes, edges, target branches and branch overrides
        """
        context = ResolutionContext(org=self.org, start_repository=start_repository)
        context.visited.add(start_repository)

        start = self.fetch_changeset(start_repository, start_number)
        self.logger.info(f"Processing PR {start.ref}")
        context.nodes[start_repository] = DependencyGraphNode(
            repository=start_repository,
            working_dir=Path(start_dir),
            head_sha=self.git.rev_parse(Path(start_dir)),
            changeset=start,
        )

        stack: List[Tuple[Changeset, Iterator[CompanionReference]]] = [(start, self._scan(context, start))]
        while stack:
            changeset, references = stack[-1]
            reference = next(references, None)
            if reference is None:
                stack.pop()
                continue

            companion = self._visit(context, changeset, reference)
            if companion is not None:
                self.logger.info(f"Processing PR {companion.ref}")
                stack.append((companion, self._scan(context, companion)))

        self._collect_branch_overrides(context)
        log_event(f"Resolved companions of {start.ref}: {', '.join(context.repositories)}")
        return context

    def _scan(self, context: ResolutionContext, changeset: Changeset) -> Iterator[CompanionReference]:
        lines = parse_description(changeset.body, self.org, changeset.ref)
        context.descriptions[changeset.repository.name] = lines
        context.target_branches[changeset.repository.name] = changeset.target_branch
        return iter(companion_references(lines))

    def _visit(
        self, context: ResolutionContext, source: Changeset, reference: CompanionReference
    ) -> Optional[Changeset]:
        """Handle one companion reference. Returns the changeset to scan next, if any."""
        repository = reference.repository

        if repository in (source.repository.name, context.start_repository):
            self.logger.info(
                f"Skipping {reference.expression} as it refers to the repository where this check is currently running"
            )
            return None

        context.edges.append(CompanionEdge(source.repository.name, source.number, repository, reference.number))
        source_node = context.nodes.get(source.repository.name)
        if source_node is not None:
            source_node.edges.append(context.edges[-1])

        if repository in context.visited:
            self.logger.info(
                f"Skipping {reference.expression} as the repository {repository} has already been registered before"
            )
            return None
        context.visited.add(repository)

        companion = self.fetch_changeset(repository, reference.number)
        if companion.is_closed:
            self.logger.info(f"Skipping {companion.ref} because it is closed")
            return None
        if companion.is_unmergeable:
            raise UnmergeableCompanion(companion.ref)

        context.nodes[repository] = self._materialize(companion)
        return companion

    def _materialize(self, changeset: Changeset) -> DependencyGraphNode:
        """Clone the changeset at its head and merge its target branch into it."""
        repository = changeset.repository
        destination = self.workspace_dir / repository.name

        self.git.clone(f"{repository.url}.git", destination, depth=self.history_depth)
        self.git.fetch_pull_request(destination, changeset.number, depth=self.history_depth)
        head_sha = self.git.rev_parse(destination)
        self.git.rename_branch(destination, head_sha)
        self.logger.info(f"Cloned companion {changeset.ref} at commit {head_sha}")

        target = changeset.target_branch
        self.logger.info(f"Merging {target} of {repository.url} into {repository.name}")
        if not self.git.merge_upstream(destination, repository.url, target, f"Merge {target} into {repository.name}"):
            raise MergeConflict(repository.name, changeset.ref, f"{UPSTREAM_REMOTE}/{target}", self.history_depth)

        return DependencyGraphNode(
            repository=repository.name,
            working_dir=destination,
            head_sha=head_sha,
            changeset=changeset,
        )

    def _collect_branch_overrides(self, context: ResolutionContext) -> None:
        # earlier descriptions win: the start changeset is scanned first
        for repository, lines in context.descriptions.items():
            for directive in branch_overrides(lines):
                if directive.repository in context.branch_overrides:
                    continue
                self.logger.info(
                    f"Detected branch override {directive.branch} for {directive.repository} in {repository}"
                )
                context.branch_overrides[directive.repository] = directive.branch
