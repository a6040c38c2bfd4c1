# The MIT License (MIT)
# Copyright © 2025 Entrius

"""
End-to-end companion checks.

    check-dependent:  resolve → sequence → dispatch → record
    check-pipeline:   validate a recorded run → mark its jobs as passed
"""

import logging
import re
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple

from cbs.classes import DispatchOutcome, DispatchResult, SkipDecision, ValidationOutcome
from cbs.constants import COMPANION_REF_PATTERN, PULL_REQUEST_REF_PATTERN, UPSTREAM_REMOTE
from cbs.dispatcher.pipeline import PipelineDispatcher, snapshot_branch_name
from cbs.errors import MergeConflict, PipelineFailed, UnrecognizedRef
from cbs.resolver.branch_overrides import BranchOverrideResolver, DependentRef
from cbs.resolver.companion_graph import CompanionGraphResolver, ResolutionContext
from cbs.sequencer.cargo import CargoRunner
from cbs.sequencer.hashing import hash_git_files
from cbs.sequencer.manifest import read_lock
from cbs.sequencer.patch_sequencer import (
    KIND_COMPANION,
    KIND_DEPENDENCY,
    KIND_DEPENDENT,
    PatchNode,
    PatchSequencer,
)
from cbs.skip_cache.store import SkipCacheStore, cache_key
from cbs.skip_cache.validator import SkipCacheValidator
from cbs.utils.config import CheckConfig
from cbs.utils.git_client import GitClient
from cbs.utils.logging import log_event, log_resolution_summary

logger = logging.getLogger(__name__)


def parse_pull_request_ref(ref_name: str, accept_companion_branches: bool = True) -> int:
    """
    Pull request number of a CI ref.

    ``<number>`` is a pull request mirrored to the pipeline host and
    ``cbs-<anything>-CMP<number>`` a snapshot branch pushed for a dependent's companion.

    Raises:
        UnrecognizedRef: For any other ref (exit status 0)
    """
    if accept_companion_branches:
        match = re.match(COMPANION_REF_PATTERN, ref_name or '')
        if match:
            return int(match.group(1))

    match = re.match(PULL_REQUEST_REF_PATTERN, ref_name or '')
    if match:
        return int(match.group(1))

    raise UnrecognizedRef(f"$CI_COMMIT_REF_NAME was not recognized as a pull request ref: {ref_name}")


class DependentCheck:
    """Checks one pull request of the repository in ``config.repo_dir`` against one dependent."""

    def __init__(
        self,
        config: CheckConfig,
        git: Optional[GitClient] = None,
        cargo: Optional[CargoRunner] = None,
        store: Optional[SkipCacheStore] = None,
    ):
        self.config = config
        self.git = git or GitClient()
        self.cargo = cargo or CargoRunner()
        self.store = store

    def run(self) -> Optional[DispatchOutcome]:
        """
        Run the check.

        Returns:
            Optional[DispatchOutcome]: The successful outcome, or None when the dependent is skipped

        Raises:
            PipelineFailed: The dependent's pipeline did not succeed
        """
        config = self.config
        pr_number = parse_pull_request_ref(config.ci.ref_name)

        if config.dependent in config.ci.skip_dependents:
            logger.info(
                f"Skipping {config.dependent} since it was found in $SKIP_DEPENDENTS "
                f"({' '.join(config.ci.skip_dependents)})"
            )
            return None

        if config.ci.is_ci:
            self.git.configure_identity()

        workspace = Path(tempfile.mkdtemp(prefix='cbs-'))
        try:
            return self._run(pr_number, workspace)
        finally:
            shutil.rmtree(workspace, ignore_errors=True)

    def _run(self, pr_number: int, workspace: Path) -> DispatchOutcome:
        config = self.config
        this_repo = config.this_repo
        companions_dir = workspace / 'companions'

        resolver = CompanionGraphResolver(
            config.org, config.github_token, self.git, companions_dir, config.git_history_depth
        )
        context = resolver.resolve(this_repo, pr_number, config.repo_dir)
        start = context.node(this_repo).changeset

        dependent, dependent_ref = self._prepare_dependent(context, companions_dir)
        patched_ahead = config.ci.is_dependent_pipeline or dependent_ref.overridden

        if config.ci.is_dependent_pipeline:
            logger.info("Skipping upstream merge as this is a dependent pipeline, the branches are already merged")
        elif dependent_ref.overridden:
            logger.info("Skipping upstream merge as the dependent repository's ref has been overridden")
        else:
            self._merge_upstream(this_repo, config.repo_dir, start.target_branch, start.ref)

        sequencer = PatchSequencer(config.org, config.gitlab_destination, self.git, self.cargo)
        companion_dependencies = sequencer.companion_dependencies(context, dependent.working_dir, config.dependent)

        nodes: List[PatchNode] = []
        if patched_ahead:
            logger.info(f"Skipping extra dependencies ({' '.join(config.extra_dependencies)}) as the branch is patched already")
        else:
            excluded = {
                this_repo: f"this branch (also {this_repo}) will be patched into the dependent {config.dependent}",
                config.dependent: "it's being targeted as a dependent for this check",
            }
            excluded.update({name: "it was specified as a companion" for name in companion_dependencies})
            nodes.extend(
                sequencer.clone_extra_dependencies(config.extra_dependencies, workspace / 'extra_dependencies', excluded)
            )

        nodes.append(
            PatchNode(
                repository=this_repo,
                working_dir=config.repo_dir,
                upstream_sha=config.ci.commit_sha or self.git.rev_parse(config.repo_dir),
                upstream_branch=start.target_branch,
                kind=KIND_DEPENDENCY,
            )
        )
        for name in companion_dependencies:
            node = context.node(name)
            nodes.append(
                PatchNode(
                    repository=name,
                    working_dir=node.working_dir,
                    upstream_sha=node.head_sha,
                    upstream_branch=node.upstream_branch,
                    kind=KIND_COMPANION,
                )
            )

        dependent_pr = context.changeset_number(config.dependent)
        branch_name = snapshot_branch_name(config.ci.project_id, pr_number, dependent_pr)
        dispatcher = PipelineDispatcher(
            self.git,
            config.gitlab_url,
            config.gitlab_dependent_path,
            config.gitlab_token,
            config.gitlab_push_url,
            branch_name,
            poll_delay_seconds=config.poll_delay_seconds,
            poll_error_limit=config.poll_error_limit,
        )
        sequencer.publish = dispatcher.publish

        snapshot_dir = workspace / 'snapshot'
        sequencer.start_chain(snapshot_dir, branch_name, config.ci.job_url)
        dispatcher.attach(snapshot_dir)
        result = sequencer.sequence(nodes, dependent, snapshot_dir)

        log_resolution_summary(context.repositories, result.patch_order, context.branch_overrides)

        outcome = dispatcher.dispatch(result.final, context.companions)
        if outcome.result != DispatchResult.SUCCESS:
            raise PipelineFailed(outcome.pipeline_url, outcome.status)

        logger.info(f"Pipeline {outcome.pipeline_url} succeeded with status: {outcome.status}")
        if dependent_pr is not None and self.store is not None:
            validator = SkipCacheValidator(self.store, self.git, workspace / 'cache', config.gitlab_token)
            validator.record(cache_key(config.dependent, dependent_pr), result, outcome)

        return outcome

    def _merge_upstream(self, repository: str, directory: Path, branch: str, head_ref: str) -> None:
        url = f"{self.config.org_url}/{repository}"
        logger.info(f"Merging {branch} of {url} into {repository}")
        if not self.git.merge_upstream(directory, url, branch, f"Merge {branch} into {repository}"):
            raise MergeConflict(repository, head_ref, f"{UPSTREAM_REMOTE}/{branch}", self.config.git_history_depth)

    def _prepare_dependent(self, context: ResolutionContext, companions_dir: Path) -> Tuple[PatchNode, DependentRef]:
        """Use the dependent's companion when there is one, otherwise clone the branch selected for it."""
        config = self.config
        companion = context.node(config.dependent)
        if companion is not None:
            node = PatchNode(
                repository=config.dependent,
                working_dir=companion.working_dir,
                upstream_sha=companion.head_sha,
                upstream_branch=companion.upstream_branch,
                kind=KIND_DEPENDENT,
            )
            return node, DependentRef()

        start = context.node(config.this_repo).changeset
        overrides = BranchOverrideResolver(config.org, config.github_token, config.companion_overrides)
        ref = overrides.resolve(
            config.this_repo, config.dependent, start.target_branch, start.default_branch, context.branch_overrides
        )

        directory = companions_dir / config.dependent
        self.git.clone(
            f"{config.org_url}/{config.dependent}.git", directory, depth=config.git_history_depth, branch=ref.branch
        )
        branch = ref.branch or self.git.current_branch(directory)
        head_sha = self.git.rev_parse(directory)
        self.git.rename_branch(directory, head_sha)
        logger.info(f"Cloned dependent {config.dependent} at branch {branch} (commit {head_sha})")

        node = PatchNode(
            repository=config.dependent,
            working_dir=directory,
            upstream_sha=head_sha,
            upstream_branch=branch,
            kind=KIND_DEPENDENT,
        )
        return node, ref


def check_pipeline(
    config: CheckConfig, artifacts_path: Path, store: SkipCacheStore, git: Optional[GitClient] = None
) -> ValidationOutcome:
    """
    Decide whether the pipeline of the current pull request can be skipped.

    On SKIP, every job that passed in the recorded run is marked under ``artifacts_path``.
    """
    git = git or GitClient()
    pr_number = parse_pull_request_ref(config.ci.ref_name, accept_companion_branches=False)

    if config.ci.is_ci:
        git.configure_identity()

    key = cache_key(config.ci.project_name, pr_number)
    workspace = Path(tempfile.mkdtemp(prefix='cbs-'))
    try:
        validator = SkipCacheValidator(store, git, workspace, config.gitlab_token)
        outcome = validator.validate(
            key,
            config.ci.project_name,
            hash_git_files(config.repo_dir, git),
            read_lock(config.repo_dir),
        )
        if outcome.decision == SkipDecision.SKIP:
            validator.record_passed_jobs(outcome.jobs_url, artifacts_path)
            log_event(f"Skipping the pipeline of {config.ci.project_name}#{pr_number}: {outcome.reason}")
        return outcome
    finally:
        shutil.rmtree(workspace, ignore_errors=True)
