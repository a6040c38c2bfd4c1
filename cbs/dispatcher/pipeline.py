# The MIT License (MIT)
# Copyright © 2025 Entrius

import logging
import time
from pathlib import Path
from typing import Iterable, Optional

from cbs.classes import DispatchOutcome, PatchedSnapshot, classify_pipeline_status
from cbs.constants import (
    IS_DEPENDENT_PIPELINE_VARIABLE,
    PIPELINE_POLL_DELAY_SECONDS,
    PIPELINE_POLL_ERROR_LIMIT,
    SKIP_DEPENDENTS_VARIABLE,
    SNAPSHOT_BRANCH_PREFIX,
    SNAPSHOT_REMOTE,
)
from cbs.errors import PollingUnavailable, RemoteUnavailable
from cbs.utils.git_client import GitClient
from cbs.utils.gitlab_api_tools import create_pipeline, get_pipeline_status, pipeline_url
from cbs.utils.logging import log_event
from cbs.utils.models import PipelineVariables
from cbs.utils.utils import mask_secret


def snapshot_branch_name(project_id: str, pr_number: int, companion_number: Optional[int] = None) -> str:
    """
    Branch the snapshot chain is pushed to: ``cbs-<project id>-PR<number>``.

    The project id keeps checks of different repositories against the same dependent
    apart. ``-CMP<number>`` is appended when the dependent has a companion so that the
    dependent's own check can recognize the branch as its pull request.
    """
    branch = f"{SNAPSHOT_BRANCH_PREFIX}-{project_id}-PR{pr_number}"
    if companion_number is not None:
        branch += f"-CMP{companion_number}"
    return branch


def pipeline_variables(validated_repositories: Iterable[str]) -> PipelineVariables:
    return [
        {"key": SKIP_DEPENDENTS_VARIABLE, "value": " ".join(validated_repositories)},
        {"key": IS_DEPENDENT_PIPELINE_VARIABLE, "value": "true"},
    ]


class PipelineDispatcher:
    """Pushes the snapshot chain to GitLab and runs the dependent's pipeline on its last commit."""

    def __init__(
        self,
        git: GitClient,
        gitlab_url: str,
        project_path: str,
        token: str,
        push_url: str,
        branch_name: str,
        poll_delay_seconds: int = PIPELINE_POLL_DELAY_SECONDS,
        poll_error_limit: int = PIPELINE_POLL_ERROR_LIMIT,
    ):
        self.git = git
        self.gitlab_url = gitlab_url
        self.project_path = project_path
        self.token = token
        self.push_url = push_url
        self.branch_name = branch_name
        self.poll_delay_seconds = poll_delay_seconds
        self.poll_error_limit = poll_error_limit
        self.logger = logging.getLogger(__name__)

    def attach(self, snapshot_dir: Path) -> None:
        self.git.add_remote(snapshot_dir, SNAPSHOT_REMOTE, self.push_url)

    def publish(self, snapshot_dir: Path, snapshot: PatchedSnapshot) -> None:
        """Force-push the chain up to ``snapshot`` without triggering a pipeline for it."""
        self.git.push(snapshot_dir, SNAPSHOT_REMOTE, "HEAD", push_options=["ci.skip"])
        self.logger.debug(f"Pushed {snapshot.repository} ({snapshot.sha}) to {self.branch_name}")

    def dispatch(self, final_snapshot: PatchedSnapshot, validated_repositories: Iterable[str]) -> DispatchOutcome:
        """
        Create a pipeline for the snapshot branch and wait for it to finish.

        Args:
            final_snapshot (PatchedSnapshot): The dependent's snapshot, already published
            validated_repositories (Iterable[str]): Repositories the dependent's pipeline
                should not check again

        Returns:
            DispatchOutcome: The terminal result, status and pipeline url
        """
        self.logger.info(
            f"Creating pipeline for {final_snapshot.repository} at {self.branch_name} "
            f"(token {mask_secret(self.token)})"
        )
        created = create_pipeline(
            self.gitlab_url,
            self.project_path,
            self.token,
            self.branch_name,
            pipeline_variables(validated_repositories),
        )
        if created is None:
            raise RemoteUnavailable(f"Failed to fetch pipeline id or project id for {self.project_path}")

        pipeline_id, project_id = created
        url = pipeline_url(self.gitlab_url, project_id, pipeline_id)
        log_event(f"Created pipeline {url} for {self.branch_name}")
        return self.wait(url)

    def wait(self, url: str) -> DispatchOutcome:
        """Poll ``url`` until the pipeline reaches a terminal status."""
        errors = 0
        while True:
            status = get_pipeline_status(url, self.token)
            if status:
                errors = 0
                result = classify_pipeline_status(status)
                if result is not None:
                    self.logger.info(f"Pipeline {url} finished with status: {status}")
                    log_event(f"Pipeline {url} finished with status: {status}")
                    return DispatchOutcome(result=result, status=status, pipeline_url=url)
                self.logger.info(f"Current pipeline status is: {status}")
            else:
                errors += 1
                if errors > self.poll_error_limit:
                    raise PollingUnavailable(url, self.poll_error_limit)

            self.logger.info(f"Requesting {url} again in {self.poll_delay_seconds} seconds...")
            time.sleep(self.poll_delay_seconds)
