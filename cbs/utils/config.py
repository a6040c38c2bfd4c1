import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from cbs.constants import (
    BASE_GITHUB_URL,
    DEFAULT_GIT_HISTORY_DEPTH,
    PIPELINE_POLL_DELAY_SECONDS,
    PIPELINE_POLL_ERROR_LIMIT,
)
from cbs.utils.gitlab_api_tools import split_gitlab_url
from cbs.utils.utils import split_words


@dataclass
class CIEnvironment:
    """Values provided by the CI job running the check"""

    ref_name: str = ''
    project_id: str = ''
    project_name: str = ''
    commit_sha: str = ''
    job_url: str = ''
    skip_dependents: List[str] = field(default_factory=list)
    is_dependent_pipeline: bool = False
    is_ci: bool = False

    @classmethod
    def from_environment(cls) -> 'CIEnvironment':
        return cls(
            ref_name=os.environ.get('CI_COMMIT_REF_NAME', ''),
            project_id=os.environ.get('CI_PROJECT_ID', ''),
            project_name=os.environ.get('CI_PROJECT_NAME', ''),
            commit_sha=os.environ.get('CI_COMMIT_SHA', ''),
            job_url=os.environ.get('CI_JOB_URL', ''),
            skip_dependents=split_words(os.environ.get('SKIP_DEPENDENTS', '')),
            is_dependent_pipeline=bool(os.environ.get('IS_DEPENDENT_PIPELINE')),
            is_ci=bool(os.environ.get('CI')),
        )


@dataclass
class CacheConfig:
    redis_url: Optional[str] = None
    redis_password: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.redis_url)

    @classmethod
    def from_environment(cls) -> 'CacheConfig':
        return cls(
            redis_url=os.environ.get('CBS_REDIS_URL') or None,
            redis_password=os.environ.get('CBS_REDIS_PASSWORD') or None,
        )


@dataclass
class CheckConfig:
    """Everything one dependent check needs to run"""

    org: str
    dependent: str
    gitlab_url: str
    gitlab_dependent_path: str
    gitlab_token: str
    github_token: str
    repo_dir: Path
    ci: CIEnvironment = field(default_factory=CIEnvironment)
    cache: CacheConfig = field(default_factory=CacheConfig)
    extra_dependencies: List[str] = field(default_factory=list)
    companion_overrides: List[str] = field(default_factory=list)
    git_history_depth: int = DEFAULT_GIT_HISTORY_DEPTH
    poll_delay_seconds: int = PIPELINE_POLL_DELAY_SECONDS
    poll_error_limit: int = PIPELINE_POLL_ERROR_LIMIT

    @property
    def this_repo(self) -> str:
        return self.repo_dir.name

    @property
    def org_url(self) -> str:
        return f'{BASE_GITHUB_URL}/{self.org}'

    @property
    def gitlab_destination(self) -> str:
        """Url of the dependent's GitLab repository, as referenced by patched manifests."""
        prefix, domain = split_gitlab_url(self.gitlab_url)
        return f'{prefix}{domain}/{self.gitlab_dependent_path}.git'

    @property
    def gitlab_push_url(self) -> str:
        prefix, domain = split_gitlab_url(self.gitlab_url)
        return f'{prefix}token:{self.gitlab_token}@{domain}/{self.gitlab_dependent_path}.git'
