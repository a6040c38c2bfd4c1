# The MIT License (MIT)
# Copyright © 2025 Entrius

# =============================================================================
# GitHub
# =============================================================================
GITHUB_DOMAIN = "github.com"
BASE_GITHUB_URL = f"https://{GITHUB_DOMAIN}"
BASE_GITHUB_API_URL = "https://api.github.com"
GITHUB_GRAPHQL_API_URL = f"{BASE_GITHUB_API_URL}/graphql"
GITHUB_REQUEST_TIMEOUT = 30  # seconds
GITHUB_MAX_ATTEMPTS = 3
RECENT_BRANCHES_LIMIT = 32

# =============================================================================
# GitLab (pipeline host)
# =============================================================================
GITLAB_REQUEST_TIMEOUT = 30  # seconds
GITLAB_MAX_ATTEMPTS = 3
PIPELINE_POLL_DELAY_SECONDS = 60
PIPELINE_POLL_ERROR_LIMIT = 2  # consecutive failed polls tolerated before giving up

# Pipeline statuses reported by the host
PIPELINE_SUCCESS_STATUSES = frozenset({"success"})
PIPELINE_FAILURE_STATUSES = frozenset({"skipped", "canceled", "failed"})

# Run parameters passed to the dependent pipeline
SKIP_DEPENDENTS_VARIABLE = "SKIP_DEPENDENTS"
IS_DEPENDENT_PIPELINE_VARIABLE = "IS_DEPENDENT_PIPELINE"

# =============================================================================
# Git
# =============================================================================
DEFAULT_GIT_HISTORY_DEPTH = 100
FALLBACK_DEFAULT_BRANCH = "master"
CBS_GIT_USER_NAME = "Companion Build System (CBS)"
CBS_GIT_USER_EMAIL = "<>"
UPSTREAM_REMOTE = "github"
SNAPSHOT_REMOTE = "gitlab"
SNAPSHOT_INIT_FILE = "init"

# Snapshot branches: cbs-<project id>-PR<number>[-CMP<dependent companion number>]
SNAPSHOT_BRANCH_PREFIX = "cbs"
COMPANION_REF_PATTERN = r"^cbs-.*-CMP(\d+)$"
PULL_REQUEST_REF_PATTERN = r"^(\d+)$"

# =============================================================================
# Manifests
# =============================================================================
MANIFEST_FILE = "Cargo.toml"
MANIFEST_LOCK_FILE = "Cargo.lock"
MANIFEST_DEPENDENCY_TABLES = ("dependencies", "dev-dependencies", "build-dependencies")
MANIFEST_IGNORED_DIRS = frozenset({".git", "target"})

# =============================================================================
# Skip cache
# =============================================================================
CACHE_KEY_PREFIX = "cbs"
CACHE_TIMEOUT_SECONDS = 32
PASSED_JOBS_DIR = "cbs/passed-jobs"

# =============================================================================
# CLI
# =============================================================================
CBS_VERSION = "0.4.0"
