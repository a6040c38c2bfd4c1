# The MIT License (MIT)
# Copyright © 2025 Entrius

"""Shared fixtures for CLI tests."""

import pytest
from click.testing import CliRunner

import cbs.cli.config_commands as config_commands


@pytest.fixture
def cli_root():
    from cbs.cli.main import cli

    return cli


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the CLI configuration at a throwaway directory."""
    cbs_dir = tmp_path / '.cbs'
    monkeypatch.setattr(config_commands, 'CBS_DIR', cbs_dir)
    monkeypatch.setattr(config_commands, 'CONFIG_FILE', cbs_dir / 'config.json')
    return cbs_dir / 'config.json'


@pytest.fixture
def dependent_env(tmp_path):
    """Environment of a GitLab job checking pull request 7 of substrate against polkadot."""
    return {
        'CBS_ORG': 'acme',
        'CBS_DEPENDENT_REPO': 'polkadot',
        'CBS_GITLAB_URL': 'gitlab.parity.io',
        'CBS_GITLAB_TOKEN': 'gitlab-secret',
        'GITHUB_TOKEN': 'github-secret',
        'CI_COMMIT_REF_NAME': '7',
        'CI_PROJECT_ID': '42',
        'CI_PROJECT_NAME': 'substrate',
        'CBS_REDIS_URL': '',
    }
