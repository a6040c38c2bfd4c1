# The MIT License (MIT)
# Copyright © 2025 Entrius

"""Shared fixtures for sequencer tests: throwaway crate trees and a mocked git."""

import textwrap
from pathlib import Path
from unittest.mock import Mock

import pytest

from cbs.sequencer.cargo import CargoRunner
from cbs.utils.git_client import GitClient

ORG = 'acme'
DESTINATION = 'https://gitlab.example.com/mirrors/dependent.git'


def lock_text(packages):
    """Render a Cargo.lock from (name, version, source) tuples."""
    blocks = ['version = 3']
    for name, version, source in packages:
        block = f'[[package]]\nname = "{name}"\nversion = "{version}"'
        if source:
            block += f'\nsource = "{source}"'
        blocks.append(block)
    return '\n\n'.join(blocks) + '\n'


def github_source(repository, sha='0' * 40, branch='master'):
    return f'git+https://github.com/{ORG}/{repository}?branch={branch}#{sha}'


class CrateTree:
    """Writes Cargo.toml / Cargo.lock files under a repository directory."""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def manifest(self, content: str, subdir: str = '') -> Path:
        path = self.root / subdir / 'Cargo.toml'
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content).lstrip())
        return path

    def lock(self, packages) -> Path:
        path = self.root / 'Cargo.lock'
        path.write_text(lock_text(packages))
        return path


@pytest.fixture
def crate_tree(tmp_path):
    def make(name):
        return CrateTree(tmp_path / name)

    return make


@pytest.fixture
def source():
    return github_source


@pytest.fixture
def git():
    client = Mock(spec=GitClient)
    client.ls_files_stage.return_value = '100644 e69de29bb2d1d6434b8b29ae775ad8c2e48c5391 0\tCargo.toml\n'
    client.rev_parse.return_value = 'f' * 40
    client.current_branch.return_value = 'master'
    return client


@pytest.fixture
def cargo():
    return Mock(spec=CargoRunner)
