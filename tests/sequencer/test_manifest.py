# The MIT License (MIT)
# Copyright © 2025 Entrius

"""Tests for Cargo manifest and lock file handling."""

from cbs.sequencer.manifest import (
    add_patch_table,
    detect_dependencies_among,
    discover_workspace_crates,
    find_dangling_references,
    normalize_git_url,
    prune_unused_patches,
    read_lock,
    read_toml,
    repository_source_prefix,
    rewrite_git_dependencies,
    workspace_update_specs,
)

ORG = 'acme'
SNAPSHOTS = 'https://gitlab.example.com/mirrors/dependent.git'
SUBSTRATE = 'https://github.com/acme/substrate'


# =============================================================================
# Lock files
# =============================================================================


class TestLockFiles:
    def test_missing_lock_reads_as_empty(self, tmp_path):
        assert read_lock(tmp_path) == {}

    def test_detects_candidates_in_candidate_order(self, crate_tree, source):
        tree = crate_tree('polkadot')
        tree.lock(
            [
                ('sp-core', '6.0.0', source('substrate')),
                ('cumulus-client', '0.1.0', source('cumulus', branch='polkadot-v0.9.20')),
                ('serde', '1.0.0', 'registry+https://github.com/rust-lang/crates.io-index'),
            ]
        )

        found = detect_dependencies_among(read_lock(tree.root), ORG, ['cumulus', 'substrate', 'beefy'])

        assert found == ['cumulus', 'substrate']

    def test_repository_name_must_match_exactly(self, crate_tree, source):
        tree = crate_tree('polkadot')
        tree.lock([('sp-core', '6.0.0', source('substrate-extra'))])

        assert detect_dependencies_among(read_lock(tree.root), ORG, ['substrate']) == []

    def test_other_organizations_are_ignored(self, crate_tree):
        tree = crate_tree('polkadot')
        tree.lock([('sp-core', '6.0.0', 'git+https://github.com/other/substrate?branch=master#abc')])

        assert detect_dependencies_among(read_lock(tree.root), ORG, ['substrate']) == []

    def test_workspace_update_specs_list_local_crates_only(self, crate_tree, source):
        tree = crate_tree('polkadot')
        tree.lock(
            [
                ('polkadot-cli', '0.9.20', None),
                ('polkadot-service', '0.9.20', None),
                ('sp-core', '6.0.0', source('substrate')),
            ]
        )

        assert workspace_update_specs(read_lock(tree.root)) == ['polkadot-cli:0.9.20', 'polkadot-service:0.9.20']

    def test_source_prefix(self):
        assert repository_source_prefix(ORG, 'substrate', 'master') == 'git+https://github.com/acme/substrate?branch=master#'


# =============================================================================
# Manifests
# =============================================================================


class TestManifests:
    def test_normalize_git_url(self):
        assert normalize_git_url('https://github.com/Acme/Substrate.git/') == 'https://github.com/acme/substrate'

    def test_discovers_crates_outside_build_output(self, crate_tree):
        tree = crate_tree('substrate')
        tree.manifest('[workspace]\nmembers = ["primitives/core"]\n')
        tree.manifest('[package]\nname = "sp-core"\n', subdir='primitives/core')
        tree.manifest('[package]\nname = "generated"\n', subdir='target/debug/build')

        assert discover_workspace_crates(tree.root) == ['sp-core']

    def test_rewrites_git_dependencies_in_every_manifest(self, crate_tree):
        tree = crate_tree('polkadot')
        root = tree.manifest(
            """
            [package]
            name = "polkadot"

            [dependencies]
            sp-core = { git = "https://github.com/acme/substrate", branch = "master" }
            serde = "1.0"

            [dev-dependencies.sp-io]
            git = "https://github.com/acme/substrate.git"
            branch = "master"
            """
        )
        nested = tree.manifest(
            """
            [package]
            name = "polkadot-runtime"

            [target.'cfg(unix)'.dependencies]
            sp-std = { git = "https://github.com/acme/substrate", tag = "v1" }
            """,
            subdir='runtime',
        )

        rewritten = rewrite_git_dependencies(tree.root, SUBSTRATE, SNAPSHOTS, 'abc123')

        assert rewritten == 3
        document = read_toml(root).unwrap()
        assert document['dependencies']['sp-core'] == {'git': SNAPSHOTS, 'rev': 'abc123'}
        assert document['dependencies']['serde'] == '1.0'
        assert document['dev-dependencies']['sp-io'] == {'git': SNAPSHOTS, 'rev': 'abc123'}
        nested_document = read_toml(nested).unwrap()
        assert nested_document['target']['cfg(unix)']['dependencies']['sp-std'] == {'git': SNAPSHOTS, 'rev': 'abc123'}

    def test_other_repositories_are_left_alone(self, crate_tree):
        tree = crate_tree('polkadot')
        manifest = tree.manifest(
            """
            [dependencies]
            cumulus-client = { git = "https://github.com/acme/cumulus", branch = "master" }
            """
        )
        before = manifest.read_text()

        assert rewrite_git_dependencies(tree.root, SUBSTRATE, SNAPSHOTS, 'abc123') == 0
        assert manifest.read_text() == before

    def test_adds_patch_section(self, crate_tree):
        tree = crate_tree('polkadot')
        manifest = tree.manifest('[package]\nname = "polkadot"\n')

        add_patch_table(manifest, SUBSTRATE, ['sp-core', 'sp-io'], SNAPSHOTS, 'abc123')

        patch = read_toml(manifest).unwrap()['patch'][SUBSTRATE]
        assert patch == {
            'sp-core': {'git': SNAPSHOTS, 'rev': 'abc123'},
            'sp-io': {'git': SNAPSHOTS, 'rev': 'abc123'},
        }

    def test_patch_sections_accumulate(self, crate_tree):
        tree = crate_tree('polkadot')
        manifest = tree.manifest('[package]\nname = "polkadot"\n')

        add_patch_table(manifest, SUBSTRATE, ['sp-core'], SNAPSHOTS, 'abc123')
        add_patch_table(manifest, 'https://github.com/acme/cumulus', ['cumulus-client'], SNAPSHOTS, 'def456')

        patch = read_toml(manifest).unwrap()['patch']
        assert set(patch) == {SUBSTRATE, 'https://github.com/acme/cumulus'}


# =============================================================================
# Dangling references and unused patches
# =============================================================================


class TestDanglingReferences:
    def test_reports_crates_the_snapshot_does_not_define(self, crate_tree):
        tree = crate_tree('polkadot')
        tree.manifest(
            f"""
            [dependencies]
            sp-core = {{ git = "{SNAPSHOTS}", rev = "abc123" }}
            renamed = {{ git = "{SNAPSHOTS}", rev = "abc123", package = "sp-gone" }}
            other = {{ git = "{SNAPSHOTS}", rev = "fff000" }}
            """
        )

        dangling = find_dangling_references(tree.root, SNAPSHOTS, 'abc123', ['sp-core'])

        assert dangling == [('Cargo.toml', 'sp-gone')]

    def test_clean_tree(self, crate_tree):
        tree = crate_tree('polkadot')
        tree.manifest(f'[dependencies]\nsp-core = {{ git = "{SNAPSHOTS}", rev = "abc123" }}\n')

        assert find_dangling_references(tree.root, SNAPSHOTS, 'abc123', ['sp-core']) == []


class TestPruneUnusedPatches:
    def test_removes_unused_patches_and_lock_section(self, crate_tree):
        tree = crate_tree('polkadot')
        tree.manifest(
            f"""
            [package]
            name = "polkadot"

            [patch."{SUBSTRATE}"]
            sp-core = {{ git = "{SNAPSHOTS}", rev = "abc123" }}
            sp-unused = {{ git = "{SNAPSHOTS}", rev = "abc123" }}

            [patch."https://github.com/acme/beefy"]
            beefy-unused = {{ git = "{SNAPSHOTS}", rev = "def456" }}
            """
        )
        lock = tree.lock([('polkadot', '0.9.20', None)])
        lock.write_text(
            lock.read_text()
            + '\n[[patch.unused]]\nname = "sp-unused"\nversion = "1.0.0"\n'
            + '\n[[patch.unused]]\nname = "beefy-unused"\nversion = "1.0.0"\n'
        )

        removed = prune_unused_patches(tree.root)

        assert sorted(removed) == ['beefy-unused', 'sp-unused']
        manifest = read_toml(tree.root / 'Cargo.toml').unwrap()
        assert manifest['patch'] == {SUBSTRATE: {'sp-core': {'git': SNAPSHOTS, 'rev': 'abc123'}}}
        assert 'patch' not in read_lock(tree.root)

    def test_lock_without_patch_section(self, crate_tree):
        tree = crate_tree('polkadot')
        tree.lock([('polkadot', '0.9.20', None)])

        assert prune_unused_patches(tree.root) == []
