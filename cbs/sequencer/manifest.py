# The MIT License (MIT)
# Copyright © 2025 Entrius

"""
Reading and rewriting of Cargo manifests (Cargo.toml) and lock files (Cargo.lock).

Substituting a dependency happens in two steps, since Cargo does not always
honor a ``[patch]`` section on its own:

    1. every ``git = "https://github.com/<org>/<repo>"`` dependency of every manifest in
       the tree is pointed at the snapshot host, pinned with ``rev``
    2. a ``[patch."https://github.com/<org>/<repo>"]`` section is added to the root manifest
       mapping each crate of the dependency to the same commit
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Tuple

import tomlkit
from tomlkit.exceptions import ParseError

from cbs.constants import (
    BASE_GITHUB_URL,
    MANIFEST_DEPENDENCY_TABLES,
    MANIFEST_FILE,
    MANIFEST_IGNORED_DIRS,
    MANIFEST_LOCK_FILE,
)
from cbs.utils.models import LockedPackage

logger = logging.getLogger(__name__)


def read_toml(path: Path) -> tomlkit.TOMLDocument:
    return tomlkit.parse(Path(path).read_text())


def write_toml(path: Path, document: tomlkit.TOMLDocument) -> None:
    Path(path).write_text(tomlkit.dumps(document))


def read_lock(directory: Path) -> Dict[str, Any]:
    """Plain (JSON serializable) contents of the lock file of ``directory``, or {} without one."""
    path = Path(directory) / MANIFEST_LOCK_FILE
    if not path.is_file():
        return {}
    return read_toml(path).unwrap()


def lock_packages(lock: Dict[str, Any]) -> List[LockedPackage]:
    packages = []
    for package in lock.get('package') or []:
        packages.append(
            LockedPackage(name=package.get('name', ''), version=package.get('version', ''), source=package.get('source'))
        )
    return packages


def org_source_prefix(org: str) -> str:
    return f'git+{BASE_GITHUB_URL}/{org}/'


def repository_source_prefix(org: str, repository: str, branch: str) -> str:
    """Lock source prefix of a repository's crates, e.g. ``git+https://github.com/org/repo?branch=master#``."""
    return f'{org_source_prefix(org)}{repository}?branch={branch}#'


def detect_dependencies_among(lock: Dict[str, Any], org: str, candidates: Iterable[str]) -> List[str]:
    """
    Find which ``candidates`` the locked packages are sourced from.

    Sources look like ``git+https://github.com/<org>/<repo>?branch=master#<sha>``.
    Returns the matches in the order of ``candidates``.
    """
    prefix = org_source_prefix(org)
    found = set()
    candidates = list(candidates)

    for package in lock_packages(lock):
        source = package.get('source') or ''
        if not source.startswith(prefix):
            continue
        after_org = source[len(prefix) :]
        for candidate in candidates:
            if after_org == candidate or after_org.startswith((f'{candidate}?', f'{candidate}#')):
                found.add(candidate)
                break

    return [candidate for candidate in candidates if candidate in found]


def workspace_update_specs(lock: Dict[str, Any]) -> List[str]:
    """``name:version`` of every locked package without a source, i.e. the workspace's own crates."""
    specs = []
    for package in lock_packages(lock):
        if package.get('source') or not package.get('version'):
            continue
        spec = f"{package['name']}:{package['version']}"
        if spec not in specs:
            specs.append(spec)
    return specs


def iter_manifests(directory: Path) -> Iterator[Path]:
    for root, dirs, files in os.walk(directory):
        dirs[:] = sorted(d for d in dirs if d not in MANIFEST_IGNORED_DIRS)
        if MANIFEST_FILE in files:
            yield Path(root) / MANIFEST_FILE


def discover_workspace_crates(directory: Path) -> List[str]:
    """Names of the crates defined in the tree of ``directory``."""
    crates = []
    for manifest in iter_manifests(directory):
        try:
            document = read_toml(manifest)
        except ParseError as e:
            logger.warning(f"Skipping unparsable manifest {manifest}: {e}")
            continue
        name = (document.get('package') or {}).get('name')
        if name and name not in crates:
            crates.append(str(name))
    return crates


def normalize_git_url(url: str) -> str:
    url = str(url).strip().rstrip('/')
    if url.endswith('.git'):
        url = url[: -len('.git')]
    return url.lower()


def _dependency_tables(document) -> Iterator[Any]:
    for name in MANIFEST_DEPENDENCY_TABLES:
        if name in document:
            yield document[name]

    workspace = document.get('workspace')
    if workspace is not None and 'dependencies' in workspace:
        yield workspace['dependencies']

    for platform in (document.get('target') or {}).values():
        for name in MANIFEST_DEPENDENCY_TABLES:
            if name in platform:
                yield platform[name]


def _git_dependencies(document) -> Iterator[Tuple[str, Any]]:
    for table in _dependency_tables(document):
        for key, entry in table.items():
            if isinstance(entry, dict) and 'git' in entry:
                yield key, entry


def rewrite_git_dependencies(directory: Path, repository_url: str, destination: str, rev: str) -> int:
    """
    Point every git dependency on ``repository_url`` at ``destination``, pinned to ``rev``.

    Returns:
        int: Number of dependency entries rewritten across all manifests
    """
    target = normalize_git_url(repository_url)
    rewritten = 0

    for manifest in iter_manifests(directory):
        document = read_toml(manifest)
        changed = False
        for _key, entry in _git_dependencies(document):
            if normalize_git_url(entry['git']) != target:
                continue
            entry['git'] = destination
            for pin in ('branch', 'tag'):
                if pin in entry:
                    del entry[pin]
            entry['rev'] = rev
            changed = True
            rewritten += 1
        if changed:
            write_toml(manifest, document)

    logger.debug(f"Rewrote {rewritten} dependencies on {repository_url} in {directory}")
    return rewritten


def add_patch_table(manifest: Path, repository_url: str, crates: Iterable[str], destination: str, rev: str) -> None:
    """Add ``[patch."<repository_url>"]`` mapping each crate to ``destination`` at ``rev``."""
    document = read_toml(manifest)

    patch = document.get('patch')
    section = patch.get(repository_url) if patch is not None else None
    if section is None:
        section = tomlkit.table()

    for crate in crates:
        pinned = tomlkit.inline_table()
        pinned.update({'git': destination, 'rev': rev})
        section[crate] = pinned

    if patch is None:
        patch = tomlkit.table(is_super_table=True)
        patch[repository_url] = section
        document['patch'] = patch
    elif repository_url not in patch:
        patch[repository_url] = section

    write_toml(manifest, document)


def find_dangling_references(
    directory: Path, destination: str, rev: str, crates: Iterable[str]
) -> List[Tuple[str, str]]:
    """
    List references to crates of the snapshot ``rev`` that the snapshot does not define.

    Returns:
        List[Tuple[str, str]]: (manifest path relative to ``directory``, crate name) pairs
    """
    known = set(crates)
    target = normalize_git_url(destination)
    dangling = []

    for manifest in iter_manifests(directory):
        document = read_toml(manifest)
        relative = str(manifest.relative_to(directory))
        for key, entry in _git_dependencies(document):
            if normalize_git_url(entry['git']) != target or str(entry.get('rev', '')) != rev:
                continue
            crate = str(entry.get('package', key))
            if crate not in known and (relative, crate) not in dangling:
                dangling.append((relative, crate))

    return dangling


def prune_unused_patches(directory: Path) -> List[str]:
    """
    Remove the patches Cargo reported as unused, then drop the patch section of the lock.

    Unused patches make the lock file unstable for ``--locked`` builds.

    Returns:
        List[str]: Names of the crates whose patch was removed
    """
    lock_path = Path(directory) / MANIFEST_LOCK_FILE
    manifest_path = Path(directory) / MANIFEST_FILE
    if not lock_path.is_file():
        return []

    lock = read_toml(lock_path)
    lock_patch = lock.get('patch')
    if lock_patch is None:
        return []

    unused = {entry.get('name') for entry in lock_patch.get('unused') or []}
    del lock['patch']
    write_toml(lock_path, lock)

    removed = []
    if not unused or not manifest_path.is_file():
        return removed

    manifest = read_toml(manifest_path)
    patch = manifest.get('patch')
    if patch is None:
        return removed

    for repository_url in list(patch.keys()):
        section = patch[repository_url]
        for crate in list(section.keys()):
            if crate in unused:
                del section[crate]
                removed.append(crate)
        if not section:
            del patch[repository_url]
    if not patch:
        del manifest['patch']
    write_toml(manifest_path, manifest)

    if removed:
        logger.info(f"Removed unused patches from {manifest_path}: {', '.join(removed)}")
    return removed
