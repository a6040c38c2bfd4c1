# The MIT License (MIT)
# Copyright © 2025 Entrius

from pathlib import Path

from cbs.classes import FileFingerprint, FingerprintSet
from cbs.utils.git_client import GitClient


def parse_ls_files_stage(output: str) -> FingerprintSet:
    """Parse ``git ls-files --stage`` output (``<mode> <hash> <stage>\\t<path>``)."""
    entries = []
    for line in output.splitlines():
        if not line.strip():
            continue
        meta, path = line.split('\t', 1)
        mode, content_hash, _stage = meta.split()
        entries.append(FileFingerprint(path=path, mode=mode, content_hash=content_hash))
    return FingerprintSet(entries)


def hash_git_files(directory: Path, git: GitClient) -> FingerprintSet:
    """Fingerprint the tracked files of a working tree.

    Files must be committed or staged to be part of the result.
    """
    return parse_ls_files_stage(git.ls_files_stage(Path(directory)))
