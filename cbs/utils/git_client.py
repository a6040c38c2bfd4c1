import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

from cbs.constants import CBS_GIT_USER_EMAIL, CBS_GIT_USER_NAME, UPSTREAM_REMOTE
from cbs.errors import GitCommandFailed


class GitClient:
    """Runs git commands for the working trees owned by one check."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def _run_git_command(self, args: List[str], cwd: Optional[Path] = None) -> Tuple[bool, str]:
        """Run a git command and return success status and output (stderr on failure)."""
        cmd = ["git", *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                check=True,
            )
            return True, result.stdout
        except subprocess.CalledProcessError as e:
            self.logger.error(f"Git command failed: {' '.join(cmd)}, Error: {e.stderr}")
            return False, e.stderr.strip() if e.stderr else str(e)

    def _check(self, args: List[str], cwd: Optional[Path] = None) -> str:
        success, output = self._run_git_command(args, cwd)
        if not success:
            raise GitCommandFailed(["git", *args], str(cwd or "."), output)
        return output

    def configure_identity(self) -> None:
        """Set the user name and email to make merging work in CI."""
        self._check(["config", "--global", "user.name", CBS_GIT_USER_NAME])
        self._check(["config", "--global", "user.email", CBS_GIT_USER_EMAIL])
        self._check(["config", "--global", "pull.rebase", "false"])

    def clone(self, url: str, destination: Path, depth: Optional[int] = None, branch: Optional[str] = None) -> None:
        args = ["clone"]
        if depth:
            args.append(f"--depth={depth}")
        if branch:
            args.extend(["--branch", branch])
        args.extend([url, str(destination)])
        self._check(args)

    def fetch_pull_request(self, cwd: Path, pr_number: int, depth: Optional[int] = None) -> str:
        """Fetch the head of a pull request into a local branch and check it out."""
        branch_name = f"PR-{pr_number}"
        args = ["fetch"]
        if depth:
            args.append(f"--depth={depth}")
        args.extend(["origin", f"pull/{pr_number}/head:{branch_name}"])
        self._check(args, cwd)
        self._check(["checkout", branch_name], cwd)
        return branch_name

    def rev_parse(self, cwd: Path, ref: str = "HEAD") -> str:
        return self._check(["rev-parse", ref], cwd).strip()

    def rename_branch(self, cwd: Path, new_name: str) -> None:
        self._check(["branch", "-m", new_name], cwd)

    def merge_upstream(self, cwd: Path, repository_url: str, branch: str, message: str) -> bool:
        """Merge ``branch`` of ``repository_url`` into the checked out branch.

        Returns False when the merge fails, after aborting it.
        """
        self._run_git_command(["remote", "remove", UPSTREAM_REMOTE], cwd)
        self._check(["remote", "add", UPSTREAM_REMOTE, repository_url], cwd)
        try:
            self._check(["fetch", "--force", UPSTREAM_REMOTE, branch], cwd)
            success, _ = self._run_git_command(
                ["merge", f"{UPSTREAM_REMOTE}/{branch}", "--no-edit", "-m", message], cwd
            )
            if not success:
                self._run_git_command(["merge", "--abort"], cwd)
            return success
        finally:
            self._run_git_command(["remote", "remove", UPSTREAM_REMOTE], cwd)

    def init(self, cwd: Path, branch: Optional[str] = None) -> None:
        self._check(["init", "--quiet"], cwd)
        if branch:
            self._check(["checkout", "--quiet", "-b", branch], cwd)

    def commit_all(self, cwd: Path, message: str) -> str:
        """Stage everything and commit it, returning the new commit sha."""
        self._check(["add", "--all", "."], cwd)
        self._check(["commit", "--quiet", "--allow-empty", "-m", message], cwd)
        return self.rev_parse(cwd)

    def add_remote(self, cwd: Path, name: str, url: str) -> None:
        self._check(["remote", "add", name, url], cwd)

    def push(self, cwd: Path, remote: str, ref: str = "HEAD", push_options: Optional[List[str]] = None) -> None:
        args = ["push", "--force"]
        for option in push_options or []:
            args.extend(["-o", option])
        args.extend([remote, ref])
        self._check(args, cwd)

    def ls_files_stage(self, cwd: Path) -> str:
        """List tracked files as ``<mode> <hash> <stage>\\t<path>`` lines."""
        return self._check(["ls-files", "--stage"], cwd)

    def current_branch(self, cwd: Path) -> str:
        return self._check(["rev-parse", "--abbrev-ref", "HEAD"], cwd).strip()
