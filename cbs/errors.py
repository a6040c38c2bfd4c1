# The MIT License (MIT)
# Copyright © 2025 Entrius

"""
Error taxonomy for companion checks.

Every error is a ``click.ClickException`` so the CLI reports it on stderr and
exits with status 1 without a traceback. Messages always name the changeset,
repository or file that caused the failure.
"""

from typing import Optional

import click


class CBSError(click.ClickException):
    """Base class for fatal companion check errors."""

    exit_code = 1


class UnrecognizedRef(CBSError):
    """The CI ref is not a pull request ref. Not a failure: the check is skipped."""

    exit_code = 0


class MalformedReference(CBSError):
    """A companion line matched the keyword but not the expected shape."""

    def __init__(self, expression: str, source: str, org: str):
        self.expression = expression
        self.source = source
        super().__init__(
            f"Companion in the PR description of {source} had invalid format "
            f"or did not belong to organization {org}: {expression}"
        )


class UnmergeableCompanion(CBSError):
    def __init__(self, changeset_ref: str):
        self.changeset_ref = changeset_ref
        super().__init__(
            f"Companion {changeset_ref} is not mergeable. Resolve its conflicts with the target branch first."
        )


class MergeConflict(CBSError):
    def __init__(self, repository: str, head_ref: str, upstream_ref: str, history_depth: Optional[int] = None):
        self.repository = repository
        self.head_ref = head_ref
        self.upstream_ref = upstream_ref
        message = f"Unable to merge {upstream_ref} into {head_ref} of {repository}."
        if history_depth:
            message += (
                " If Git is complaining about the commit history, it probably means that the branch is "
                f"more than {history_depth} commits behind {upstream_ref}."
            )
        super().__init__(message)


class DanglingReference(CBSError):
    def __init__(self, dependent: str, dependency: str, references: list):
        self.dependent = dependent
        self.dependency = dependency
        self.references = references
        lines = [f'Failed to detect crate "{crate}" of {dependency} referenced in {path}' for path, crate in references]
        super().__init__(
            "Errors during crate matching\n"
            + "\n".join(lines)
            + "\n\nNote: this error generally happens if you have deleted or renamed a crate and did not update "
            f"it in {dependent}. Consider opening a companion pull request on {dependent} and referencing it "
            f"in this PR's description like:\n{dependent} companion: [companion PR link]"
        )


class UnresolvableDependency(CBSError):
    def __init__(self, repositories: list):
        self.repositories = repositories
        super().__init__(f"Unable to order the patching of {', '.join(repositories)}: dependency cycle among them")


class MissingTargetBranch(CBSError):
    def __init__(self, repository: str, branch: str):
        self.repository = repository
        self.branch = branch
        super().__init__(f"Unable to find the replacement for inexistent branch {branch} of {repository}")


class RemoteUnavailable(CBSError):
    """A request to a remote host failed after exhausting its retries."""


class PollingUnavailable(CBSError):
    def __init__(self, url: str, limit: int):
        self.url = url
        super().__init__(f"Request to {url} failed more than {limit} times")


class GitCommandFailed(CBSError):
    def __init__(self, command: list, cwd: str, stderr: str):
        self.command = command
        self.stderr = stderr
        super().__init__(f"Git command failed in {cwd}: {' '.join(command)}\n{stderr}")


class PipelineFailed(CBSError):
    def __init__(self, url: str, status: str):
        self.url = url
        self.status = status
        super().__init__(f"Pipeline {url} failed with status: {status}")


class CacheMismatch(CBSError):
    """A cached record disagrees with the current state. Fatal only for the skip path."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        recorded: Optional[str] = None,
        current: Optional[str] = None,
    ):
        self.path = path
        self.recorded = recorded
        self.current = current
        super().__init__(message)


class CargoCommandFailed(CBSError):
    def __init__(self, command: list, cwd: str, stderr: str):
        self.command = command
        self.stderr = stderr
        super().__init__(f"Cargo command failed in {cwd}: {' '.join(command)}\n{stderr}")
