# The MIT License (MIT)
# Copyright © 2025 Entrius

"""
CBS CLI - Main entry point

Usage:
    cbs check-dependent ...   - Check a pull request against a dependent (alias: cd)
    cbs check-pipeline ...    - Skip a pipeline that already passed (alias: cp)
    cbs config                - Show/set CLI configuration
"""

from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console

from cbs.check import DependentCheck, check_pipeline
from cbs.cli.config_commands import config, get_config_value, load_config
from cbs.constants import CBS_VERSION
from cbs.errors import CBSError, UnrecognizedRef
from cbs.skip_cache.store import SkipCacheStore
from cbs.utils.config import CacheConfig, CheckConfig, CIEnvironment
from cbs.utils.logging import setup_logging
from cbs.utils.utils import split_words

console = Console()


class AliasGroup(click.Group):
    """Click Group that supports command aliases without duplicate help entries."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._aliases = {}  # alias -> canonical name

    def add_alias(self, name, alias):
        """Register an alias for an existing command."""
        self._aliases[alias] = name

    def get_command(self, ctx, cmd_name):
        canonical = self._aliases.get(cmd_name, cmd_name)
        return super().get_command(ctx, canonical)

    def format_commands(self, ctx, formatter):
        """Write the help text, appending aliases to command descriptions."""
        alias_map = {}
        for alias, canonical in self._aliases.items():
            alias_map.setdefault(canonical, []).append(alias)

        commands = []
        for subcommand in self.list_commands(ctx):
            cmd = self.commands.get(subcommand)
            if cmd is None or cmd.hidden:
                continue
            help_text = cmd.get_short_help_str(limit=150)
            aliases = alias_map.get(subcommand)
            if aliases:
                subcommand = f'{subcommand}, {", ".join(sorted(aliases))}'
            commands.append((subcommand, help_text))

        if commands:
            with formatter.section('Commands'):
                formatter.write_dl(commands)


# Options of each command that fall back to the values saved with ``cbs config set``
CONFIGURED_OPTIONS = {
    'check-dependent': ('org', 'dependent_repo', 'gitlab_url', 'gitlab_dependent_path', 'extra_dependencies'),
}


def saved_defaults(group: AliasGroup) -> dict:
    """Build a click default map from the saved configuration, for commands and their aliases."""
    saved = load_config()
    default_map = {}
    for command, keys in CONFIGURED_OPTIONS.items():
        values = {key: saved[key] for key in keys if saved.get(key)}
        default_map[command] = values
        for alias, canonical in group._aliases.items():
            if canonical == command:
                default_map[alias] = values
    return default_map


@click.group(cls=AliasGroup)
@click.version_option(version=CBS_VERSION, prog_name='cbs')
@click.option('--verbose', '-v', is_flag=True, help='Log debug messages')
@click.option('--events-dir', type=click.Path(file_okay=False), default=None, help='Record milestones to events.log')
@click.pass_context
def cli(ctx: click.Context, verbose: bool, events_dir: str):
    """Companion Build System - check pull requests against the repositories depending on them"""
    setup_logging(verbose=verbose, events_dir=events_dir)
    ctx.default_map = saved_defaults(ctx.command)


@cli.command('check-dependent')
@click.option('--org', envvar='CBS_ORG', required=True, help='GitHub organization')
@click.option(
    '--dependent-repo', envvar='CBS_DEPENDENT_REPO', required=True,
    help='Repository to check this pull request against',
)
@click.option('--gitlab-url', envvar='CBS_GITLAB_URL', required=True)
@click.option(
    '--gitlab-dependent-path', required=True,
    help='GitLab project path of the dependent, e.g. parity/mirrors/polkadot',
)
@click.option(
    '--gitlab-dependent-token', envvar='CBS_GITLAB_TOKEN', required=True,
    help='Token with the `api` and `write_repository` scopes',
)
@click.option('--github-api-token', envvar='GITHUB_TOKEN', required=True)
@click.option(
    '--extra-dependencies',
    help='Space separated repositories patched at their default branch',
)
@click.option(
    '--companion-overrides', multiple=True,
    help='Newline separated "repository: branch pattern" lines correlating release branches (repeatable)',
)
@click.option('--repo-dir', type=click.Path(exists=True, file_okay=False), default='.', help='Checkout of this repository')
def check_dependent(
    org, dependent_repo, gitlab_url, gitlab_dependent_path, gitlab_dependent_token, github_api_token,
    extra_dependencies, companion_overrides, repo_dir,
):
    """Check that this pull request does not break a dependent.

    \b
    Examples:
        cbs check-dependent --org paritytech --dependent-repo polkadot \\
            --gitlab-url gitlab.parity.io --gitlab-dependent-path parity/mirrors/polkadot
    """
    cache = CacheConfig.from_environment()
    config = CheckConfig(
        org=org,
        dependent=dependent_repo,
        gitlab_url=gitlab_url,
        gitlab_dependent_path=gitlab_dependent_path,
        gitlab_token=gitlab_dependent_token,
        github_token=github_api_token,
        repo_dir=Path(repo_dir).resolve(),
        ci=CIEnvironment.from_environment(),
        cache=cache,
        extra_dependencies=split_words(extra_dependencies),
        companion_overrides=list(companion_overrides),
    )
    store = SkipCacheStore(cache) if cache.enabled else None

    try:
        outcome = DependentCheck(config, store=store).run()
    except UnrecognizedRef as e:
        console.print(e.message)
        return

    if outcome is None:
        console.print(f'[yellow]Skipped {dependent_repo}[/yellow]')
    else:
        console.print(f'[green]Pipeline {outcome.pipeline_url} succeeded[/green]')


@cli.command('check-pipeline')
@click.option('--artifacts-path', type=click.Path(file_okay=False), required=True, help='Where passed jobs are marked')
@click.option('--gitlab-token', envvar='CBS_GITLAB_TOKEN', default=None, help='Token used to list the recorded jobs')
@click.option('--repo-dir', type=click.Path(exists=True, file_okay=False), default='.', help='Checkout of this repository')
def check_pipeline_command(artifacts_path, gitlab_token, repo_dir):
    """Skip this pull request's pipeline if an equivalent one already passed."""
    cache = CacheConfig.from_environment()
    if not cache.enabled:
        raise CBSError('The skip cache is not configured: set $CBS_REDIS_URL')

    config = CheckConfig(
        org=get_config_value('org'),
        dependent='',
        gitlab_url=get_config_value('gitlab_url'),
        gitlab_dependent_path='',
        gitlab_token=gitlab_token or '',
        github_token='',
        repo_dir=Path(repo_dir).resolve(),
        ci=CIEnvironment.from_environment(),
        cache=cache,
    )

    try:
        outcome = check_pipeline(config, Path(artifacts_path), SkipCacheStore(cache))
    except UnrecognizedRef as e:
        console.print(e.message)
        return

    if not outcome.should_skip:
        if isinstance(outcome.error, CBSError):
            raise outcome.error
        raise CBSError(outcome.reason)

    console.print(f'[green]{outcome.reason}[/green]')


cli.add_alias('check-dependent', 'cd')
cli.add_alias('check-pipeline', 'cp')

# Register config group
cli.add_command(config)


def main():
    """Main entry point for the CLI"""
    load_dotenv()
    cli()


if __name__ == '__main__':
    main()
