import logging
import os
from logging.handlers import RotatingFileHandler
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler

EVENTS_LEVEL_NUM = 38
DEFAULT_LOG_BACKUP_COUNT = 10
DEFAULT_EVENTS_RETENTION_SIZE = 2 * 1024 * 1024

stderr_console = Console(stderr=True)


def setup_logging(verbose: bool = False, events_dir: Optional[str] = None) -> logging.Logger:
    """Send the ``cbs`` loggers to stderr, and optionally record events to ``events.log``."""
    logger = logging.getLogger('cbs')
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(console=stderr_console, show_path=False, markup=False)
        handler.setFormatter(logging.Formatter('%(message)s'))
        logger.addHandler(handler)

    if events_dir:
        setup_events_logger(events_dir, DEFAULT_EVENTS_RETENTION_SIZE)

    return logger


def setup_events_logger(full_path, events_retention_size):
    logging.addLevelName(EVENTS_LEVEL_NUM, 'EVENT')

    logger = logging.getLogger('cbs.event')
    logger.setLevel(EVENTS_LEVEL_NUM)

    formatter = logging.Formatter(
        '%(asctime)s | %(levelname)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    os.makedirs(full_path, exist_ok=True)
    file_handler = RotatingFileHandler(
        os.path.join(full_path, 'events.log'),
        maxBytes=events_retention_size,
        backupCount=DEFAULT_LOG_BACKUP_COUNT,
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(EVENTS_LEVEL_NUM)
    logger.addHandler(file_handler)

    return logger


def log_event(message: str) -> None:
    """Record a milestone of the check in the events log, if one is configured."""
    logger = logging.getLogger('cbs.event')
    if logger.isEnabledFor(EVENTS_LEVEL_NUM):
        logger.log(EVENTS_LEVEL_NUM, message)


def log_resolution_summary(repositories: List[str], patch_order: List[str], branch_overrides: dict) -> None:
    """Log the resolved companion graph and the order it will be patched in."""
    logger = logging.getLogger('cbs.resolution')

    logger.info(f'  ├─ Companions ({len(repositories)} repositories):')
    for repository in repositories:
        logger.info(f'  │   {repository}')

    if branch_overrides:
        overrides = ', '.join(f'{repo} -> {branch}' for repo, branch in sorted(branch_overrides.items()))
        logger.info(f'  ├─ Branch overrides: {overrides}')

    logger.info(f'  └─ Patch order: {" → ".join(patch_order) if patch_order else "(nothing to patch)"}')
