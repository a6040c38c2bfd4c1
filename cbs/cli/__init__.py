# The MIT License (MIT)
# Copyright © 2025 Entrius

"""
CBS CLI

Usage:
    cbs check-dependent --org ORG --dependent-repo REPO ...   # Check a PR against a dependent
    cbs check-pipeline --artifacts-path PATH                  # Skip a pipeline that already passed
    cbs config                                                # View configuration
"""

from .config_commands import config

__all__ = ['config']
