# The MIT License (MIT)
# Copyright © 2025 Entrius

"""
Companion Build System

Validates that a pull request does not break the repositories that depend on
it, by patching every companion pull request referenced in the descriptions
into the dependent and running the dependent's pipeline against the result.
"""

from cbs.constants import CBS_VERSION

__version__ = CBS_VERSION
