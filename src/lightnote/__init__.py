"""
LightNote - local-first storage for a personal note-taking application.

This package implements a provider-agnostic data-access layer for notes,
folders and a bounded "recently viewed" list, with change events, a
structured error taxonomy and a factory that validates and switches
providers.

All provider operations are asynchronous (asyncio).
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("lightnote")
except PackageNotFoundError:
    __version__ = "1.0.0"
