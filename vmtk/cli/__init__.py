"""CLI package exports for top-level command entry points."""

from __future__ import annotations

from .main import VMToolkitModalCLI, main

__all__ = ['VMToolkitModalCLI', 'main']
