from __future__ import annotations

import os
import sys
from typing import Any

import scriptconfig as scfg
from loguru import logger

from ..config import ToolkitConfig, resolve_config

log = logger


class _BaseCommand(scfg.DataConfig):
    """Base options shared by all commands."""

    config = scfg.Value(
        None,
        help='Path to config TOML (default: $VM_CONFIG_FILE or ~/.config/vmtk/config.toml).',
    )
    verbose = scfg.Value(
        0,
        short_alias=['v'],
        isflag='counter',
        help='Increase verbosity (-v, -vv).',
    )
    yes = scfg.Value(
        False,
        isflag=True,
        help='Assume yes for confirmations (destructive and sudo operations).',
    )


class _NamedCommand(_BaseCommand):
    """Base for commands acting on one VM."""

    name = scfg.Value('', position=1, help='VM name.')


def _load_cfg(config_path: str | None, **overrides: Any) -> ToolkitConfig:
    """Resolve config with CLI flags as the explicit (highest) source."""
    return resolve_config(overrides, config_file=config_path).validate()


def _require_name(value: str, what: str = 'VM name') -> str:
    name = str(value or '').strip()
    if not name:
        raise RuntimeError(f'{what} is required')
    return name


def _confirm(*, yes: bool, purpose: str) -> None:
    """Ask before a destructive action unless ``--yes`` was given."""
    if yes:
        return
    if not sys.stdin.isatty():
        raise RuntimeError(
            f'{purpose} requires confirmation, but stdin is not interactive. '
            'Re-run with --yes.'
        )
    print(f'About to: {purpose}')
    ans = input('Continue? [y/N]: ').strip().lower()
    if ans not in {'y', 'yes'}:
        raise RuntimeError('Aborted by user.')


def _confirm_sudo_block(*, yes: bool, purpose: str) -> None:
    if yes or os.geteuid() == 0:
        return
    if not sys.stdin.isatty():
        raise RuntimeError(
            'Privileged host operations require confirmation, but stdin is not interactive. '
            'Re-run with --yes.'
        )
    print('About to run privileged host operations via sudo:')
    print(f'  {purpose}')
    ans = input('Continue? [y/N]: ').strip().lower()
    if ans not in {'y', 'yes'}:
        raise RuntimeError('Aborted by user.')
