"""Host dependency checks for the emulator, image, and SSH tooling."""

from __future__ import annotations

import sys

from loguru import logger

from .arch import Architecture, profile_for
from .errors import ConfigError
from .util import which

log = logger

REQUIRED_CMDS = ['qemu-img', 'ssh', 'scp', 'ps', 'curl']
SEED_TOOLS = ['cloud-localds', 'mkisofs', 'genisoimage', 'xorriso']
OPTIONAL_CMDS = ['dig']


def neighbor_tool() -> str:
    return 'ip' if sys.platform.startswith('linux') else 'arp'


def seed_tool() -> str | None:
    for tool in SEED_TOOLS:
        if which(tool) is not None:
            return tool
    return None


def check_commands(arch: str | Architecture | None = None) -> tuple[list[str], list[str]]:
    """Return ``(missing_required, missing_optional)`` command names."""
    required = list(REQUIRED_CMDS)
    if arch is not None:
        required.insert(0, profile_for(arch).binary)
    missing = [c for c in required if which(c) is None]
    if seed_tool() is None:
        missing.append(' or '.join(SEED_TOOLS))
    optional = [*OPTIONAL_CMDS, neighbor_tool()]
    missing_opt = [c for c in optional if which(c) is None]
    return missing, missing_opt


def require_commands(arch: str | Architecture) -> None:
    missing, missing_opt = check_commands(arch)
    if missing_opt:
        log.warning(
            'Optional tools not found ({}); IP discovery will be degraded.',
            ', '.join(missing_opt),
        )
    if missing:
        raise ConfigError(f'Missing required host commands: {", ".join(missing)}')
