"""Auto-detection of host defaults such as the SSH identity and VM sizing."""

from __future__ import annotations

import os
from pathlib import Path

from loguru import logger

from .util import expand, run_cmd, which

log = logger

PREFERRED_KEYS = ['id_ed25519', 'id_ecdsa', 'id_rsa']


def detect_username() -> str:
    """The invoking user, seen through ``sudo`` when elevated."""
    for var in ('SUDO_USER', 'USER', 'LOGNAME'):
        value = os.environ.get(var, '').strip()
        if value and value != 'root':
            return value
    return 'ubuntu'


def _pair_for(ident: Path) -> tuple[str, str]:
    pub = Path(str(ident) + '.pub')
    return str(ident), str(pub) if pub.exists() else ''


def detect_ssh_identity() -> tuple[str, str]:
    """
    Find the operator's SSH key pair.

    Returns:
        Tuple[str, str]: private key path and public key path; either may
        be empty when nothing usable is found.
    """
    log.debug('detecting ssh identity')
    if which('ssh'):
        res = run_cmd(
            ['ssh', '-G', 'vmtk-default-probe'],
            check=False,
            capture=True,
            timeout=5,
        )
        for line in res.stdout.splitlines():
            parts = line.strip().split()
            if len(parts) >= 2 and parts[0].lower() == 'identityfile':
                ident = Path(expand(parts[1].replace('%d', '~')))
                if ident.exists() and Path(str(ident) + '.pub').exists():
                    return _pair_for(ident)

    ssh_dir = Path(expand('~/.ssh'))
    for name in PREFERRED_KEYS:
        ident = ssh_dir / name
        if ident.exists():
            return _pair_for(ident)
    # Public key only (agent-backed or hardware keys).
    for name in PREFERRED_KEYS:
        pub = ssh_dir / (name + '.pub')
        if pub.exists():
            return '', str(pub)
    return '', ''


def default_vcpus(cpu_count: int | None) -> int:
    """Leave two host cores free, within 2..16."""
    if not cpu_count:
        return 2
    return max(2, min(16, cpu_count - 2))
