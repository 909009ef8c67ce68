"""Install the operator's SSH key pair inside a running guest."""

from __future__ import annotations

import shlex
from pathlib import Path

from loguru import logger

from ..backup import BackupRestoreEngine
from ..config import ToolkitConfig
from ..errors import MissingSSHIdentityError, VMStateError, VMToolkitError
from ..registry import load_target
from ..remote import ResolvedHost
from .lifecycle import live_state

log = logger


def _key_pair(cfg: ToolkitConfig, private: str | None, public: str | None) -> tuple[Path, Path]:
    pub = Path(public or cfg.vm.ssh_pubkey_path or '').expanduser()
    if not pub.name or not pub.is_file():
        raise MissingSSHIdentityError(f'Public key not found: {pub}')
    priv_text = private or cfg.vm.ssh_identity_file
    if not priv_text and pub.suffix == '.pub':
        priv_text = str(pub.with_suffix(''))
    priv = Path(priv_text or '').expanduser()
    if not priv.name or not priv.is_file():
        raise MissingSSHIdentityError(
            f'Private key not found: {priv}; set vm.ssh_identity_file or pass --private'
        )
    return priv, pub


def install_keys_script(staging: str, priv_name: str, pub_name: str) -> str:
    """Move staged keys into ``~/.ssh`` and authorize the public half."""
    s = shlex.quote(staging)
    priv = shlex.quote(priv_name)
    pub = shlex.quote(pub_name)
    return (
        'set -e\n'
        'mkdir -p "$HOME/.ssh"\n'
        'chmod 700 "$HOME/.ssh"\n'
        f'mv {s}/{priv} "$HOME/.ssh/"{priv}\n'
        f'chmod 600 "$HOME/.ssh/"{priv}\n'
        f'mv {s}/{pub} "$HOME/.ssh/"{pub}\n'
        f'chmod 644 "$HOME/.ssh/"{pub}\n'
        'touch "$HOME/.ssh/authorized_keys"\n'
        'chmod 600 "$HOME/.ssh/authorized_keys"\n'
        f'grep -qxFf "$HOME/.ssh/"{pub} "$HOME/.ssh/authorized_keys" || '
        f'cat "$HOME/.ssh/"{pub} >> "$HOME/.ssh/authorized_keys"\n'
        f'rm -rf {s}\n'
    )


def copy_ssh_keys(
    cfg: ToolkitConfig,
    name: str,
    *,
    private: str | None = None,
    public: str | None = None,
    engine: BackupRestoreEngine | None = None,
) -> ResolvedHost:
    """
    Copy the host key pair into the guest user's ``~/.ssh``.

    Waits for SSH on the VM's best IP first. The private key leaves the
    host, so this is meant for trusted VMs only.
    """
    _, target = load_target(cfg, name)
    priv, pub = _key_pair(cfg, private, public)
    state = live_state(cfg, target)
    if not state.is_live:
        raise VMStateError(f'VM {name} is {state.status.value}; start it first')
    engine = engine or BackupRestoreEngine(cfg)
    shell = engine.shell
    host = engine.locate_host(target)
    staging = f'/tmp/.vmtk-keys-{name}'
    res = shell.run(host, f'rm -rf {shlex.quote(staging)}\nmkdir -m 700 {shlex.quote(staging)}\n', timeout=30)
    if res.code != 0:
        raise VMToolkitError(f'Cannot stage keys on {host.login}: {res.stderr.strip()}')
    for path in (priv, pub):
        up = shell.upload(host, path, f'{staging}/{path.name}', timeout=60)
        if up.code != 0:
            raise VMToolkitError(f'Upload of {path} to {host.login} failed: {up.stderr.strip()}')
    res = shell.run(host, install_keys_script(staging, priv.name, pub.name), timeout=60)
    if res.code != 0:
        raise VMToolkitError(f'Installing keys on {host.login} failed: {res.stderr.strip()}')
    log.info('Copied {} and {} to {}:~/.ssh', priv.name, pub.name, host.login)
    return host
