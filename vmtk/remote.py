"""Helpers for running commands on and copying files to a guest over SSH."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .errors import MissingSSHIdentityError
from .util import CmdResult, run_cmd

# Guests are recreated by reset/clone, so their host keys are not pinned.
EPHEMERAL_HOST_OPTS = ['-o', 'LogLevel=ERROR']


def require_ssh_pubkey(pubkey_path: str) -> str:
    """Contents of the operator's public key, which guests authorize."""
    path = (pubkey_path or '').strip()
    if not path:
        raise MissingSSHIdentityError(
            'vm.ssh_pubkey_path is empty; set VM_SSH_KEY or add it to the config file.'
        )
    try:
        key = Path(path).read_text(encoding='utf-8').strip()
    except OSError as ex:
        raise MissingSSHIdentityError(f'SSH public key not readable: {path} ({ex})') from ex
    if not key.startswith(('ssh-', 'ecdsa-', 'sk-')):
        raise MissingSSHIdentityError(f'{path} does not look like an SSH public key')
    return key


def ssh_base_args(
    ident: str,
    *,
    strict_host_key_checking: str = 'accept-new',
    connect_timeout: int | None = None,
    batch_mode: bool = False,
    user_known_hosts_file: str | None = None,
) -> list[str]:
    args: list[str] = []
    if batch_mode:
        args.extend(['-o', 'BatchMode=yes'])
    if connect_timeout is not None:
        args.extend(['-o', f'ConnectTimeout={connect_timeout}'])
    args.extend(['-o', f'StrictHostKeyChecking={strict_host_key_checking}'])
    if user_known_hosts_file:
        args.extend(['-o', f'UserKnownHostsFile={user_known_hosts_file}'])
    if ident:
        args.extend(['-i', ident])
    return args


@dataclass(frozen=True)
class ResolvedHost:
    """A guest located on the network and ready for remote commands."""

    name: str
    username: str
    ip: str

    @property
    def login(self) -> str:
        return f'{self.username}@{self.ip}'


class GuestShell:
    """Non-interactive SSH/SCP access to guests with ephemeral host keys."""

    def __init__(self, identity: str = '', *, connect_timeout: int = 10):
        self.identity = identity
        self.connect_timeout = connect_timeout

    def _opts(self) -> list[str]:
        return [
            *ssh_base_args(
                self.identity,
                strict_host_key_checking='no',
                connect_timeout=self.connect_timeout,
                batch_mode=True,
                user_known_hosts_file='/dev/null',
            ),
            *EPHEMERAL_HOST_OPTS,
        ]

    def run(
        self,
        host: ResolvedHost,
        script: str,
        *,
        timeout: float | None = None,
        check: bool = False,
    ) -> CmdResult:
        return run_cmd(
            ['ssh', *self._opts(), host.login, 'bash', '-s'],
            input_text=script,
            check=check,
            capture=True,
            timeout=timeout,
        )

    def capture(
        self,
        host: ResolvedHost,
        command: str,
        dest: Path,
        *,
        timeout: float | None = None,
    ) -> CmdResult:
        """Run ``command`` remotely and stream its stdout into ``dest``."""
        return run_cmd(
            ['ssh', *self._opts(), host.login, command],
            check=False,
            stdout_path=dest,
            timeout=timeout,
        )

    def upload(
        self, host: ResolvedHost, src: Path, remote_path: str, *, timeout: float | None = None
    ) -> CmdResult:
        return run_cmd(
            ['scp', '-q', *self._opts(), str(src), f'{host.login}:{remote_path}'],
            check=False,
            capture=True,
            timeout=timeout,
        )
