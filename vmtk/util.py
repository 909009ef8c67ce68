"""Shared utility helpers for subprocess execution, paths, and atomic writes."""

from __future__ import annotations

import os
import shlex
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

log = logger

TIMEOUT_CODE = 124


@dataclass(frozen=True)
class CmdResult:
    code: int
    stdout: str
    stderr: str


class CmdError(RuntimeError):
    def __init__(self, cmd: Sequence[str] | str, result: CmdResult):
        self.cmd = cmd
        self.result = result
        super().__init__(
            f'Command failed (code={result.code}): {cmd}\n{result.stderr}'.strip()
        )


def shell_join(cmd: Sequence[str]) -> str:
    return ' '.join(shlex.quote(c) for c in cmd)


def run_cmd(
    cmd: Sequence[str],
    *,
    sudo: bool = False,
    check: bool = True,
    capture: bool = True,
    text: bool = True,
    input_text: Optional[str] = None,
    env: Optional[dict[str, str]] = None,
    timeout: Optional[float] = None,
    stdout_path: Optional[Path] = None,
) -> CmdResult:
    """
    Run a command and return its exit code and output.

    Args:
        timeout: seconds before the child is killed; a timeout yields
            exit code 124 (or :class:`CmdError` when ``check`` is set).
        stdout_path: stream standard output into this file instead of
            capturing it (used for archives piped over SSH).
    """
    original_cmd = cmd
    if sudo and os.geteuid() != 0:
        # Non-interactive sudo: fail fast if password/TTY is required.
        cmd = ['sudo', '-n', *cmd]
        log.opt(depth=1).debug(
            'Running with sudo: {}', shell_join(original_cmd)
        )
    log.opt(depth=1).debug('RUN: {}', shell_join(cmd))
    try:
        if stdout_path is not None:
            with open(stdout_path, 'wb') as fout:
                p = subprocess.run(
                    cmd,
                    stdout=fout,
                    stderr=subprocess.PIPE,
                    env=env,
                    timeout=timeout,
                )
            res = CmdResult(
                p.returncode,
                '',
                (p.stderr or b'').decode('utf-8', errors='replace'),
            )
        else:
            p = subprocess.run(
                cmd,
                input=input_text if input_text is not None else None,
                capture_output=capture,
                text=text,
                env=env,
                timeout=timeout,
            )
            res = CmdResult(p.returncode, p.stdout or '', p.stderr or '')
    except subprocess.TimeoutExpired:
        res = CmdResult(TIMEOUT_CODE, '', f'timed out after {timeout}s')
    if check and res.code != 0:
        log.opt(depth=1).error(
            'Command failed code={} cmd={} stderr={} stdout={}',
            res.code,
            shell_join(cmd),
            res.stderr.strip(),
            res.stdout.strip(),
        )
        raise CmdError(cmd, res)
    if res.code == 0:
        log.opt(depth=1).debug('Command ok code=0 cmd={}', shell_join(cmd))
    return res


def which(cmd: str) -> Optional[str]:
    from shutil import which as _which

    return _which(cmd)


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def expand(path: str) -> str:
    return os.path.expandvars(os.path.expanduser(path))


def atomic_write_text(path: Path, text: str, *, mode: int | None = None) -> None:
    """Replace ``path`` with ``text`` so readers never see a partial file."""
    path = Path(path)
    ensure_dir(path.parent)
    fd, tmp = tempfile.mkstemp(prefix=f'.{path.name}.', dir=str(path.parent))
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as file:
            file.write(text)
            file.flush()
            os.fsync(file.fileno())
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)
