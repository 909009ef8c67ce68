"""Emulator process discovery via PID files and the host process table.

This module is the only place that scrapes ``ps`` output. Everything else
asks :func:`find_vm_pid` and treats ``None`` as "stopped".
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from loguru import logger

from .layout import VMPaths
from .util import run_cmd

log = logger

EMULATOR_MARKER = 'qemu-system-'


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user (e.g. started with sudo).
        return True
    return True


@dataclass(frozen=True)
class ProcessEntry:
    pid: int
    args: str


@dataclass
class ProcessTable:
    """One read of the emulator processes on this host."""

    entries: list[ProcessEntry] = field(default_factory=list)

    @classmethod
    def snapshot(cls, timeout: float = 5.0) -> 'ProcessTable':
        res = run_cmd(
            ['ps', '-eo', 'pid=,args='],
            check=False,
            capture=True,
            timeout=timeout,
        )
        if res.code != 0:
            log.debug('ps failed (code={}); assuming no emulators', res.code)
            return cls()
        return cls.parse(res.stdout)

    @classmethod
    def parse(cls, text: str) -> 'ProcessTable':
        entries = []
        for line in text.splitlines():
            parts = line.strip().split(None, 1)
            if len(parts) != 2 or not parts[0].isdigit():
                continue
            pid, args = int(parts[0]), parts[1]
            argv0 = args.split(None, 1)[0]
            if EMULATOR_MARKER not in os.path.basename(argv0):
                continue
            entries.append(ProcessEntry(pid, args))
        return cls(entries)

    def find(self, *, mac: str = '', disk_name: str = '') -> int | None:
        """Match by MAC substring when a MAC is known, else by disk filename."""
        if mac:
            needle = mac.lower()
            for entry in self.entries:
                if needle in entry.args.lower():
                    return entry.pid
            return None
        if disk_name:
            for entry in self.entries:
                if disk_name in entry.args:
                    return entry.pid
        return None


def read_pid_file(paths: VMPaths) -> int | None:
    try:
        text = paths.pid_file.read_text(encoding='utf-8').strip()
    except OSError:
        return None
    return int(text) if text.isdigit() else None


def find_vm_pid(
    paths: VMPaths, mac: str = '', *, table: ProcessTable | None = None
) -> int | None:
    """
    Return the pid of the VM's emulator, or ``None`` when it is not running.

    A stale pid file is removed. A process found by scanning is written
    back to the pid file. The answer is only valid at the instant of the
    call.
    """
    pid = read_pid_file(paths)
    if pid is not None and pid_alive(pid):
        return pid
    if paths.pid_file.exists():
        log.debug('Removing stale pid file {} (pid={})', paths.pid_file, pid)
        try:
            paths.pid_file.unlink()
        except OSError as ex:
            log.debug('Could not remove stale pid file {}: {}', paths.pid_file, ex)
    if table is None:
        table = ProcessTable.snapshot()
    found = table.find(mac=mac or paths.read_mac(), disk_name=paths.disk.name)
    if found is None:
        return None
    if paths.root.is_dir():
        try:
            paths.pid_file.write_text(f'{found}\n', encoding='utf-8')
            log.debug('Recovered pid {} for {} from process table', found, paths.name)
        except OSError as ex:
            log.debug('Could not rewrite pid file {}: {}', paths.pid_file, ex)
    return found


def process_uptime(pid: int | None) -> str | None:
    if not pid:
        return None
    res = run_cmd(
        ['ps', '-o', 'etime=', '-p', str(pid)], check=False, capture=True, timeout=3
    )
    text = res.stdout.strip()
    return text or None
