"""Minimal QMP (QEMU Machine Protocol) client over the VM's control socket."""

from __future__ import annotations

import json
import socket
from pathlib import Path
from typing import Any

from loguru import logger

log = logger

DEFAULT_TIMEOUT = 1.0
PAUSED_STATES = frozenset({'paused', 'suspended'})


class QMPError(RuntimeError):
    pass


class QMPClient:
    """One short-lived QMP session: greeting, capabilities, then commands."""

    def __init__(self, socket_path: Path | str, timeout: float = DEFAULT_TIMEOUT):
        self.socket_path = str(socket_path)
        self.timeout = timeout
        self._sock: socket.socket | None = None
        self._buf = b''

    def __enter__(self) -> 'QMPClient':
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self.socket_path)
        except OSError:
            sock.close()
            raise
        self._sock = sock
        greeting = self._read_message()
        if 'QMP' not in greeting:
            raise QMPError(f'Unexpected QMP greeting: {greeting}')
        self.execute('qmp_capabilities')
        return self

    def __exit__(self, *exc) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def _read_message(self) -> dict[str, Any]:
        assert self._sock is not None
        while b'\n' not in self._buf:
            chunk = self._sock.recv(4096)
            if not chunk:
                raise QMPError('QMP socket closed')
            self._buf += chunk
        line, self._buf = self._buf.split(b'\n', 1)
        return json.loads(line.decode('utf-8'))

    def execute(self, command: str, arguments: dict[str, Any] | None = None) -> Any:
        assert self._sock is not None
        cmd: dict[str, Any] = {'execute': command}
        if arguments:
            cmd['arguments'] = arguments
        self._sock.sendall((json.dumps(cmd) + '\n').encode('utf-8'))
        while True:
            data = self._read_message()
            # Asynchronous events may arrive before the reply.
            if 'return' in data:
                return data['return']
            if 'error' in data:
                raise QMPError(f'{command}: {data["error"]}')


def _try(socket_path: Path | str, command: str, timeout: float) -> tuple[bool, Any]:
    if not Path(socket_path).exists():
        return False, None
    try:
        with QMPClient(socket_path, timeout=timeout) as qmp:
            return True, qmp.execute(command)
    except (OSError, QMPError, ValueError) as ex:
        log.debug('QMP {} on {} failed: {}', command, socket_path, ex)
        return False, None


def query_status(socket_path: Path | str, timeout: float = DEFAULT_TIMEOUT) -> str | None:
    """The emulator's run state (``running``, ``paused``...), or ``None`` if unknown."""
    ok, ret = _try(socket_path, 'query-status', timeout)
    if not ok or not isinstance(ret, dict):
        return None
    return ret.get('status')


def is_paused(socket_path: Path | str, timeout: float = DEFAULT_TIMEOUT) -> bool:
    """True only when QMP positively reports a paused VM; failures count as running."""
    return query_status(socket_path, timeout) in PAUSED_STATES


def pause(socket_path: Path | str, timeout: float = DEFAULT_TIMEOUT) -> bool:
    return _try(socket_path, 'stop', timeout)[0]


def resume(socket_path: Path | str, timeout: float = DEFAULT_TIMEOUT) -> bool:
    return _try(socket_path, 'cont', timeout)[0]


def powerdown(socket_path: Path | str, timeout: float = DEFAULT_TIMEOUT) -> bool:
    return _try(socket_path, 'system_powerdown', timeout)[0]
