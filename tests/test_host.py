"""Tests for host command checks."""

from __future__ import annotations

import pytest

from vmtk.errors import ConfigError
from vmtk.host import check_commands, require_commands


def test_check_commands(monkeypatch) -> None:
    present = {'qemu-img', 'curl', 'ssh', 'scp', 'ps', 'xorriso'}
    monkeypatch.setattr(
        'vmtk.host.which',
        lambda cmd: f'/usr/bin/{cmd}' if cmd in present else None,
    )
    missing, missing_opt = check_commands()
    assert missing == []
    assert 'dig' in missing_opt
    missing, _ = check_commands('aarch64')
    assert missing == ['qemu-system-aarch64']


def test_require_commands_names_missing_seed_tool(monkeypatch) -> None:
    monkeypatch.setattr('vmtk.host.which', lambda cmd: None)
    with pytest.raises(ConfigError, match='cloud-localds or mkisofs'):
        require_commands('x86_64')
