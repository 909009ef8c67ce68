"""Tests for create/start/stop/destroy orchestration with the host stubbed out."""

from __future__ import annotations

from pathlib import Path

import pytest

from vmtk.arch import ARCH_TABLE, Architecture
from vmtk.errors import (
    ConfigError,
    MissingSSHIdentityError,
    UnsafeOperationError,
    VMStateError,
    WaitTimeoutError,
)
from vmtk.registry import get_vm, load_target
from vmtk.status import VMState, VMStatus
from vmtk.util import CmdError, CmdResult
from vmtk.vm import lifecycle
from vmtk.vm.lifecycle import (
    build_qemu_cmd,
    create_vm,
    describe_bound,
    destroy_vm,
    pause_vm,
    stop_vm,
    wait_for_status,
)


def _forbid(*a, **k):
    raise AssertionError(f'unexpected host command: {a}')


def _set_state(monkeypatch, status: VMStatus) -> None:
    monkeypatch.setattr(
        'vmtk.vm.lifecycle.live_state',
        lambda cfg, target: VMState(target.name, status, pid=4321 if status is not VMStatus.STOPPED else None),
    )


def test_describe_bound() -> None:
    assert describe_bound(300) == '5 minutes'
    assert describe_bound(60) == '1 minute'
    assert describe_bound(45) == '45 seconds'


def test_build_qemu_cmd(cfg, make_vm, monkeypatch) -> None:
    monkeypatch.setattr(
        'vmtk.vm.lifecycle.host_profile_for',
        lambda arch: ARCH_TABLE[Architecture.parse(arch)],
    )
    rec = make_vm('alpha', mac='52:54:00:aa:bb:cc')
    cmd = build_qemu_cmd(cfg, rec)
    assert cmd[0] == 'qemu-system-x86_64'
    assert cmd[cmd.index('-machine') + 1] == 'pc,accel=tcg'
    assert cmd[cmd.index('-netdev') + 1] == 'user,id=net0'
    assert 'virtio-net-pci,netdev=net0,mac=52:54:00:aa:bb:cc' in cmd
    assert cmd[cmd.index('-pidfile') + 1].endswith('alpha.pid')
    assert cmd[cmd.index('-qmp') + 1].startswith('unix:')
    assert cmd[-1] == '-daemonize'

    cfg.network.mode = 'bridge'
    cmd = build_qemu_cmd(cfg, rec)
    assert cmd[cmd.index('-netdev') + 1] == f'bridge,id=net0,br={cfg.network.bridge}'


def test_create_validates_before_side_effects(cfg, make_vm, monkeypatch) -> None:
    monkeypatch.setattr('vmtk.vm.lifecycle.run_cmd', _forbid)
    monkeypatch.setattr('vmtk.vm.lifecycle.fetch_image', _forbid)
    base = Path(cfg.paths.base_dir)

    with pytest.raises(ConfigError):
        create_vm(cfg, 'bad/name')
    cfg.vm.architecture = 'sparc'
    with pytest.raises(ConfigError, match='architecture'):
        create_vm(cfg, 'alpha')
    cfg.vm.architecture = 'x86_64'
    real_key = cfg.vm.ssh_pubkey_path
    cfg.vm.ssh_pubkey_path = str(base.parent / 'missing.pub')
    with pytest.raises(MissingSSHIdentityError):
        create_vm(cfg, 'alpha')
    cfg.vm.ssh_pubkey_path = real_key
    assert not base.exists()

    make_vm('alpha')
    with pytest.raises(VMStateError, match='already exists'):
        create_vm(cfg, 'alpha')


def test_create_dry_run_touches_nothing(cfg, monkeypatch) -> None:
    monkeypatch.setattr('vmtk.vm.lifecycle.run_cmd', _forbid)
    rec = create_vm(cfg, 'alpha', dry_run=True)
    assert rec.username == 'dev'
    assert rec.mac_address.startswith('52:54:00:')
    assert not Path(rec.directory).exists()
    assert get_vm(Path(cfg.paths.registry_file), 'alpha') is None


def test_create_success_and_cleanup_on_failure(cfg, tmp_path, monkeypatch) -> None:
    image = tmp_path / 'base.img'
    image.write_bytes(b'img')
    monkeypatch.setattr('vmtk.vm.lifecycle.require_commands', lambda arch: None)
    monkeypatch.setattr('vmtk.vm.lifecycle.fetch_image', lambda cfg, dry_run=False: image)
    monkeypatch.setattr('vmtk.vm.lifecycle.build_seed_iso', lambda paths: paths.seed_iso)

    def fake_qemu_img(cmd, **kw):
        Path(cmd[-2]).write_bytes(b'overlay')
        return CmdResult(0, '', '')

    monkeypatch.setattr('vmtk.vm.lifecycle.run_cmd', fake_qemu_img)
    rec = create_vm(cfg, 'alpha', hostname='alpha-host', password='pw')
    _, target = load_target(cfg, 'alpha')
    assert target.paths.disk.read_bytes() == b'overlay'
    assert target.paths.read_mac() == rec.mac_address
    user_data = target.paths.user_data.read_text()
    assert 'ssh-ed25519 AAAATEST' in user_data
    assert 'hostname: alpha-host' in user_data
    assert target.paths.read_instance_id() == rec.instance_id
    assert get_vm(Path(cfg.paths.registry_file), 'alpha').hostname == 'alpha-host'

    def failing(cmd, **kw):
        raise CmdError(cmd, CmdResult(1, '', 'disk full'))

    monkeypatch.setattr('vmtk.vm.lifecycle.run_cmd', failing)
    with pytest.raises(CmdError):
        create_vm(cfg, 'beta')
    assert not (Path(cfg.paths.base_dir) / 'beta').exists()
    assert get_vm(Path(cfg.paths.registry_file), 'beta') is None


def test_destroy_refuses_live_vm(cfg, make_vm, monkeypatch) -> None:
    rec = make_vm('alpha')
    _set_state(monkeypatch, VMStatus.RUNNING)
    with pytest.raises(UnsafeOperationError, match='stop it first'):
        destroy_vm(cfg, 'alpha')
    assert Path(rec.directory).is_dir()

    _set_state(monkeypatch, VMStatus.STOPPED)
    destroy_vm(cfg, 'alpha')
    assert not Path(rec.directory).exists()
    assert get_vm(Path(cfg.paths.registry_file), 'alpha') is None


def test_destroy_force_kills_first(cfg, make_vm, monkeypatch) -> None:
    make_vm('alpha')
    _set_state(monkeypatch, VMStatus.PAUSED)
    stopped = []
    monkeypatch.setattr(
        'vmtk.vm.lifecycle.stop_vm', lambda cfg, name, force=False: stopped.append((name, force))
    )
    destroy_vm(cfg, 'alpha', force=True)
    assert stopped == [('alpha', True)]


def test_stop_when_not_running(cfg, make_vm, monkeypatch) -> None:
    make_vm('alpha')
    monkeypatch.setattr('vmtk.vm.lifecycle.find_vm_pid', lambda paths, mac='': None)
    assert stop_vm(cfg, 'alpha') is False


def test_stop_falls_back_to_kill(cfg, make_vm, monkeypatch) -> None:
    make_vm('alpha')
    sent = []
    monkeypatch.setattr('vmtk.vm.lifecycle.find_vm_pid', lambda paths, mac='': 4321)
    monkeypatch.setattr('vmtk.vm.lifecycle.qmp.powerdown', lambda sock, timeout=1.0: False)
    monkeypatch.setattr('vmtk.vm.lifecycle.pid_alive', lambda pid: 'SIGKILL' not in [s.name for s in sent])
    monkeypatch.setattr('vmtk.vm.lifecycle.os.kill', lambda pid, sig: sent.append(sig))
    assert stop_vm(cfg, 'alpha', timeout=3, sleep=lambda s: None) is True
    assert [s.name for s in sent] == ['SIGTERM', 'SIGKILL']


def test_stop_resumes_paused_guest_before_powerdown(cfg, make_vm, monkeypatch) -> None:
    make_vm('alpha')
    qmp_calls = []
    monkeypatch.setattr('vmtk.vm.lifecycle.find_vm_pid', lambda paths, mac='': 4321)
    monkeypatch.setattr('vmtk.vm.lifecycle.qmp.is_paused', lambda sock, timeout=1.0: True)
    monkeypatch.setattr('vmtk.vm.lifecycle.qmp.resume', lambda sock, timeout=1.0: qmp_calls.append('cont') or True)
    monkeypatch.setattr('vmtk.vm.lifecycle.qmp.powerdown', lambda sock, timeout=1.0: qmp_calls.append('powerdown') or True)
    monkeypatch.setattr('vmtk.vm.lifecycle.pid_alive', lambda pid: False)
    assert stop_vm(cfg, 'alpha', sleep=lambda s: None) is True
    assert qmp_calls == ['cont', 'powerdown']


def test_pause_requires_live_vm(cfg, make_vm, monkeypatch) -> None:
    make_vm('alpha')
    _set_state(monkeypatch, VMStatus.STOPPED)
    with pytest.raises(VMStateError, match='cannot pause'):
        pause_vm(cfg, 'alpha')


def test_wait_for_status_timeout_message(cfg, make_vm, monkeypatch) -> None:
    make_vm('alpha')
    _, target = load_target(cfg, 'alpha')
    monkeypatch.setattr(
        lifecycle,
        'compute_state',
        lambda target, cfg, **kw: VMState(target.name, VMStatus.INITIALIZING, pid=1),
    )
    sleeps = []
    with pytest.raises(WaitTimeoutError) as info:
        wait_for_status(
            cfg, target, {VMStatus.RUNNING},
            attempts=30, interval=10, what='running state', sleep=sleeps.append,
        )
    assert 'did not reach running state within 5 minutes' in str(info.value)
    assert len(sleeps) == 29


def test_wait_for_status_gives_up_on_stopped_vm(cfg, make_vm, monkeypatch) -> None:
    make_vm('alpha')
    _, target = load_target(cfg, 'alpha')
    monkeypatch.setattr(
        lifecycle,
        'compute_state',
        lambda target, cfg, **kw: VMState(target.name, VMStatus.STOPPED),
    )
    with pytest.raises(VMStateError, match='stopped'):
        wait_for_status(
            cfg, target, {VMStatus.RUNNING},
            attempts=30, interval=10, what='running state', sleep=lambda s: None,
        )
