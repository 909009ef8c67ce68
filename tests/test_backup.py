"""Tests for backup capture, caching and the reset pipeline."""

from __future__ import annotations

import io
import tarfile
from pathlib import Path
from types import SimpleNamespace

import pytest

from vmtk.backup import (
    REMOTE_ARCHIVE,
    BackupMode,
    BackupRestoreEngine,
    archive_contains,
    archive_members,
    backup_archive,
    keep_capture_command,
    restore_script,
)
from vmtk.errors import BackupError, WaitTimeoutError
from vmtk.layout import VMPaths
from vmtk.resolver import Resolution
from vmtk.status import VMState, VMStatus
from vmtk.util import CmdResult

ITEMS = ['.ssh', '.gitconfig', '.config/gh']


def _write_archive(dest: Path, names=('.ssh/authorized_keys', '.gitconfig')) -> Path:
    dest.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(dest, 'w:gz') as tar:
        for name in names:
            data = f'content of {name}\n'.encode()
            info = tarfile.TarInfo('./' + name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return dest


class FakeShell:
    def __init__(self, *, capture_code=0, verify_out=None, provision='status: done'):
        self.capture_code = capture_code
        self.verify_out = verify_out
        self.provision = provision
        self.scripts: list[str] = []
        self.uploads: list[Path] = []
        self.captures: list[str] = []

    def capture(self, host, command, dest, *, timeout=None):
        self.captures.append(command)
        if self.capture_code == 0:
            _write_archive(Path(dest))
        else:
            Path(dest).write_bytes(b'')
        return CmdResult(self.capture_code, '', 'boom' if self.capture_code else '')

    def run(self, host, script, *, timeout=None, check=False):
        self.scripts.append(script)
        if 'cloud-init status' in script:
            return CmdResult(0, self.provision + '\n', '')
        if 'echo "P $i"' in script:
            out = self.verify_out
            if out is None:
                out = ''.join(f'P {i}\n' for i in ITEMS)
            return CmdResult(0, out, '')
        return CmdResult(0, '', '')

    def upload(self, host, src, remote_path, *, timeout=None):
        self.uploads.append(Path(src))
        return CmdResult(0, '', '')


class FakeResolver:
    reachable = True

    def __init__(self, cfg, **kwargs):
        pass

    def resolve(self, target, pid=None):
        return Resolution('192.168.1.50', 'arp', self.reachable)


@pytest.fixture
def lifecycle(monkeypatch):
    """Replace the lifecycle calls the engine makes with recorders."""
    calls: dict[str, list] = {'start': [], 'stop': [], 'reprovision': []}
    status = {'value': VMStatus.STOPPED}

    monkeypatch.setattr(
        'vmtk.backup.live_state',
        lambda cfg, target: VMState(target.name, status['value']),
    )
    monkeypatch.setattr(
        'vmtk.backup.start_vm',
        lambda cfg, name, **kw: calls['start'].append(name),
    )
    monkeypatch.setattr(
        'vmtk.backup.stop_vm',
        lambda cfg, name, **kw: calls['stop'].append(name) or True,
    )

    def fake_reprovision(cfg, record, *, reimage=False, sleep=None):
        calls['reprovision'].append((record.name, reimage))
        return record

    monkeypatch.setattr('vmtk.backup.reprovision', fake_reprovision)
    monkeypatch.setattr('vmtk.backup.wait_for_status', lambda *a, **k: None)
    monkeypatch.setattr('vmtk.backup.BestIPResolver', FakeResolver)
    calls['status'] = status
    return calls


def _engine(cfg, shell) -> BackupRestoreEngine:
    return BackupRestoreEngine(cfg, shell=shell, sleep=lambda s: None)


def test_restore_script_modes() -> None:
    home = restore_script(BackupMode.HOME, 'dev', 'ssh-ed25519 AAAA k')
    keep = restore_script(BackupMode.KEEP, 'dev', 'ssh-ed25519 AAAA k')
    assert '--strip-components=1' in home
    assert '--strip-components' not in keep
    assert "'ssh-ed25519 AAAA k'" in keep
    assert 'authorized_keys' in keep


def test_keep_capture_command_quotes_items() -> None:
    cmd = keep_capture_command(['.ssh', 'my notes'])
    assert "'my notes'" in cmd
    assert 'tar -czf - -T /dev/null' in cmd


def test_archive_membership(tmp_path) -> None:
    archive = _write_archive(tmp_path / 'a.tar.gz', ['.ssh/id', '.config/gh/hosts.yml'])
    members = archive_members(archive)
    assert archive_contains(members, '.ssh')
    assert archive_contains(members, '.config/gh/')
    assert not archive_contains(members, '.config/g')
    assert not archive_contains(members, '.gitconfig')


def test_reset_with_cached_backup_boots_once(cfg, make_vm, lifecycle) -> None:
    rec = make_vm('alpha')
    cached = _write_archive(backup_archive(VMPaths.for_vm(cfg.paths.base_dir, 'alpha'), BackupMode.KEEP))
    before = cached.stat().st_mtime_ns
    shell = FakeShell()

    ctx = _engine(cfg, shell).reset('alpha', keep_items=ITEMS)

    assert cached.stat().st_mtime_ns == before
    assert lifecycle['start'] == []
    assert lifecycle['reprovision'] == [(rec.name, False)]
    assert shell.captures == []
    assert shell.uploads == [cached]
    assert ctx.archive == cached
    assert not ctx.captured
    assert ctx.restored
    assert ctx.verify.present == ITEMS
    assert ctx.warnings == ()


def test_reset_without_cache_captures_first(cfg, make_vm, lifecycle) -> None:
    make_vm('alpha')
    shell = FakeShell()
    ctx = _engine(cfg, shell).reset('alpha', keep_items=ITEMS, reimage=True)
    archive = backup_archive(VMPaths.for_vm(cfg.paths.base_dir, 'alpha'), BackupMode.KEEP)
    assert ctx.captured
    assert archive.is_file()
    assert not archive.with_name(archive.name + '.part').exists()
    # Started for the capture, stopped again, then reprovisioned.
    assert lifecycle['start'] == ['alpha']
    assert lifecycle['stop'] == ['alpha']
    assert lifecycle['reprovision'] == [('alpha', True)]


def test_capture_failure_aborts_before_reprovision(cfg, make_vm, lifecycle) -> None:
    make_vm('alpha')
    shell = FakeShell(capture_code=255)
    with pytest.raises(BackupError, match='code=255'):
        _engine(cfg, shell).reset('alpha', keep_items=ITEMS)
    assert lifecycle['reprovision'] == []
    assert lifecycle['stop'] == ['alpha']
    backup_dir = VMPaths.for_vm(cfg.paths.base_dir, 'alpha').backup_dir
    assert list(backup_dir.iterdir()) == []


def test_verify_reextracts_missing_items(cfg, make_vm, lifecycle) -> None:
    make_vm('alpha')
    _write_archive(backup_archive(VMPaths.for_vm(cfg.paths.base_dir, 'alpha'), BackupMode.KEEP))
    shell = FakeShell(verify_out='P .ssh\nM .gitconfig\nM .config/gh\n')
    ctx = _engine(cfg, shell).reset('alpha', keep_items=ITEMS)
    assert ctx.verify.present == ['.ssh']
    assert ctx.verify.recopied == ['.gitconfig']
    assert ctx.verify.missing == ['.config/gh']
    assert any("-- .gitconfig" in s for s in shell.scripts)


def test_provisioning_timeout_is_only_a_warning(cfg, make_vm, lifecycle) -> None:
    make_vm('alpha')
    _write_archive(backup_archive(VMPaths.for_vm(cfg.paths.base_dir, 'alpha'), BackupMode.KEEP))
    cfg.reset.provision_wait_attempts = 2
    shell = FakeShell(provision='status: running')
    ctx = _engine(cfg, shell).reset('alpha', keep_items=ITEMS)
    assert ctx.restored
    assert len(ctx.warnings) == 1
    assert 'provisioning not finished' in ctx.warnings[0]


def test_ssh_wait_timeout_is_fatal(cfg, make_vm, lifecycle, monkeypatch) -> None:
    make_vm('alpha')
    _write_archive(backup_archive(VMPaths.for_vm(cfg.paths.base_dir, 'alpha'), BackupMode.KEEP))
    monkeypatch.setattr(FakeResolver, 'reachable', False)
    cfg.reset.ssh_wait_attempts = 3
    cfg.reset.ssh_wait_interval = 20
    with pytest.raises(WaitTimeoutError, match='within 1 minute'):
        _engine(cfg, FakeShell()).reset('alpha', keep_items=ITEMS)


def test_check_single_boot_codes(cfg, make_vm, lifecycle) -> None:
    make_vm('alpha')
    engine = _engine(cfg, FakeShell())
    assert engine.check_single_boot('nobody', BackupMode.KEEP).code == 2
    assert engine.check_single_boot('bad name', BackupMode.KEEP).code == 2

    stopped = engine.check_single_boot('alpha', BackupMode.KEEP)
    assert stopped.code == 1
    assert stopped.message.startswith('FAIL')

    lifecycle['status']['value'] = VMStatus.RUNNING
    running = engine.check_single_boot('alpha', BackupMode.KEEP)
    assert running.code == 1
    assert running.message.startswith('CONDITIONAL')

    _write_archive(backup_archive(VMPaths.for_vm(cfg.paths.base_dir, 'alpha'), BackupMode.KEEP))
    assert engine.check_single_boot('alpha', BackupMode.KEEP).code == 0
    assert engine.check_single_boot('alpha', BackupMode.HOME).code == 1


def test_reset_vm_delegates_to_engine(cfg) -> None:
    from vmtk.vm.reset import reset_vm

    calls = []

    class Engine:
        def reset(self, name, *, mode, reimage, keep_items):
            calls.append((name, mode, reimage, keep_items))
            return SimpleNamespace(warnings=('provisioning still running',))

    ctx = reset_vm(cfg, 'alpha', mode=BackupMode.HOME, reimage=True, engine=Engine())
    assert calls == [('alpha', BackupMode.HOME, True, None)]
    assert ctx.warnings == ('provisioning still running',)


def test_capture_repauses_paused_vm(cfg, make_vm, lifecycle, monkeypatch) -> None:
    rec = make_vm('alpha')
    lifecycle['status']['value'] = VMStatus.PAUSED
    qmp_calls = []
    monkeypatch.setattr('vmtk.backup.resume_vm', lambda cfg, name: qmp_calls.append(('resume', name)))
    monkeypatch.setattr('vmtk.backup.pause_vm', lambda cfg, name: qmp_calls.append(('pause', name)))
    dest = backup_archive(VMPaths.for_vm(cfg.paths.base_dir, 'alpha'), BackupMode.KEEP)

    _engine(cfg, FakeShell()).capture(rec, BackupMode.KEEP, ITEMS, dest)

    assert dest.is_file()
    assert qmp_calls == [('resume', 'alpha'), ('pause', 'alpha')]
    assert lifecycle['start'] == []
    assert lifecycle['stop'] == []


def test_corrupt_cached_archive_is_only_a_warning(cfg, make_vm, lifecycle) -> None:
    make_vm('alpha')
    archive = backup_archive(VMPaths.for_vm(cfg.paths.base_dir, 'alpha'), BackupMode.KEEP)
    archive.parent.mkdir(parents=True, exist_ok=True)
    archive.write_bytes(b'not a tarball')
    shell = FakeShell(verify_out='P .ssh\nM .gitconfig\n')

    ctx = _engine(cfg, shell).reset('alpha', keep_items=ITEMS)

    assert ctx.verify.failed == ['.gitconfig']
    assert any('unreadable archive' in w for w in ctx.warnings)
    assert shell.scripts[-1] == f'rm -f {REMOTE_ARCHIVE}'


def test_failed_verification_still_removes_remote_archive(cfg, make_vm, lifecycle) -> None:
    make_vm('alpha')
    _write_archive(backup_archive(VMPaths.for_vm(cfg.paths.base_dir, 'alpha'), BackupMode.KEEP))

    class BrokenVerifyShell(FakeShell):
        def run(self, host, script, *, timeout=None, check=False):
            if 'echo "P $i"' in script:
                self.scripts.append(script)
                return CmdResult(1, '', 'connection reset')
            return super().run(host, script, timeout=timeout, check=check)

    shell = BrokenVerifyShell()
    ctx = _engine(cfg, shell).reset('alpha', keep_items=ITEMS)

    assert any('Verification' in w for w in ctx.warnings)
    assert shell.scripts[-1] == f'rm -f {REMOTE_ARCHIVE}'
