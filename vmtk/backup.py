"""Backup capture and restore across a VM reset.

A reset is an explicit pipeline. Each step takes a :class:`ResetContext`
and returns an updated copy:

1. reuse a cached archive, or boot the VM (if needed) and stream one;
2. stop, optionally reimage, issue a fresh instance-id, start;
3. wait for ``running`` (fatal on timeout);
4. wait for SSH on the current best IP, re-resolving it (fatal);
5. wait for cloud-init to finish (warning only);
6. upload the archive, wipe home, extract, fix ownership, re-seed the key;
7. verify keep items and re-extract any that are missing.

Archives live in ``<vm dir>/.reset-backup/`` and are reused until the VM
directory is destroyed.
"""

from __future__ import annotations

import os
import re
import shlex
import shutil
import tarfile
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from loguru import logger

from .config import ToolkitConfig, load_keep_items
from .errors import (
    BackupError,
    ConfigError,
    VMNotFoundError,
    VMToolkitError,
    WaitTimeoutError,
)
from .layout import VMPaths, VMTarget
from .registry import VMRecord, load_target
from .remote import GuestShell, ResolvedHost, require_ssh_pubkey
from .resolver import BestIPResolver
from .results import VerifyResult
from .status import VMStatus
from .util import ensure_dir
from .vm.lifecycle import (
    describe_bound,
    live_state,
    pause_vm,
    reprovision,
    resume_vm,
    start_vm,
    stop_vm,
    wait_for_status,
)

log = logger

REMOTE_ARCHIVE = '/tmp/vmtk-restore.tar.gz'
_CLOUD_INIT_STATUS = re.compile(r'status:\s*(\w+)')


class BackupMode(str, Enum):
    KEEP = 'keep'
    HOME = 'home'


def backup_archive(paths: VMPaths, mode: BackupMode) -> Path:
    return paths.backup_dir / f'{BackupMode(mode).value}-backup.tar.gz'


def archive_members(archive: Path) -> list[str]:
    with tarfile.open(archive, 'r:gz') as tar:
        return [m.name[2:] if m.name.startswith('./') else m.name for m in tar.getmembers()]


def archive_contains(members: list[str], item: str) -> bool:
    item = item.strip('/')
    return any(m == item or m.startswith(item + '/') for m in members)


def _home_expr(username: str) -> str:
    user = shlex.quote(username)
    return (
        f'U={user}\n'
        'H=$(getent passwd "$U" | cut -d: -f6)\n'
        'H=${H:-/home/$U}\n'
    )


def keep_capture_command(items: list[str]) -> str:
    """Remote command that tars the existing keep items to stdout."""
    quoted = ' '.join(shlex.quote(i) for i in items)
    return (
        'cd "$HOME" || exit 1; set --; '
        f'for i in {quoted}; do [ -e "$i" ] && set -- "$@" "$i"; done; '
        'if [ "$#" -eq 0 ]; then tar -czf - -T /dev/null; else tar -czf - "$@"; fi'
    )


def home_capture_command(username: str) -> str:
    return f'tar -C /home -czf - {shlex.quote(username)}'


def restore_script(mode: BackupMode, username: str, pubkey: str) -> str:
    """One remote session: wipe home, extract, fix ownership, re-seed the key."""
    strip = ' --strip-components=1' if mode is BackupMode.HOME else ''
    key = shlex.quote(pubkey)
    return (
        'set -e\n'
        + _home_expr(username)
        + f'A={REMOTE_ARCHIVE}\n'
        'sudo find "$H" -mindepth 1 -maxdepth 1 -exec rm -rf {} +\n'
        'sudo cp -a /etc/skel/. "$H"/\n'
        f'sudo tar -xzf "$A" -C "$H"{strip}\n'
        'sudo mkdir -p "$H/.ssh"\n'
        f'sudo grep -qxF {key} "$H/.ssh/authorized_keys" 2>/dev/null || '
        f'echo {key} | sudo tee -a "$H/.ssh/authorized_keys" >/dev/null\n'
        'sudo chown -R "$U:$(id -gn "$U")" "$H"\n'
        'sudo chmod 755 "$H"\n'
        'sudo chmod 700 "$H/.ssh"\n'
        "sudo find \"$H/.ssh\" -type f ! -name '*.pub' -exec chmod 600 {} +\n"
    )


def verify_script(username: str, items: list[str]) -> str:
    quoted = ' '.join(shlex.quote(i) for i in items)
    return (
        _home_expr(username)
        + f'for i in {quoted}; do\n'
        '  if sudo test -e "$H/$i"; then echo "P $i"; else echo "M $i"; fi\n'
        'done\n'
    )


def reextract_script(username: str, item: str) -> str:
    q = shlex.quote(item)
    return (
        'set -e\n'
        + _home_expr(username)
        + f'sudo tar -xzf {REMOTE_ARCHIVE} -C "$H" -- {q}\n'
        f'sudo chown -R "$U:$(id -gn "$U")" "$H"/{q}\n'
    )


@dataclass(frozen=True)
class ResetContext:
    record: VMRecord
    mode: BackupMode
    keep_items: tuple[str, ...]
    pubkey: str
    reimage: bool = False
    archive: Path | None = None
    captured: bool = False
    host: ResolvedHost | None = None
    restored: bool = False
    verify: VerifyResult | None = None
    warnings: tuple[str, ...] = field(default=())

    @property
    def target(self) -> VMTarget:
        return self.record.target()

    def warn(self, message: str) -> 'ResetContext':
        log.warning(message)
        return replace(self, warnings=self.warnings + (message,))


@dataclass(frozen=True)
class FeasibilityResult:
    code: int
    message: str


class BackupRestoreEngine:
    """
    Capture, cache and restore guest home content around a reset.

    Args:
        cfg: toolkit configuration.
        shell: remote access to guests (default: :class:`GuestShell`).
        sleep: injectable sleep for the bounded wait loops.
    """

    def __init__(
        self,
        cfg: ToolkitConfig,
        *,
        shell: GuestShell | None = None,
        sleep=time.sleep,
    ) -> None:
        self.cfg = cfg
        self.shell = shell or GuestShell(cfg.vm.ssh_identity_file)
        self.sleep = sleep

    # --- cache --------------------------------------------------------------

    def cached_backup(self, paths: VMPaths, mode: BackupMode) -> Path | None:
        path = backup_archive(paths, mode)
        if path.is_file() and path.stat().st_size > 0:
            return path
        return None

    def check_single_boot(self, name: str, mode: BackupMode) -> FeasibilityResult:
        """
        Can a reset of ``name`` finish with a single boot right now?

        Exit-code contract: 0 achievable (backup cached), 1 an extra boot
        is needed to capture the backup, 2 invalid or unknown VM.
        """
        try:
            _, target = load_target(self.cfg, name)
        except (ConfigError, VMNotFoundError) as ex:
            return FeasibilityResult(2, f'FAIL: {ex}')
        path = self.cached_backup(target.paths, mode)
        if path is not None:
            return FeasibilityResult(0, f'PASS: cached {mode.value} backup at {path}')
        state = live_state(self.cfg, target)
        if state.is_live:
            return FeasibilityResult(
                1,
                f'CONDITIONAL: no cached {mode.value} backup; {name} is '
                f'{state.status.value}, so the backup can be taken before the reset boot',
            )
        return FeasibilityResult(
            1,
            f'FAIL: no cached {mode.value} backup and {name} is {state.status.value}; '
            'an extra boot is needed to capture it',
        )

    # --- reachability ---------------------------------------------------------

    def wait_running(self, target: VMTarget) -> None:
        r = self.cfg.reset
        wait_for_status(
            self.cfg,
            target,
            {VMStatus.RUNNING},
            attempts=r.running_wait_attempts,
            interval=r.running_wait_interval,
            what='running state',
            sleep=self.sleep,
        )

    def locate_host(self, target: VMTarget) -> ResolvedHost:
        """Wait for port 22 on the VM's current best IP, re-resolving each try."""
        r = self.cfg.reset
        resolver = BestIPResolver(self.cfg)
        last_ip = None
        for attempt in range(1, r.ssh_wait_attempts + 1):
            res = resolver.resolve(target)
            if res.ip != last_ip:
                log.info('{}: best IP now {} (via {})', target.name, res.ip, res.source)
                last_ip = res.ip
            if res.ip is not None and res.reachable:
                return ResolvedHost(target.name, target.username, res.ip)
            if attempt < r.ssh_wait_attempts:
                self.sleep(r.ssh_wait_interval)
        raise WaitTimeoutError(
            f'SSH on VM {target.name} was not reachable within '
            f'{describe_bound(r.ssh_wait_attempts * r.ssh_wait_interval)} '
            f'(last IP: {last_ip or "none"})'
        )

    # --- capture --------------------------------------------------------------

    def capture(
        self,
        record: VMRecord,
        mode: BackupMode,
        keep_items: list[str] | tuple[str, ...],
        dest: Path,
    ) -> Path:
        """
        Stream a backup of ``record``'s guest into ``dest``.

        Starts the VM when it is not running and stops it again afterwards;
        a paused VM is resumed for the capture and paused again.
        """
        target = record.target()
        state = live_state(self.cfg, target)
        started = False
        was_paused = state.status is VMStatus.PAUSED
        if was_paused:
            resume_vm(self.cfg, record.name)
        elif not state.is_live:
            log.info('Starting {} to capture its {} backup', record.name, mode.value)
            start_vm(self.cfg, record.name, wait_for_ip=False, sleep=self.sleep)
            started = True
        try:
            self.wait_running(target)
            host = self.locate_host(target)
            self._stream(host, mode, list(keep_items), dest)
        finally:
            if started:
                log.info('Stopping {} (it was started only for the backup)', record.name)
                stop_vm(self.cfg, record.name, sleep=self.sleep)
            elif was_paused:
                try:
                    pause_vm(self.cfg, record.name)
                except VMToolkitError as ex:
                    log.warning('Could not re-pause {} after the backup: {}', record.name, ex)
        return dest

    def _stream(
        self, host: ResolvedHost, mode: BackupMode, keep_items: list[str], dest: Path
    ) -> None:
        if mode is BackupMode.KEEP:
            command = keep_capture_command(keep_items)
        else:
            command = home_capture_command(host.username)
        ensure_dir(dest.parent)
        partial = dest.with_name(dest.name + '.part')
        try:
            res = self.shell.capture(
                host, command, partial, timeout=self.cfg.reset.remote_timeout
            )
            # GNU tar exits 1 when files changed while being read.
            if res.code not in (0, 1) or partial.stat().st_size == 0:
                raise BackupError(
                    f'Backup of {host.name} failed (code={res.code}): {res.stderr.strip()}'
                )
            try:
                members = archive_members(partial)
            except (tarfile.TarError, EOFError, OSError) as ex:
                raise BackupError(f'Backup of {host.name} is not a valid archive: {ex}') from ex
            os.replace(partial, dest)
        finally:
            if partial.exists():
                partial.unlink()
        log.info('Captured {} backup of {} ({} entries) -> {}', mode.value, host.name, len(members), dest)

    def preseed(
        self,
        source: VMRecord,
        dest_paths: VMPaths,
        mode: BackupMode,
        keep_items: list[str] | tuple[str, ...],
    ) -> Path:
        """Give a clone the source's backup, capturing one if none is cached."""
        dest = backup_archive(dest_paths, mode)
        cached = self.cached_backup(source.target().paths, mode)
        if cached is not None:
            ensure_dir(dest.parent)
            shutil.copy2(cached, dest)
            log.info('Copied cached {} backup of {} to {}', mode.value, source.name, dest)
            return dest
        return self.capture(source, mode, keep_items, dest)

    # --- reset pipeline ---------------------------------------------------------

    def reset(
        self,
        name: str,
        *,
        mode: BackupMode = BackupMode.KEEP,
        reimage: bool = False,
        keep_items: list[str] | None = None,
    ) -> ResetContext:
        record, _ = load_target(self.cfg, name)
        pubkey = require_ssh_pubkey(self.cfg.vm.ssh_pubkey_path)
        items = keep_items if keep_items is not None else load_keep_items(self.cfg)
        ctx = ResetContext(
            record=record,
            mode=BackupMode(mode),
            keep_items=tuple(items),
            pubkey=pubkey,
            reimage=reimage,
        )
        steps = [
            self._ensure_backup,
            self._reprovision,
            self._wait_running,
            self._wait_ssh,
            self._wait_provisioned,
            self._restore,
            self._verify,
        ]
        for step in steps:
            log.debug('reset {}: {}', name, step.__name__.lstrip('_'))
            ctx = step(ctx)
        log.info(
            'Reset of {} complete (mode={}, reimage={}, warnings={})',
            name, ctx.mode.value, ctx.reimage, len(ctx.warnings),
        )
        return ctx

    def _ensure_backup(self, ctx: ResetContext) -> ResetContext:
        cached = self.cached_backup(ctx.target.paths, ctx.mode)
        if cached is not None:
            log.info('Using cached {} backup {}', ctx.mode.value, cached)
            return replace(ctx, archive=cached)
        dest = backup_archive(ctx.target.paths, ctx.mode)
        self.capture(ctx.record, ctx.mode, ctx.keep_items, dest)
        return replace(ctx, archive=dest, captured=True)

    def _reprovision(self, ctx: ResetContext) -> ResetContext:
        record = reprovision(self.cfg, ctx.record, reimage=ctx.reimage, sleep=self.sleep)
        return replace(ctx, record=record)

    def _wait_running(self, ctx: ResetContext) -> ResetContext:
        self.wait_running(ctx.target)
        return ctx

    def _wait_ssh(self, ctx: ResetContext) -> ResetContext:
        return replace(ctx, host=self.locate_host(ctx.target))

    def _wait_provisioned(self, ctx: ResetContext) -> ResetContext:
        r = self.cfg.reset
        probe = (
            'command -v cloud-init >/dev/null 2>&1 || { echo "status: absent"; exit 0; }\n'
            'cloud-init status 2>/dev/null || true\n'
        )
        for attempt in range(1, r.provision_wait_attempts + 1):
            res = self.shell.run(ctx.host, probe, timeout=30)
            m = _CLOUD_INIT_STATUS.search(res.stdout)
            state = m.group(1) if m else 'unknown'
            if state in {'done', 'absent', 'disabled'}:
                log.info('{}: provisioning {}', ctx.record.name, state)
                return ctx
            if state == 'error':
                return ctx.warn(f'{ctx.record.name}: cloud-init reported an error; continuing')
            if attempt < r.provision_wait_attempts:
                self.sleep(r.provision_wait_interval)
        return ctx.warn(
            f'{ctx.record.name}: provisioning not finished within '
            f'{describe_bound(r.provision_wait_attempts * r.provision_wait_interval)}; continuing'
        )

    def _restore(self, ctx: ResetContext) -> ResetContext:
        host = ctx.host
        up = self.shell.upload(host, ctx.archive, REMOTE_ARCHIVE, timeout=self.cfg.reset.remote_timeout)
        if up.code != 0:
            return ctx.warn(f'Upload of {ctx.archive} to {host.login} failed: {up.stderr.strip()}')
        res = self.shell.run(
            host,
            restore_script(ctx.mode, host.username, ctx.pubkey),
            timeout=self.cfg.reset.remote_timeout,
        )
        if res.code != 0:
            return ctx.warn(f'Restore on {host.login} failed (code={res.code}): {res.stderr.strip()}')
        log.info('Restored {} backup into {}:~', ctx.mode.value, host.login)
        return replace(ctx, restored=True)

    def _verify(self, ctx: ResetContext) -> ResetContext:
        host = ctx.host
        try:
            return self._check_keep_items(ctx)
        finally:
            self.shell.run(host, f'rm -f {REMOTE_ARCHIVE}', timeout=30)

    def _check_keep_items(self, ctx: ResetContext) -> ResetContext:
        host = ctx.host
        result = VerifyResult()
        if not ctx.restored or ctx.mode is not BackupMode.KEEP or not ctx.keep_items:
            return replace(ctx, verify=result)
        res = self.shell.run(host, verify_script(host.username, list(ctx.keep_items)), timeout=60)
        if res.code != 0:
            return ctx.warn(f'Verification on {host.login} failed: {res.stderr.strip()}')
        missing = []
        for line in res.stdout.splitlines():
            flag, _, item = line.partition(' ')
            if flag == 'P':
                result.present.append(item)
            elif flag == 'M':
                missing.append(item)
        if not missing:
            return replace(ctx, verify=result)
        try:
            members = archive_members(ctx.archive)
        except (tarfile.TarError, EOFError, OSError) as ex:
            result.failed.extend(missing)
            ctx = ctx.warn(f'Cannot re-extract {", ".join(missing)}: unreadable archive {ctx.archive}: {ex}')
            return replace(ctx, verify=result)
        for item in missing:
            if not archive_contains(members, item):
                result.missing.append(item)
                continue
            fix = self.shell.run(host, reextract_script(host.username, item), timeout=120)
            (result.recopied if fix.code == 0 else result.failed).append(item)
        if result.recopied:
            log.info('Re-extracted after restore: {}', ', '.join(result.recopied))
        if result.failed:
            ctx = ctx.warn(f'Could not restore: {", ".join(result.failed)}')
        return replace(ctx, verify=result)
