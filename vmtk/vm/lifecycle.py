"""VM lifecycle operations: create, start, stop, pause, resume, destroy."""

from __future__ import annotations

import os
import shutil
import signal
import time
from pathlib import Path

from loguru import logger

from .. import qmp
from ..arch import Architecture, host_profile_for, os_image_for
from ..config import ToolkitConfig
from ..errors import (
    ConfigError,
    UnsafeOperationError,
    VMStateError,
    VMToolkitError,
    WaitTimeoutError,
)
from ..host import require_commands
from ..layout import VMPaths, VMTarget, generate_mac, new_instance_id, validate_vm_name
from ..process import find_vm_pid, pid_alive
from ..registry import VMRecord, get_vm, load_target, register_vm, unregister_vm
from ..remote import require_ssh_pubkey
from ..resolver import BestIPResolver, ResolveMode
from ..resource_checks import vm_resource_warning_lines
from ..status import VMState, VMStatus, compute_state
from ..util import CmdError, ensure_dir, run_cmd
from .cloud_init import build_seed_iso, write_cloud_init, write_instance_id

log = logger


def describe_bound(seconds: float) -> str:
    seconds = int(round(seconds))
    if seconds >= 60 and seconds % 60 == 0:
        minutes = seconds // 60
        return f'{minutes} minute' + ('s' if minutes != 1 else '')
    return f'{seconds} seconds'


def fetch_image(cfg: ToolkitConfig, *, dry_run: bool = False) -> Path:
    image = os_image_for(cfg.vm.os_name, cfg.vm.os_version, cfg.vm.architecture)
    cache_dir = Path(cfg.paths.cache_dir)
    base_img = cache_dir / image.cache_name
    tmp_img = Path(str(base_img) + '.part')
    if base_img.exists():
        log.info('Base image cached: {}', base_img)
        return base_img
    if dry_run:
        log.info('DRYRUN: curl -L --fail -o {} {}; mv {} {}', tmp_img, image.url, tmp_img, base_img)
        return base_img
    ensure_dir(cache_dir)
    log.info('Downloading base image to {} (showing progress)', base_img)
    try:
        run_cmd(
            ['curl', '-L', '--fail', '--progress-bar', '-o', str(tmp_img), image.url],
            check=True,
            capture=False,
        )
        os.replace(tmp_img, base_img)
    finally:
        if tmp_img.exists():
            tmp_img.unlink()
    log.info('Downloaded base image: {}', base_img)
    return base_img


def create_vm(
    cfg: ToolkitConfig,
    name: str,
    *,
    hostname: str = '',
    username: str = '',
    password: str = '',
    dry_run: bool = False,
) -> VMRecord:
    """
    Create a VM from a cloud image.

    Every input is validated before anything touches the disk; on a
    failure after that point the half-built VM directory is removed.
    """
    validate_vm_name(name)
    arch = Architecture.parse(cfg.vm.architecture)
    os_image_for(cfg.vm.os_name, cfg.vm.os_version, arch)
    pubkey = require_ssh_pubkey(cfg.vm.ssh_pubkey_path)
    hostname = hostname or name
    username = username or cfg.vm.username
    password = password or f'{username}-pw'
    paths = VMPaths.for_vm(cfg.paths.base_dir, name)
    registry_file = Path(cfg.paths.registry_file)
    if get_vm(registry_file, name) is not None or paths.root.exists():
        raise VMStateError(f'VM {name!r} already exists ({paths.root})')
    cfg.validate()
    if not dry_run:
        require_commands(arch)
    for line in vm_resource_warning_lines(cfg):
        log.warning(line)

    mac = generate_mac(name)
    instance_id = new_instance_id(name, time.time())
    record = VMRecord(
        name=name,
        directory=str(paths.root),
        hostname=hostname,
        username=username,
        architecture=arch.value,
        mac_address=mac,
        memory_mb=cfg.vm.memory_mb,
        vcpus=cfg.vm.vcpus,
        disk_size=cfg.vm.disk_size,
        os_version=cfg.vm.os_version,
        instance_id=instance_id,
    )
    if dry_run:
        log.info('DRYRUN: create {} in {} (mac={}, arch={})', name, paths.root, mac, arch.value)
        return record

    base_img = fetch_image(cfg)
    ensure_dir(paths.root)
    try:
        shutil.copyfile(base_img, paths.base_image)
        run_cmd(
            [
                'qemu-img', 'create', '-f', 'qcow2',
                '-F', 'qcow2', '-b', paths.base_image.name,
                str(paths.disk), cfg.vm.disk_size,
            ],
            check=True,
            capture=True,
        )
        write_cloud_init(
            paths,
            hostname=hostname,
            username=username,
            pubkey=pubkey,
            password=password,
            instance_id=instance_id,
        )
        build_seed_iso(paths)
        paths.mac_file.write_text(mac + '\n', encoding='utf-8')
        register_vm(registry_file, record)
    except BaseException:
        log.error('Create of {} failed; removing {}', name, paths.root)
        shutil.rmtree(paths.root, ignore_errors=True)
        raise
    log.info('Created VM {} (mac={}, dir={})', name, mac, paths.root)
    return record


def _netdev(cfg: ToolkitConfig) -> str:
    mode = cfg.network.mode
    if mode == 'bridge':
        return f'bridge,id=net0,br={cfg.network.bridge}'
    if mode == 'vmnet-bridged':
        return f'vmnet-bridged,id=net0,ifname={cfg.network.bridge}'
    if mode == 'user':
        return 'user,id=net0'
    raise ConfigError(f'Unknown network mode {mode!r}')


def build_qemu_cmd(cfg: ToolkitConfig, record: VMRecord) -> list[str]:
    profile = host_profile_for(record.architecture)
    paths = record.target().paths
    cmd = [
        profile.binary,
        '-name', record.name,
        '-machine', f'{profile.machine},accel={profile.accel}',
        '-cpu', profile.cpu,
        '-smp', str(record.vcpus or cfg.vm.vcpus),
        '-m', str(record.memory_mb or cfg.vm.memory_mb),
    ]
    firmware = profile.find_firmware()
    if firmware:
        cmd += ['-bios', firmware]
    cmd += [
        '-drive', f'if=virtio,file={paths.disk},format=qcow2,discard=unmap,detect-zeroes=on',
        '-drive', f'file={paths.seed_iso},format=raw,media=cdrom,readonly=on',
        '-netdev', _netdev(cfg),
        '-device', f'virtio-net-pci,netdev=net0,mac={record.mac_address}',
        '-pidfile', str(paths.pid_file),
        '-qmp', f'unix:{paths.qmp_socket},server,nowait',
        '-display', 'none',
        '-serial', f'file:{paths.console_log}',
        '-daemonize',
    ]
    return cmd


def live_state(cfg: ToolkitConfig, target: VMTarget) -> VMState:
    """Liveness without any network work."""
    return compute_state(target, cfg, mode=ResolveMode.BASIC, with_uptime=False)


def wait_for_status(
    cfg: ToolkitConfig,
    target: VMTarget,
    want: set[VMStatus],
    *,
    attempts: int,
    interval: float,
    what: str,
    sleep=time.sleep,
) -> VMState:
    """Poll the full status ladder until it lands in ``want``."""
    state = None
    for attempt in range(1, attempts + 1):
        state = compute_state(target, cfg, with_uptime=False)
        log.debug(
            'Waiting for {} to reach {} ({}/{}): {}',
            target.name, what, attempt, attempts, state.status.value,
        )
        if state.status in want:
            return state
        if state.status in {VMStatus.MISSING, VMStatus.STOPPED} and attempt > 3:
            raise VMStateError(
                f'VM {target.name} is {state.status.value} while waiting for {what}'
            )
        if attempt < attempts:
            sleep(interval)
    raise WaitTimeoutError(
        f'VM {target.name} did not reach {what} within '
        f'{describe_bound(attempts * interval)} (last status: '
        f'{state.status.value if state else "unknown"})'
    )


def start_vm(
    cfg: ToolkitConfig,
    name: str,
    *,
    wait_for_ip: bool | None = None,
    dry_run: bool = False,
    sleep=time.sleep,
) -> VMState:
    record, target = load_target(cfg, name)
    state = live_state(cfg, target)
    if state.status is VMStatus.MISSING:
        raise VMStateError(f'VM {name} directory is missing: {target.paths.root}')
    if state.is_live:
        log.info('VM {} is already running (pid={})', name, state.pid)
        return state
    cmd = build_qemu_cmd(cfg, record)
    if dry_run:
        log.info('DRYRUN: {}', ' '.join(cmd))
        return state
    if target.paths.qmp_socket.exists():
        target.paths.qmp_socket.unlink()
    log.info('Starting VM {}', name)
    run_cmd(cmd, sudo=cfg.start.use_sudo, check=True, capture=True)

    pid = None
    for _ in range(20):
        pid = find_vm_pid(target.paths, target.mac)
        if pid is not None:
            break
        sleep(0.5)
    if pid is None:
        raise VMToolkitError(
            f'VM {name} did not stay up; see {target.paths.console_log}'
        )
    log.info('VM {} started (pid={})', name, pid)

    if wait_for_ip is None:
        wait_for_ip = cfg.start.wait_for_ip
    if not wait_for_ip:
        return compute_state(target, cfg, mode=ResolveMode.BASIC)
    resolver = BestIPResolver(cfg)
    deadline = time.monotonic() + cfg.start.wait_for_ip_timeout
    res = resolver.resolve(target, pid)
    while res.ip is None and time.monotonic() < deadline:
        sleep(3)
        res = resolver.resolve(target)
    if res.ip is None:
        log.warning(
            'VM {} has no IP after {}s; it may still be booting. Check `vmtk status {}`.',
            name, cfg.start.wait_for_ip_timeout, name,
        )
    else:
        log.info('VM {} IP: {} (via {})', name, res.ip, res.source)
        if cfg.start.hosts_sync_on_start:
            from ..hosts import sync_hosts

            try:
                sync_hosts(cfg, [name], apply=True)
            except (CmdError, OSError) as ex:
                log.warning('hosts sync for {} failed: {}', name, ex)
    return compute_state(target, cfg)


def _signal(pid: int, sig: signal.Signals, *, use_sudo: bool) -> None:
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        return
    except PermissionError:
        if not use_sudo:
            raise
        run_cmd(['kill', f'-{sig.name[3:]}', str(pid)], sudo=True, check=False)


def stop_vm(
    cfg: ToolkitConfig,
    name: str,
    *,
    force: bool = False,
    timeout: int | None = None,
    dry_run: bool = False,
    sleep=time.sleep,
) -> bool:
    """Stop a VM; returns False when it was not running."""
    _, target = load_target(cfg, name)
    paths = target.paths
    pid = find_vm_pid(paths, target.mac)
    if pid is None:
        log.info('VM {} is not running', name)
        return False
    if dry_run:
        log.info('DRYRUN: stop {} (pid={}, force={})', name, pid, force)
        return True
    use_sudo = cfg.start.use_sudo
    timeout = cfg.vm.stop_timeout_sec if timeout is None else timeout
    if force:
        log.info('Killing VM {} (pid={})', name, pid)
        _signal(pid, signal.SIGKILL, use_sudo=use_sudo)
    else:
        # A paused guest ignores ACPI.
        if qmp.is_paused(paths.qmp_socket, timeout=cfg.network.probe_timeout):
            qmp.resume(paths.qmp_socket, timeout=cfg.network.probe_timeout)
        if qmp.powerdown(paths.qmp_socket, timeout=cfg.network.probe_timeout):
            log.info('Sent ACPI power-down to {} (pid={})', name, pid)
        else:
            log.info('QMP unavailable; sending SIGTERM to {} (pid={})', name, pid)
            _signal(pid, signal.SIGTERM, use_sudo=use_sudo)
        waited = 0
        while pid_alive(pid) and waited < timeout:
            sleep(1)
            waited += 1
        if pid_alive(pid):
            log.warning('VM {} did not shut down within {}s; killing', name, timeout)
            _signal(pid, signal.SIGKILL, use_sudo=use_sudo)
    for _ in range(10):
        if not pid_alive(pid):
            break
        sleep(0.5)
    for leftover in (paths.pid_file, paths.qmp_socket):
        if leftover.exists():
            leftover.unlink()
    log.info('VM {} stopped', name)
    return True


def pause_vm(cfg: ToolkitConfig, name: str) -> None:
    _, target = load_target(cfg, name)
    state = live_state(cfg, target)
    if state.status is VMStatus.PAUSED:
        log.info('VM {} is already paused', name)
        return
    if not state.is_live:
        raise VMStateError(f'VM {name} is {state.status.value}; cannot pause')
    if not qmp.pause(target.paths.qmp_socket, timeout=cfg.network.probe_timeout):
        raise VMToolkitError(f'QMP pause of {name} failed ({target.paths.qmp_socket})')
    log.info('VM {} paused', name)


def resume_vm(cfg: ToolkitConfig, name: str) -> None:
    _, target = load_target(cfg, name)
    state = live_state(cfg, target)
    if state.status is not VMStatus.PAUSED:
        raise VMStateError(f'VM {name} is {state.status.value}, not paused')
    if not qmp.resume(target.paths.qmp_socket, timeout=cfg.network.probe_timeout):
        raise VMToolkitError(f'QMP resume of {name} failed ({target.paths.qmp_socket})')
    log.info('VM {} resumed', name)


def destroy_vm(
    cfg: ToolkitConfig, name: str, *, force: bool = False, dry_run: bool = False
) -> None:
    """Remove a VM, its directory and its cached backups."""
    _, target = load_target(cfg, name)
    state = live_state(cfg, target)
    if state.is_live and not force:
        raise UnsafeOperationError(
            f'VM {name} is {state.status.value}; stop it first or pass --force'
        )
    if dry_run:
        log.info('DRYRUN: destroy {} (rm -rf {})', name, target.paths.root)
        return
    if state.is_live:
        stop_vm(cfg, name, force=True)
    unregister_vm(Path(cfg.paths.registry_file), name)
    if target.paths.root.exists():
        shutil.rmtree(target.paths.root)
    log.info('Destroyed VM {}', name)


def reprovision(
    cfg: ToolkitConfig, record: VMRecord, *, reimage: bool = False, sleep=time.sleep
) -> VMRecord:
    """
    Stop, optionally recreate the overlay, issue a fresh instance-id and start.

    Returns the updated registry record.
    """
    target = record.target()
    paths = target.paths
    stop_vm(cfg, record.name, sleep=sleep)
    if reimage:
        log.info('Recreating overlay {} from {}', paths.disk, paths.base_image)
        if not paths.base_image.exists():
            raise VMToolkitError(f'Base image missing: {paths.base_image}')
        paths.disk.unlink(missing_ok=True)
        run_cmd(
            [
                'qemu-img', 'create', '-f', 'qcow2',
                '-F', 'qcow2', '-b', paths.base_image.name,
                str(paths.disk), record.disk_size if record.disk_size != 'unknown' else cfg.vm.disk_size,
            ],
            check=True,
            capture=True,
        )
    instance_id = new_instance_id(record.name, time.time())
    write_instance_id(paths, instance_id, hostname=record.hostname or record.name)
    build_seed_iso(paths)
    record.instance_id = instance_id
    record = register_vm(Path(cfg.paths.registry_file), record)
    start_vm(cfg, record.name, wait_for_ip=False, sleep=sleep)
    return record
