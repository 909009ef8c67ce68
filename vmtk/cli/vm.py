"""Per-VM lifecycle commands."""

from __future__ import annotations

import scriptconfig as scfg

from ..backup import BackupMode, BackupRestoreEngine
from ..config import load_keep_items
from ..vm import create_vm, destroy_vm, pause_vm, resume_vm, start_vm, stop_vm
from ..vm.clone import clone_vm
from ..vm.keys import copy_ssh_keys
from ..vm.reset import reset_vm
from ._common import (
    _BaseCommand,
    _confirm,
    _load_cfg,
    _NamedCommand,
    _require_name,
    log,
)


def _mode(keep_home: bool) -> BackupMode:
    return BackupMode.HOME if keep_home else BackupMode.KEEP


class CreateCLI(_NamedCommand):
    """Create a VM from a cloud image with a cloud-init seed."""

    hostname = scfg.Value('', help='Guest hostname (default: VM name).')
    username = scfg.Value('', help='Guest login user (default: vm.username).')
    password = scfg.Value('', help='Guest password (default: <user>-pw).')
    memory = scfg.Value(None, type=int, help='Memory in MiB.')
    vcpus = scfg.Value(None, type=int, help='Number of vCPUs.')
    disk_size = scfg.Value(None, help='Disk size, e.g. 60G.')
    arch = scfg.Value(None, help='Guest architecture: x86_64, arm64 or i386.')
    os = scfg.Value(None, help='Guest OS family: ubuntu or debian.')
    os_version = scfg.Value(None, help='Guest OS release, e.g. noble.')
    start = scfg.Value(False, isflag=True, help='Start the VM after creating it.')
    dry_run = scfg.Value(False, isflag=True, help='Print actions without running.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        name = _require_name(args.name)
        cfg = _load_cfg(
            args.config,
            **{
                'vm.memory_mb': args.memory,
                'vm.vcpus': args.vcpus,
                'vm.disk_size': args.disk_size,
                'vm.architecture': args.arch,
                'vm.os_name': args.os,
                'vm.os_version': args.os_version,
            },
        )
        rec = create_vm(
            cfg,
            name,
            hostname=args.hostname,
            username=args.username,
            password=args.password,
            dry_run=args.dry_run,
        )
        print(f'Created VM {rec.name} ({rec.architecture}, mac={rec.mac_address})')
        if args.start and not args.dry_run:
            state = start_vm(cfg, name)
            print(f'VM {name}: {state.status.value}')
        return 0


class StartCLI(_NamedCommand):
    """Start a stopped VM and optionally wait for its IP."""

    no_wait = scfg.Value(False, isflag=True, help='Do not wait for an IP address.')
    dry_run = scfg.Value(False, isflag=True, help='Print the QEMU command only.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        name = _require_name(args.name)
        cfg = _load_cfg(args.config)
        state = start_vm(
            cfg,
            name,
            wait_for_ip=False if args.no_wait else None,
            dry_run=args.dry_run,
        )
        detail = f' at {state.ip}' if state.ip else ''
        print(f'VM {name}: {state.status.value}{detail}')
        return 0


class StopCLI(_NamedCommand):
    """Stop a VM with an ACPI power-down, falling back to signals."""

    force = scfg.Value(False, isflag=True, help='Kill immediately.')
    timeout = scfg.Value(None, type=int, help='Seconds to wait for a clean shutdown.')
    dry_run = scfg.Value(False, isflag=True, help='Print actions without running.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        name = _require_name(args.name)
        cfg = _load_cfg(args.config)
        stopped = stop_vm(
            cfg, name, force=args.force, timeout=args.timeout, dry_run=args.dry_run
        )
        print(f'VM {name}: {"stopped" if stopped else "was not running"}')
        return 0


class PauseCLI(_NamedCommand):
    """Suspend guest execution via QMP."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        name = _require_name(args.name)
        pause_vm(_load_cfg(args.config), name)
        print(f'VM {name}: paused')
        return 0


class ResumeCLI(_NamedCommand):
    """Resume a paused VM via QMP."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        name = _require_name(args.name)
        resume_vm(_load_cfg(args.config), name)
        print(f'VM {name}: resumed')
        return 0


class DestroyCLI(_NamedCommand):
    """Delete a VM, its disks and its registry entry."""

    force = scfg.Value(False, isflag=True, help='Kill a live VM before deleting it.')
    dry_run = scfg.Value(False, isflag=True, help='Print actions without running.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        name = _require_name(args.name)
        cfg = _load_cfg(args.config)
        if not args.dry_run:
            _confirm(yes=bool(args.yes), purpose=f'permanently delete VM {name}')
        destroy_vm(cfg, name, force=args.force, dry_run=args.dry_run)
        print(f'VM {name}: destroyed' if not args.dry_run else f'VM {name}: dry run')
        return 0


class CloneCLI(_BaseCommand):
    """Copy a VM under a new name with fresh identity."""

    source = scfg.Value('', position=1, help='Existing VM to copy.')
    target = scfg.Value('', position=2, help='Name of the new VM.')
    username = scfg.Value('', help='Rename the guest user in the clone.')
    force = scfg.Value(False, isflag=True, help='Allow cloning a live source.')
    reset = scfg.Value(False, isflag=True, help='Reset the clone after copying.')
    reimage = scfg.Value(
        False, isflag=True, help='Reset the clone onto a fresh base image.'
    )
    keep_home = scfg.Value(
        False,
        isflag=True,
        alias=['preserve_home'],
        help='Carry the whole home directory instead of the keep list.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        source = _require_name(args.source, 'Source VM name')
        target = _require_name(args.target, 'Target VM name')
        cfg = _load_cfg(args.config)
        rec = clone_vm(
            cfg,
            source,
            target,
            force=args.force,
            username=args.username,
            reset=args.reset,
            reimage=args.reimage,
            mode=_mode(args.keep_home),
        )
        print(f'Cloned {source} -> {rec.name} (mac={rec.mac_address})')
        return 0


class ResetCLI(_NamedCommand):
    """Reprovision a VM while carrying selected home content across."""

    keep_home = scfg.Value(
        False,
        isflag=True,
        alias=['preserve_home'],
        help='Carry the whole home directory instead of the keep list.',
    )
    reimage = scfg.Value(
        False,
        isflag=True,
        alias=['hard'],
        help='Replace the overlay with a fresh copy of the base image.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        name = _require_name(args.name)
        cfg = _load_cfg(args.config)
        _confirm(
            yes=bool(args.yes),
            purpose=f'reset VM {name} (guest changes outside the keep list are lost)',
        )
        ctx = reset_vm(
            cfg,
            name,
            mode=_mode(args.keep_home),
            reimage=args.reimage,
            keep_items=load_keep_items(cfg),
        )
        for warning in ctx.warnings:
            print(f'WARNING: {warning}')
        if ctx.verify is not None and ctx.verify.missing:
            print(f'Missing after restore: {", ".join(ctx.verify.missing)}')
        print(f'VM {name}: reset complete')
        return 0


class ResetCheckCLI(_NamedCommand):
    """Check whether a reset can complete with a single boot (exit 0/1/2)."""

    keep_home = scfg.Value(
        False,
        isflag=True,
        alias=['preserve_home'],
        help='Check for a whole-home backup instead of a keep-list backup.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        name = str(args.name or '').strip()
        if not name:
            print('FAIL: VM name is required')
            return 2
        cfg = _load_cfg(args.config)
        result = BackupRestoreEngine(cfg).check_single_boot(name, _mode(args.keep_home))
        log.debug('reset-check {} -> {}', name, result.code)
        print(result.message)
        return result.code



class KeysCopyCLI(_NamedCommand):
    """Copy the host SSH key pair into the guest user's ~/.ssh."""

    private = scfg.Value(None, help='Private key (default: vm.ssh_identity_file).')
    public = scfg.Value(None, help='Public key (default: vm.ssh_pubkey_path).')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        name = _require_name(args.name)
        cfg = _load_cfg(args.config)
        _confirm(
            yes=bool(args.yes),
            purpose=f'copy your private SSH key into VM {name} (trusted VMs only)',
        )
        host = copy_ssh_keys(cfg, name, private=args.private, public=args.public)
        print(f'Copied SSH keys to {name} as {host.username} (authorized_keys updated)')
        return 0
