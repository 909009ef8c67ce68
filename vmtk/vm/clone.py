"""Clone a VM's disks and identity, optionally resetting the clone."""

from __future__ import annotations

import shutil
import time
from pathlib import Path

from loguru import logger

from ..backup import BackupMode, BackupRestoreEngine
from ..config import ToolkitConfig, load_keep_items
from ..errors import UnsafeOperationError, VMStateError
from ..layout import VMPaths, generate_mac, new_instance_id, validate_vm_name
from ..registry import VMRecord, get_vm, load_target, register_vm
from ..util import ensure_dir, run_cmd
from .cloud_init import build_seed_iso, rewrite_identity, write_instance_id
from .lifecycle import live_state

log = logger


def clone_vm(
    cfg: ToolkitConfig,
    source: str,
    target: str,
    *,
    force: bool = False,
    username: str = '',
    reset: bool = False,
    reimage: bool = False,
    mode: BackupMode = BackupMode.KEEP,
    engine: BackupRestoreEngine | None = None,
) -> VMRecord:
    """
    Copy ``source`` into a new VM named ``target``.

    The clone gets its own MAC, hostname and instance-id. A live source is
    refused unless ``force`` is given because its overlay may be changing.
    With ``reset`` the clone is reset after creation, its backup seeded
    from the source so the clone needs no extra boot.
    """
    validate_vm_name(source)
    validate_vm_name(target)
    src_rec, src_target = load_target(cfg, source)
    dst_paths = VMPaths.for_vm(cfg.paths.base_dir, target)
    if get_vm(Path(cfg.paths.registry_file), target) is not None or dst_paths.root.exists():
        raise VMStateError(f'Target VM {target!r} already exists ({dst_paths.root})')
    state = live_state(cfg, src_target)
    if state.is_live and not force:
        raise UnsafeOperationError(
            f'Source VM {source} is {state.status.value}; stop it first or pass --force'
        )
    src = src_target.paths
    new_user = username or src_rec.username

    ensure_dir(dst_paths.root)
    try:
        log.info('Copying disks of {} to {}', source, dst_paths.root)
        shutil.copyfile(src.base_image, dst_paths.base_image)
        shutil.copyfile(src.disk, dst_paths.disk)
        run_cmd(
            [
                'qemu-img', 'rebase', '-u',
                '-F', 'qcow2', '-b', dst_paths.base_image.name,
                str(dst_paths.disk),
            ],
            check=True,
            capture=True,
        )
        ensure_dir(dst_paths.cloud_init_dir)
        user_data = src.user_data.read_text(encoding='utf-8')
        dst_paths.user_data.write_text(
            rewrite_identity(
                user_data,
                old_name=src_rec.hostname or source,
                new_name=target,
                old_user=src_rec.username,
                new_user=new_user,
            ),
            encoding='utf-8',
        )
        instance_id = new_instance_id(target, time.time())
        write_instance_id(dst_paths, instance_id, hostname=target)
        build_seed_iso(dst_paths)
        mac = generate_mac(target)
        dst_paths.mac_file.write_text(mac + '\n', encoding='utf-8')
        record = register_vm(
            Path(cfg.paths.registry_file),
            VMRecord(
                name=target,
                directory=str(dst_paths.root),
                hostname=target,
                username=new_user,
                architecture=src_rec.architecture,
                mac_address=mac,
                memory_mb=src_rec.memory_mb,
                vcpus=src_rec.vcpus,
                disk_size=src_rec.disk_size,
                os_version=src_rec.os_version,
                instance_id=instance_id,
            ),
        )
    except BaseException:
        log.error('Clone {} -> {} failed; removing {}', source, target, dst_paths.root)
        shutil.rmtree(dst_paths.root, ignore_errors=True)
        raise
    log.info('Cloned {} -> {} (mac={})', source, target, mac)

    if reset or reimage:
        engine = engine or BackupRestoreEngine(cfg)
        items = load_keep_items(cfg)
        engine.preseed(src_rec, dst_paths, mode, items)
        engine.reset(target, mode=mode, reimage=reimage, keep_items=items)
    return record
