"""Single-file JSON registry of static VM configuration records.

The registry never stores runtime facts (status, pid, IP); those are
recomputed on every query. Writes go through a temp file and
``os.replace`` so readers never observe a partial document.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from loguru import logger

from .config import ToolkitConfig
from .errors import VMNotFoundError, VMToolkitError
from .layout import (
    NAME_RE,
    VMPaths,
    VMTarget,
    generate_mac,
    user_data_value,
    validate_vm_name,
)
from .results import RegistrySyncResult
from .util import atomic_write_text

log = logger

REGISTRY_VERSION = '1.0'


def _now() -> str:
    return time.strftime('%Y-%m-%dT%H:%M:%S%z')


@dataclass
class VMRecord:
    name: str
    directory: str
    hostname: str = ''
    username: str = 'ubuntu'
    architecture: str = 'x86_64'
    mac_address: str = ''
    memory_mb: int = 0
    vcpus: int = 0
    disk_size: str = 'unknown'
    os_version: str = ''
    instance_id: str = ''
    created: str = ''
    updated: str = ''

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> 'VMRecord':
        # Legacy documents may carry dynamic keys such as "status"; drop them.
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in raw.items() if k in known})

    def static_fields(self) -> dict[str, Any]:
        d = asdict(self)
        d.pop('updated', None)
        return d

    def target(self) -> VMTarget:
        return VMTarget(
            name=self.name,
            paths=VMPaths(self.name, Path(self.directory)),
            mac=self.mac_address,
            hostname=self.hostname or self.name,
            username=self.username,
        )


@dataclass
class Registry:
    version: str = REGISTRY_VERSION
    created: str = ''
    updated: str = ''
    vms: dict[str, VMRecord] = field(default_factory=dict)


def load_registry(path: Path) -> Registry:
    path = Path(path)
    if not path.exists():
        return Registry(created=_now())
    try:
        raw = json.loads(path.read_text(encoding='utf-8'))
    except json.JSONDecodeError as ex:
        raise VMToolkitError(f'Registry {path} is not valid JSON: {ex}') from ex
    reg = Registry(
        version=str(raw.get('version', REGISTRY_VERSION)),
        created=str(raw.get('created', '')),
        updated=str(raw.get('updated', '')),
    )
    for name, item in (raw.get('vms') or {}).items():
        if not isinstance(item, dict) or not NAME_RE.match(str(name)):
            log.warning('Skipping malformed registry entry {!r}', name)
            continue
        item = dict(item, name=name)
        reg.vms[name] = VMRecord.from_dict(item)
    return reg


def save_registry(reg: Registry, path: Path) -> Path:
    path = Path(path)
    reg.updated = _now()
    if not reg.created:
        reg.created = reg.updated
    doc = {
        'version': reg.version,
        'created': reg.created,
        'updated': reg.updated,
        'vms': {name: asdict(reg.vms[name]) for name in sorted(reg.vms)},
    }
    atomic_write_text(path, json.dumps(doc, indent=2) + '\n')
    return path


def register_vm(path: Path, record: VMRecord) -> VMRecord:
    """Insert or replace ``record``; keeps the original creation time."""
    validate_vm_name(record.name)
    reg = load_registry(path)
    now = _now()
    prev = reg.vms.get(record.name)
    if not record.created:
        record.created = prev.created if prev and prev.created else now
    record.updated = now
    reg.vms[record.name] = record
    save_registry(reg, path)
    log.debug('Registered VM {} in {}', record.name, path)
    return record


def unregister_vm(path: Path, name: str) -> bool:
    reg = load_registry(path)
    if reg.vms.pop(name, None) is None:
        return False
    save_registry(reg, path)
    log.debug('Unregistered VM {} from {}', name, path)
    return True


def get_vm(path: Path, name: str) -> VMRecord | None:
    return load_registry(path).vms.get(name)


def list_vm_names(path: Path) -> list[str]:
    return sorted(load_registry(path).vms)


def record_from_directory(vm_path: Path, cfg: ToolkitConfig) -> VMRecord:
    """Re-derive the static fields of an unregistered VM from its files."""
    name = vm_path.name
    paths = VMPaths(name, vm_path)
    try:
        user_data = paths.user_data.read_text(encoding='utf-8')
    except OSError:
        user_data = ''
    try:
        created = time.strftime(
            '%Y-%m-%dT%H:%M:%S%z', time.localtime(paths.disk.stat().st_mtime)
        )
    except OSError:
        created = _now()
    return VMRecord(
        name=name,
        directory=str(vm_path),
        hostname=user_data_value(user_data, 'hostname') or name,
        username=user_data_value(user_data, 'name') or 'ubuntu',
        architecture=cfg.vm.architecture,
        mac_address=paths.read_mac() or generate_mac(name),
        memory_mb=cfg.vm.memory_mb,
        vcpus=cfg.vm.vcpus,
        disk_size='unknown',
        os_version=cfg.vm.os_version,
        instance_id=paths.read_instance_id(),
        created=created,
    )


def sync_registry(path: Path, cfg: ToolkitConfig) -> RegistrySyncResult:
    """Reconcile the registry with the VM directories under ``base_dir``."""
    result = RegistrySyncResult()
    reg = load_registry(path)
    for name in sorted(reg.vms):
        if not Path(reg.vms[name].directory).is_dir():
            del reg.vms[name]
            result.removed.append(name)
            log.info('Registry sync: removed {} (directory missing)', name)
    base = Path(cfg.paths.base_dir)
    if base.is_dir():
        for child in sorted(base.iterdir()):
            name = child.name
            if name.startswith('.') or not child.is_dir() or name in reg.vms:
                continue
            if not NAME_RE.match(name) or not (child / f'{name}.qcow2').exists():
                continue
            rec = record_from_directory(child, cfg)
            rec.updated = _now()
            reg.vms[name] = rec
            result.added.append(name)
            log.info('Registry sync: absorbed {} from {}', name, child)
    if result.changed:
        save_registry(reg, path)
    return result


def registry_stats(path: Path) -> dict[str, Any]:
    reg = load_registry(path)
    return {
        'file': str(path),
        'version': reg.version,
        'created': reg.created,
        'updated': reg.updated,
        'vm_count': len(reg.vms),
    }


def load_target(cfg: ToolkitConfig, name: str) -> tuple[VMRecord, VMTarget]:
    """Record and probe target for ``name``; unregistered directories are derived."""
    validate_vm_name(name)
    rec = get_vm(Path(cfg.paths.registry_file), name)
    if rec is None:
        vm_path = VMPaths.for_vm(cfg.paths.base_dir, name).root
        if not vm_path.is_dir():
            raise VMNotFoundError(f'VM {name!r} not found (not registered, no {vm_path})')
        rec = record_from_directory(vm_path, cfg)
    return rec, rec.target()
