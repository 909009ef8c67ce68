"""VM naming rules, deterministic MAC derivation, and on-disk file layout."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigError

NAME_RE = re.compile(r'^[A-Za-z0-9_-]{1,50}$')
MAC_PREFIX = '52:54:00'
BACKUP_DIRNAME = '.reset-backup'


def validate_vm_name(name: str) -> str:
    if not isinstance(name, str) or not NAME_RE.match(name):
        raise ConfigError(
            f'Invalid VM name {name!r}: use 1-50 letters, digits, "-" or "_".'
        )
    return name


def vm_dir(base_dir: str | Path, name: str) -> Path:
    """Directory of VM ``name``; guaranteed to be a direct child of ``base_dir``."""
    validate_vm_name(name)
    base = Path(base_dir).expanduser().resolve()
    path = (base / name).resolve()
    if path.parent != base:
        raise ConfigError(f'VM directory for {name!r} escapes {base}')
    return path


def generate_mac(name: str) -> str:
    """
    Derive the stable MAC address of a VM from its name.

    Example:
        >>> from vmtk.layout import generate_mac
        >>> generate_mac('alpha') == generate_mac('alpha')
        True
        >>> generate_mac('alpha').startswith('52:54:00:')
        True
    """
    digest = hashlib.sha256(name.encode('utf-8')).hexdigest()[:6]
    return f'{MAC_PREFIX}:{digest[0:2]}:{digest[2:4]}:{digest[4:6]}'


def new_instance_id(name: str, now: float) -> str:
    return f'iid-{name}-{int(now)}'


@dataclass(frozen=True)
class VMPaths:
    name: str
    root: Path

    @classmethod
    def for_vm(cls, base_dir: str | Path, name: str) -> 'VMPaths':
        return cls(name=name, root=vm_dir(base_dir, name))

    @property
    def disk(self) -> Path:
        return self.root / f'{self.name}.qcow2'

    @property
    def base_image(self) -> Path:
        return self.root / f'{self.name}-base.img'

    @property
    def seed_iso(self) -> Path:
        return self.root / f'{self.name}-seed.iso'

    @property
    def pid_file(self) -> Path:
        return self.root / f'{self.name}.pid'

    @property
    def qmp_socket(self) -> Path:
        return self.root / f'{self.name}.qmp'

    @property
    def mac_file(self) -> Path:
        return self.root / f'{self.name}.mac'

    @property
    def console_log(self) -> Path:
        return self.root / 'console.log'

    @property
    def cloud_init_dir(self) -> Path:
        return self.root / 'cloud-init'

    @property
    def user_data(self) -> Path:
        return self.cloud_init_dir / 'user-data'

    @property
    def meta_data(self) -> Path:
        return self.cloud_init_dir / 'meta-data'

    @property
    def instance_id_file(self) -> Path:
        return self.cloud_init_dir / 'instance-id'

    @property
    def backup_dir(self) -> Path:
        return self.root / BACKUP_DIRNAME

    def read_mac(self) -> str:
        try:
            return self.mac_file.read_text(encoding='utf-8').strip()
        except OSError:
            return ''

    def read_instance_id(self) -> str:
        try:
            return self.instance_id_file.read_text(encoding='utf-8').strip()
        except OSError:
            return ''


@dataclass(frozen=True)
class VMTarget:
    """Everything the probes need to know to find one VM."""

    name: str
    paths: VMPaths
    mac: str
    hostname: str
    username: str


def user_data_value(text: str, key: str) -> str:
    """Pull a simple ``key: value`` (first match, any indent) out of user-data."""
    pat = re.compile(rf'^\s*-?\s*{re.escape(key)}:\s*(\S+)\s*$', re.MULTILINE)
    m = pat.search(text or '')
    return m.group(1).strip('\'"') if m else ''
