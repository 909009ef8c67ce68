from __future__ import annotations

from pathlib import Path

import pytest

from vmtk.config import ConfigSource, ToolkitConfig, resolve_config
from vmtk.layout import VMPaths, generate_mac
from vmtk.registry import VMRecord, register_vm


@pytest.fixture
def cfg(tmp_path: Path) -> ToolkitConfig:
    """A fully resolved config rooted in a temp project dir, no host probing."""
    pubkey = tmp_path / 'id_ed25519.pub'
    pubkey.write_text('ssh-ed25519 AAAATEST dev@host\n')
    source = ConfigSource(
        'default',
        {
            'vm.username': 'dev',
            'vm.vcpus': 2,
            'vm.memory_mb': 2048,
            'vm.ssh_pubkey_path': str(pubkey),
            'vm.ssh_identity_file': str(tmp_path / 'id_ed25519'),
            'paths.project_dir': str(tmp_path / 'proj'),
            'paths.hosts_file': str(tmp_path / 'hosts'),
            'network.mode': 'user',
            'start.use_sudo': False,
            'start.hosts_sync_on_start': False,
        },
    )
    return resolve_config(sources=[source]).validate()


@pytest.fixture
def make_vm(cfg: ToolkitConfig):
    """Create a registered VM directory with a disk file and MAC file."""

    def _make(name: str = 'alpha', *, mac: str | None = None, **fields) -> VMRecord:
        paths = VMPaths.for_vm(cfg.paths.base_dir, name)
        paths.root.mkdir(parents=True, exist_ok=True)
        paths.disk.write_bytes(b'qcow')
        paths.base_image.write_bytes(b'base')
        mac = mac or generate_mac(name)
        paths.mac_file.write_text(mac + '\n')
        record = VMRecord(
            name=name,
            directory=str(paths.root),
            hostname=name,
            username='dev',
            mac_address=mac,
            memory_mb=2048,
            vcpus=2,
            disk_size='20G',
            os_version='noble',
            **fields,
        )
        return register_vm(Path(cfg.paths.registry_file), record)

    return _make
