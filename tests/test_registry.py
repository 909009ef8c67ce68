from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest

from vmtk.errors import VMNotFoundError, VMToolkitError
from vmtk.layout import VMPaths
from vmtk.registry import (
    VMRecord,
    get_vm,
    list_vm_names,
    load_registry,
    load_target,
    register_vm,
    registry_stats,
    sync_registry,
    unregister_vm,
)


def test_registry_roundtrip(tmp_path: Path) -> None:
    fpath = tmp_path / 'reg.json'
    register_vm(fpath, VMRecord(name='vm-b', directory='/x/vm-b', memory_mb=1024))
    first = register_vm(fpath, VMRecord(name='vm-a', directory='/x/vm-a'))
    assert list_vm_names(fpath) == ['vm-a', 'vm-b']
    again = register_vm(fpath, VMRecord(name='vm-a', directory='/x/vm-a', vcpus=4))
    assert again.created == first.created
    assert get_vm(fpath, 'vm-a').vcpus == 4
    assert get_vm(fpath, 'vm-b').memory_mb == 1024
    doc = json.loads(fpath.read_text())
    assert list(doc['vms']) == ['vm-a', 'vm-b']
    assert registry_stats(fpath)['vm_count'] == 2


def test_unregister(tmp_path: Path) -> None:
    fpath = tmp_path / 'reg.json'
    register_vm(fpath, VMRecord(name='vm-a', directory='/x/vm-a'))
    assert unregister_vm(fpath, 'vm-a') is True
    assert unregister_vm(fpath, 'vm-a') is False
    assert list_vm_names(fpath) == []


def test_dynamic_keys_are_dropped(tmp_path: Path) -> None:
    fpath = tmp_path / 'reg.json'
    fpath.write_text(json.dumps({
        'version': '1.0',
        'vms': {
            'alpha': {
                'directory': '/x/alpha',
                'status': 'running',
                'ip_address': '192.168.1.50',
                'pid': 4321,
                'memory_mb': 4096,
            },
            '../bad': {'directory': '/x'},
        },
    }))
    reg = load_registry(fpath)
    assert list(reg.vms) == ['alpha']
    assert reg.vms['alpha'].memory_mb == 4096
    register_vm(fpath, VMRecord(name='beta', directory='/x/beta'))
    text = fpath.read_text()
    assert 'status' not in text
    assert 'ip_address' not in text


def test_invalid_json_is_reported(tmp_path: Path) -> None:
    fpath = tmp_path / 'reg.json'
    fpath.write_text('{nope')
    with pytest.raises(VMToolkitError, match='not valid JSON'):
        load_registry(fpath)


def test_sync_registry_removes_and_absorbs(cfg, make_vm) -> None:
    fpath = Path(cfg.paths.registry_file)
    gone = make_vm('gone')
    make_vm('kept')
    shutil.rmtree(gone.directory)
    orphan = VMPaths.for_vm(cfg.paths.base_dir, 'orphan')
    orphan.cloud_init_dir.mkdir(parents=True)
    orphan.disk.write_bytes(b'qcow')
    orphan.user_data.write_text('#cloud-config\nhostname: orphan-host\nusers:\n  - name: bob\n')
    orphan.mac_file.write_text('52:54:00:01:02:03\n')
    (Path(cfg.paths.base_dir) / 'not-a-vm').mkdir()

    result = sync_registry(fpath, cfg)
    assert result.removed == ['gone']
    assert result.added == ['orphan']
    rec = get_vm(fpath, 'orphan')
    assert rec.hostname == 'orphan-host'
    assert rec.username == 'bob'
    assert rec.mac_address == '52:54:00:01:02:03'
    assert not sync_registry(fpath, cfg).changed


def test_load_target_falls_back_to_directory(cfg, make_vm) -> None:
    with pytest.raises(VMNotFoundError):
        load_target(cfg, 'nobody')
    rec = make_vm('alpha')
    unregister_vm(Path(cfg.paths.registry_file), 'alpha')
    derived, target = load_target(cfg, 'alpha')
    assert derived.mac_address == rec.mac_address
    assert target.paths.root == Path(rec.directory)
