"""Tests for shared VM resource check helpers."""

from __future__ import annotations

import pytest

from vmtk.config import ToolkitConfig
from vmtk.resource_checks import parse_size_gb, vm_resource_warning_lines


@pytest.mark.parametrize(
    ('text', 'expected'),
    [('60G', 60.0), ('512M', 0.5), ('1T', 1024.0), ('2GiB', 2.0), ('huge', None)],
)
def test_parse_size_gb(text, expected) -> None:
    assert parse_size_gb(text) == expected


def test_warnings_for_oversized_vm(monkeypatch, tmp_path) -> None:
    cfg = ToolkitConfig()
    cfg.vm.memory_mb = 16384
    cfg.vm.vcpus = 16
    cfg.vm.disk_size = '500G'
    cfg.paths.base_dir = str(tmp_path / 'not-yet')
    monkeypatch.setattr('vmtk.resource_checks.host_mem_total_mb', lambda: 8192)
    monkeypatch.setattr('vmtk.resource_checks.host_cpu_count', lambda: 4)
    monkeypatch.setattr('vmtk.resource_checks.host_free_disk_gb', lambda p: 100.0)
    text = '\n'.join(vm_resource_warning_lines(cfg))
    assert 'MemTotal=8192' in text
    assert 'host_cpus=4' in text
    assert 'free space' in text


def test_no_warnings_for_modest_vm(monkeypatch, tmp_path) -> None:
    cfg = ToolkitConfig()
    cfg.vm.memory_mb = 1024
    cfg.vm.vcpus = 2
    cfg.vm.disk_size = '20G'
    cfg.paths.base_dir = str(tmp_path)
    monkeypatch.setattr('vmtk.resource_checks.host_mem_total_mb', lambda: 8192)
    monkeypatch.setattr('vmtk.resource_checks.host_cpu_count', lambda: 8)
    monkeypatch.setattr('vmtk.resource_checks.host_free_disk_gb', lambda p: 200.0)
    assert vm_resource_warning_lines(cfg) == []
