"""Shared VM resource sanity checks used by the create flow."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import ToolkitConfig

_SIZE_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([KMGT]?)i?B?\s*$', re.IGNORECASE)
_SIZE_SCALE = {'': 1 / 1024**3, 'K': 1 / 1024**2, 'M': 1 / 1024, 'G': 1, 'T': 1024}


def host_mem_total_mb() -> int | None:
    try:
        text = Path('/proc/meminfo').read_text(encoding='utf-8', errors='ignore')
    except OSError:
        return None
    for line in text.splitlines():
        if line.startswith('MemTotal:'):
            parts = line.split()
            if len(parts) >= 2 and parts[1].isdigit():
                return int(parts[1]) // 1024
    return None


def host_cpu_count() -> int | None:
    count = os.cpu_count()
    return int(count) if count else None


def host_free_disk_gb(path: Path) -> float | None:
    # Walk up to the nearest existing ancestor; base_dir may not exist yet.
    path = Path(path)
    while not path.exists() and path != path.parent:
        path = path.parent
    try:
        stat = os.statvfs(str(path))
    except OSError:
        return None
    return int(stat.f_bavail) * int(stat.f_frsize) / (1024**3)


def parse_size_gb(text: str) -> float | None:
    """Parse a qemu-img style size such as ``60G`` or ``512M`` into GiB."""
    m = _SIZE_RE.match(str(text or ''))
    if not m:
        return None
    return float(m.group(1)) * _SIZE_SCALE[m.group(2).upper()]


def vm_resource_warning_lines(cfg: 'ToolkitConfig') -> list[str]:
    warnings: list[str] = []
    mem_total_mb = host_mem_total_mb()
    if mem_total_mb is not None and cfg.vm.memory_mb > int(mem_total_mb * 0.8):
        warnings.append(
            'Requested VM memory is large relative to host total memory: '
            f'requested={cfg.vm.memory_mb} MiB, MemTotal={mem_total_mb} MiB. '
            'Lower vm.memory_mb if the VM fails to start.'
        )
    cpu_count = host_cpu_count()
    if cpu_count is not None and cfg.vm.vcpus > cpu_count:
        warnings.append(
            'Requested VM CPUs exceed host CPU count: '
            f'requested={cfg.vm.vcpus}, host_cpus={cpu_count}.'
        )
    disk_gb = parse_size_gb(cfg.vm.disk_size)
    free_gb = host_free_disk_gb(Path(cfg.paths.base_dir).expanduser())
    if disk_gb is not None and free_gb is not None and disk_gb > free_gb * 0.9:
        warnings.append(
            'Requested VM disk may outgrow free space at base_dir: '
            f'requested={cfg.vm.disk_size}, free≈{free_gb:.1f} GiB '
            f'(base_dir={cfg.paths.base_dir}). The overlay is sparse, so '
            'this only matters once the guest fills it.'
        )
    return warnings
