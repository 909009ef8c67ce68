"""Live status computation and rendering for human and JSON output."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from .config import ToolkitConfig
from .layout import VMTarget
from .process import process_uptime
from .qmp import is_paused
from .resolver import BatchSnapshot, BestIPResolver, ResolveMode

if TYPE_CHECKING:
    from .registry import VMRecord


class VMStatus(str, Enum):
    MISSING = 'missing'
    STOPPED = 'stopped'
    PAUSED = 'paused'
    INITIALIZING = 'initializing'
    BOOTING = 'booting'
    RUNNING = 'running'


LIVE_STATUSES = frozenset(
    {VMStatus.PAUSED, VMStatus.INITIALIZING, VMStatus.BOOTING, VMStatus.RUNNING}
)


@dataclass(frozen=True)
class VMState:
    name: str
    status: VMStatus
    pid: int | None = None
    ip: str | None = None
    ip_source: str | None = None
    ssh_status: str = 'unknown'
    uptime: str | None = None

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES


def compute_state(
    target: VMTarget,
    cfg: ToolkitConfig,
    *,
    mode: ResolveMode = ResolveMode.FULL,
    snapshot: BatchSnapshot | None = None,
    resolver: BestIPResolver | None = None,
    with_uptime: bool = True,
) -> VMState:
    """
    Compute the live state of one VM from scratch.

    The ladder is missing, stopped, paused, initializing, booting,
    running. Every probe degrades to absence; in particular a failed or
    slow QMP query never yields ``paused``.
    """
    if not target.paths.root.is_dir():
        return VMState(target.name, VMStatus.MISSING)
    if resolver is None:
        resolver = BestIPResolver(cfg, mode=mode, snapshot=snapshot)
    pid = resolver.live_pid(target)
    if pid is None:
        return VMState(target.name, VMStatus.STOPPED)
    uptime = process_uptime(pid) if with_uptime else None
    if is_paused(target.paths.qmp_socket, timeout=cfg.network.probe_timeout):
        return VMState(target.name, VMStatus.PAUSED, pid=pid, uptime=uptime)
    if resolver.mode is ResolveMode.BASIC:
        return VMState(target.name, VMStatus.RUNNING, pid=pid, uptime=uptime)
    res = resolver.resolve(target, pid)
    if res.ip is None:
        return VMState(target.name, VMStatus.INITIALIZING, pid=pid, uptime=uptime)
    if res.reachable:
        status, ssh = VMStatus.RUNNING, 'available'
    else:
        status, ssh = VMStatus.BOOTING, 'not_ready'
    return VMState(
        target.name,
        status,
        pid=pid,
        ip=res.ip,
        ip_source=res.source,
        ssh_status=ssh,
        uptime=uptime,
    )


def status_line(ok: bool | None, label: str, detail: str = '') -> str:
    icon = '✅' if ok is True else ('➖' if ok is None else '❌')
    suffix = f' - {detail}' if detail else ''
    return f'{icon} {label}{suffix}'


_STATUS_OK = {
    VMStatus.RUNNING: True,
    VMStatus.BOOTING: None,
    VMStatus.INITIALIZING: None,
    VMStatus.PAUSED: None,
    VMStatus.STOPPED: False,
    VMStatus.MISSING: False,
}


def ssh_command(username: str, ip: str | None) -> str:
    return f'ssh {username}@{ip}' if ip else '-'


def status_report(record: 'VMRecord', state: VMState) -> dict[str, Any]:
    return {
        'name': record.name,
        'status': state.status.value,
        'hostname': record.hostname,
        'username': record.username,
        'ip_address': state.ip,
        'ip_source': state.ip_source,
        'mac_address': record.mac_address,
        'pid': state.pid,
        'uptime': state.uptime,
        'ssh_status': state.ssh_status,
        'ssh_command': ssh_command(record.username, state.ip),
        'memory_mb': record.memory_mb,
        'vcpus': record.vcpus,
        'disk_size': record.disk_size,
        'os_version': record.os_version,
        'architecture': record.architecture,
        'directory': record.directory,
    }


def render_report(report: dict[str, Any]) -> str:
    status = VMStatus(report['status'])
    lines = [
        f'VM: {report["name"]}',
        status_line(_STATUS_OK[status], 'Status', status.value),
        status_line(
            True if report['ip_address'] else None,
            'IP address',
            f'{report["ip_address"]} (via {report["ip_source"]})'
            if report['ip_address']
            else 'none',
        ),
        status_line(
            {'available': True, 'not_ready': False}.get(report['ssh_status']),
            'SSH',
            report['ssh_status'],
        ),
        f'  Hostname:     {report["hostname"]}',
        f'  Username:     {report["username"]}',
        f'  MAC address:  {report["mac_address"]}',
        f'  PID:          {report["pid"] or "-"}',
        f'  Uptime:       {report["uptime"] or "-"}',
        f'  Resources:    {report["vcpus"]} vCPU, {report["memory_mb"]} MB, disk {report["disk_size"]}',
        f'  OS / arch:    {report["os_version"]} / {report["architecture"]}',
        f'  Directory:    {report["directory"]}',
    ]
    if report['ip_address']:
        lines.append(f'  SSH command:  {report["ssh_command"]}')
    return '\n'.join(lines)


TABLE_COLUMNS = [
    ('VM NAME', 'name'),
    ('STATUS', 'status'),
    ('IP ADDRESS', 'ip_address'),
    ('SSH COMMAND', 'ssh_command'),
    ('UPTIME', 'uptime'),
]


def render_table(reports: list[dict[str, Any]]) -> str:
    if not reports:
        return 'No VMs registered.'
    rows = [[h for h, _ in TABLE_COLUMNS]]
    for rep in reports:
        rows.append([str(rep.get(key) or '-') for _, key in TABLE_COLUMNS])
    widths = [max(len(r[i]) for r in rows) for i in range(len(TABLE_COLUMNS))]
    out = []
    for idx, row in enumerate(rows):
        out.append('  '.join(cell.ljust(w) for cell, w in zip(row, widths)).rstrip())
        if idx == 0:
            out.append('  '.join('-' * w for w in widths))
    return '\n'.join(out)


def summarize(reports: list[dict[str, Any]]) -> str:
    counts: dict[str, int] = {}
    for rep in reports:
        counts[rep['status']] = counts.get(rep['status'], 0) + 1
    parts = [f'{counts[s.value]} {s.value}' for s in VMStatus if s.value in counts]
    return f'Total: {len(reports)} VM(s)' + (f' ({", ".join(parts)})' if parts else '')
