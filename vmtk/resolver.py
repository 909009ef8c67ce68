"""Best-IP resolution: merge the IP signals into one deterministic answer.

Candidates are gathered in a fixed order (ARP, then MAC-verified DNS,
then the serial console), deduplicated, and ranked by whether they accept
a TCP connection on port 22. Without a live emulator process there is
never an IP.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from loguru import logger

from . import signals
from .config import ToolkitConfig
from .layout import VMTarget
from .process import ProcessTable, find_vm_pid

log = logger

SSH_PORT = 22
_PROBE = object()


class ResolveMode(str, Enum):
    FULL = 'full'
    FAST = 'fast'
    BASIC = 'basic'


@dataclass(frozen=True)
class Candidate:
    ip: str
    source: str


@dataclass(frozen=True)
class Resolution:
    ip: str | None = None
    source: str | None = None
    reachable: bool | None = None
    candidates: tuple[Candidate, ...] = ()

    @property
    def found(self) -> bool:
        return self.ip is not None


NO_IP = Resolution()


@dataclass
class BatchSnapshot:
    """Host tables read once and shared by every VM in a batch query."""

    neighbors: list[signals.NeighborEntry] = field(default_factory=list)
    processes: ProcessTable = field(default_factory=ProcessTable)

    @classmethod
    def take(cls, cfg: ToolkitConfig) -> 'BatchSnapshot':
        return cls(
            neighbors=signals.read_neighbor_table(timeout=cfg.network.arp_timeout),
            processes=ProcessTable.snapshot(),
        )


def _plausible(ip: str) -> bool:
    try:
        addr = ipaddress.IPv4Address(ip)
    except ValueError:
        return False
    return not (addr.is_loopback or addr.is_link_local)


class BestIPResolver:
    """
    Resolve the current best IP of a VM.

    Args:
        cfg: toolkit configuration (timeouts and DNS preference).
        mode: ``FULL`` uses every signal; ``FAST`` uses only the ARP table
            (from ``snapshot`` when given); ``BASIC`` does no IP work.
        snapshot: shared host tables for a batch of queries.
        port_probe: reachability check, ``(ip, port, timeout) -> bool``.

    Example:
        >>> from vmtk.config import ToolkitConfig
        >>> from vmtk.resolver import BestIPResolver, Candidate
        >>> resolver = BestIPResolver(ToolkitConfig(), port_probe=lambda ip, port, timeout: ip == '10.0.0.9')
        >>> resolver.rank([Candidate('10.0.0.5', 'arp'), Candidate('10.0.0.9', 'console')]).ip
        '10.0.0.9'
    """

    def __init__(
        self,
        cfg: ToolkitConfig,
        *,
        mode: ResolveMode = ResolveMode.FULL,
        snapshot: BatchSnapshot | None = None,
        port_probe: Callable[[str, int, float], bool] | None = None,
    ) -> None:
        self.cfg = cfg
        self.mode = ResolveMode(mode)
        self.snapshot = snapshot
        self.port_probe = port_probe or signals.tcp_port_open

    def _neighbors(self) -> list[signals.NeighborEntry]:
        if self.snapshot is not None:
            return self.snapshot.neighbors
        return signals.read_neighbor_table(timeout=self.cfg.network.arp_timeout)

    def live_pid(self, target: VMTarget) -> int | None:
        table = self.snapshot.processes if self.snapshot is not None else None
        return find_vm_pid(target.paths, target.mac, table=table)

    def collect(self, target: VMTarget) -> list[Candidate]:
        """Candidates in priority order, deduplicated and filtered."""
        net = self.cfg.network
        found: list[Candidate] = []
        for ip in signals.arp_ips_for_mac(self._neighbors(), target.mac):
            found.append(Candidate(ip, 'arp'))
        if self.mode is ResolveMode.FULL:
            for ip in signals.verified_dns_ips(
                target.hostname or target.name,
                target.mac,
                preference=net.dns_preference,
                timeout=net.probe_timeout,
                arp_timeout=net.arp_timeout,
            ):
                found.append(Candidate(ip, 'dns'))
            for ip in signals.console_candidate_ips(
                target.paths.console_log, net.console_tail_lines, mac=target.mac
            ):
                found.append(Candidate(ip, 'console'))
        seen: set[str] = set()
        merged = []
        for cand in found:
            if cand.ip in seen or not _plausible(cand.ip):
                continue
            seen.add(cand.ip)
            merged.append(cand)
        return merged

    def rank(self, candidates: list[Candidate]) -> Resolution:
        """First candidate answering on port 22, else the first candidate."""
        if not candidates:
            return NO_IP
        for cand in candidates:
            if self.port_probe(cand.ip, SSH_PORT, self.cfg.network.probe_timeout):
                return Resolution(cand.ip, cand.source, True, tuple(candidates))
        first = candidates[0]
        return Resolution(first.ip, first.source, False, tuple(candidates))

    def resolve(self, target: VMTarget, pid: object = _PROBE) -> Resolution:
        """
        Best IP for ``target``.

        ``pid`` may be passed when the caller already probed the process;
        ``None`` means "not running" and short-circuits to no IP.
        """
        if pid is _PROBE:
            pid = self.live_pid(target)
        if pid is None or self.mode is ResolveMode.BASIC:
            return NO_IP
        candidates = self.collect(target)
        result = self.rank(candidates)
        log.debug(
            'Resolved {} -> {} (source={}, reachable={}, candidates={})',
            target.name,
            result.ip,
            result.source,
            result.reachable,
            [f'{c.ip}/{c.source}' for c in candidates],
        )
        return result
