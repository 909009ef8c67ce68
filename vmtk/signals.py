"""Independent, fallible IP discovery signals for a VM.

Each producer returns zero or more IPv4 candidates and never raises:
a timeout, a missing tool, or unparsable output is "signal absent".
"""

from __future__ import annotations

import collections
import ipaddress
import re
import socket
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from loguru import logger

from .util import run_cmd, which

log = logger

RFC1918 = tuple(
    ipaddress.ip_network(n) for n in ('10.0.0.0/8', '172.16.0.0/12', '192.168.0.0/16')
)
_IPV4_TOKEN = re.compile(r'(?<![\d.])(?:\d{1,3}\.){3}\d{1,3}(?!\.?\d)')
_MAC_TOKEN = re.compile(r'(?<![0-9A-Fa-f:-])[0-9A-Fa-f]{1,2}(?:[:-][0-9A-Fa-f]{1,2}){5}(?![0-9A-Fa-f:-])')
_ROUTE_WORDS = re.compile(r'\b(?:via|gateway|gw|router|route|nameserver|dns)\b', re.IGNORECASE)
_ROUTE_FLAGS = re.compile(r'\|\s*U[A-Z]*\s*\|')
_ARP_LINE = re.compile(r'\(([\d.]+)\) at ([0-9A-Fa-f:.-]+)')
_NEIGH_LINE = re.compile(r'^([\d.]+)\s.*\blladdr\s+([0-9A-Fa-f:.-]+)')


def normalize_mac(mac: str | None) -> str | None:
    """
    Canonical lowercase, zero-padded, colon separated MAC or ``None``.

    Example:
        >>> from vmtk.signals import normalize_mac
        >>> normalize_mac('52:54:0:8E:d3:f6')
        '52:54:00:8e:d3:f6'
        >>> normalize_mac('52:54:00:8e:d3:f6')
        '52:54:00:8e:d3:f6'
        >>> normalize_mac('<incomplete>') is None
        True
    """
    if not mac:
        return None
    parts = re.split(r'[:-]', mac.strip())
    if len(parts) != 6:
        return None
    try:
        octets = [int(p, 16) for p in parts]
    except ValueError:
        return None
    if any(not p or len(p) > 2 for p in parts) or any(o > 255 for o in octets):
        return None
    return ':'.join(f'{o:02x}' for o in octets)


def usable_ipv4(text: str) -> ipaddress.IPv4Address | None:
    """Parse ``text`` as a unicast host address a VM could plausibly hold."""
    try:
        ip = ipaddress.IPv4Address(text)
    except ValueError:
        return None
    if (
        ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
        or int(ip) >> 24 == 0
        or int(ip) & 0xFF == 0xFF
    ):
        return None
    return ip


def is_rfc1918(ip: str) -> bool:
    addr = ipaddress.IPv4Address(ip)
    return any(addr in net for net in RFC1918)


def _dedupe(items) -> list[str]:
    seen: set[str] = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


# --- ARP / neighbor table -------------------------------------------------


@dataclass(frozen=True)
class NeighborEntry:
    ip: str
    mac: str


def parse_neighbor_output(text: str) -> list[NeighborEntry]:
    """Parse ``ip neigh`` or ``arp -an`` output; MACs come out normalized."""
    entries = []
    for line in text.splitlines():
        line = line.strip()
        m = _NEIGH_LINE.match(line) or _ARP_LINE.search(line)
        if not m:
            continue
        mac = normalize_mac(m.group(2))
        if mac is None or mac == '00:00:00:00:00:00':
            continue
        try:
            ipaddress.IPv4Address(m.group(1))
        except ValueError:
            continue
        entries.append(NeighborEntry(m.group(1), mac))
    return entries


def _neighbor_cmd(ip: str | None = None) -> list[str] | None:
    if sys.platform.startswith('linux') and which('ip'):
        cmd = ['ip', '-4', 'neigh', 'show']
        return cmd + ['to', ip] if ip else cmd
    if which('arp'):
        return ['arp', '-n', ip] if ip else ['arp', '-an']
    return None


def read_neighbor_table(timeout: float = 2.0, ip: str | None = None) -> list[NeighborEntry]:
    cmd = _neighbor_cmd(ip)
    if cmd is None:
        log.debug('No ARP/neighbor tool available')
        return []
    res = run_cmd(cmd, check=False, capture=True, timeout=timeout)
    if res.code != 0:
        log.debug('Neighbor table read failed code={}: {}', res.code, res.stderr.strip())
        return []
    entries = parse_neighbor_output(res.stdout)
    if ip:
        entries = [e for e in entries if e.ip == ip]
    return entries


def arp_ips_for_mac(entries: list[NeighborEntry], mac: str) -> list[str]:
    want = normalize_mac(mac)
    if want is None:
        return []
    return _dedupe(e.ip for e in entries if e.mac == want)


def arp_mac_for_ip(ip: str, timeout: float = 2.0) -> str | None:
    for entry in read_neighbor_table(timeout=timeout, ip=ip):
        return entry.mac
    return None


def nudge_arp(ip: str, timeout: float = 0.5) -> None:
    """Provoke ARP resolution of ``ip`` with a throwaway connection attempt."""
    tcp_port_open(ip, 22, timeout=timeout)


# --- DNS -------------------------------------------------------------------


def _dig(name: str, timeout: float) -> list[str]:
    if which('dig') is None:
        return []
    cmd = ['dig', '+short', f'+time={max(1, int(timeout))}', '+tries=1']
    if name.endswith('.local'):
        cmd += ['-p', '5353', '@224.0.0.251']
    cmd += [name, 'A']
    res = run_cmd(cmd, check=False, capture=True, timeout=timeout + 1)
    if res.code != 0:
        return []
    return _dedupe(
        line.strip()
        for line in res.stdout.splitlines()
        if usable_ipv4(line.strip()) is not None
    )


def _system(name: str, timeout: float) -> list[str]:
    pool = ThreadPoolExecutor(max_workers=1)
    future = pool.submit(
        socket.getaddrinfo, name, None, socket.AF_INET, socket.SOCK_STREAM
    )
    try:
        infos = future.result(timeout=timeout)
    except TimeoutError:
        log.debug('System lookup of {} timed out after {}s', name, timeout)
        return []
    except (OSError, UnicodeError):
        return []
    finally:
        # A stalled resolver thread is abandoned, not joined.
        pool.shutdown(wait=False)
    return _dedupe(
        info[4][0] for info in infos if usable_ipv4(info[4][0]) is not None
    )


DNS_STRATEGIES: dict[str, Callable[[str, float], list[str]]] = {
    'dig': _dig,
    'system': _system,
}

DNS_ORDER = {
    'dig-first': ('dig', 'system'),
    'system-first': ('system', 'dig'),
    'dig-only': ('dig',),
    'system-only': ('system',),
}


def resolve_hostname(
    hostname: str, preference: str = 'system-first', timeout: float = 1.0
) -> list[str]:
    """Resolve ``hostname`` (and ``<hostname>.local`` when unqualified)."""
    if not hostname:
        return []
    names = [hostname] if '.' in hostname else [hostname, f'{hostname}.local']
    for name in names:
        for strategy in DNS_ORDER.get(preference, DNS_ORDER['system-first']):
            ips = DNS_STRATEGIES[strategy](name, timeout)
            if ips:
                log.debug('DNS {} via {} -> {}', name, strategy, ips)
                return ips
    return []


def verified_dns_ips(
    hostname: str,
    mac: str,
    *,
    preference: str = 'system-first',
    timeout: float = 1.0,
    arp_timeout: float = 2.0,
) -> list[str]:
    """DNS answers whose MAC a fresh ARP lookup confirms belongs to the VM."""
    want = normalize_mac(mac)
    if want is None:
        return []
    verified = []
    for ip in resolve_hostname(hostname, preference, timeout):
        nudge_arp(ip, timeout=min(timeout, 0.5))
        seen = arp_mac_for_ip(ip, timeout=arp_timeout)
        if seen == want:
            verified.append(ip)
        else:
            log.debug('Ignoring DNS answer {} for {} (arp mac={})', ip, hostname, seen)
    return verified


# --- Serial console ----------------------------------------------------------


def tail_lines(path: Path, n: int) -> list[str]:
    try:
        with open(path, 'r', encoding='utf-8', errors='replace') as file:
            return list(collections.deque(file, maxlen=n))
    except OSError as ex:
        log.debug('Cannot read console log {}: {}', path, ex)
        return []


def _route_line(line: str) -> bool:
    return bool(_ROUTE_FLAGS.search(line) or _ROUTE_WORDS.search(line))


def console_candidate_ips(
    log_path: Path, tail: int = 400, mac: str | None = None
) -> list[str]:
    """
    IPv4 addresses seen near the end of the serial console, RFC1918 first.

    Addresses on route-table, gateway or nameserver lines are never
    candidates. When ``mac`` is given and a line carrying that MAC (the
    cloud-init net-device table) lists an address, only such lines count.
    """
    want = normalize_mac(mac)
    excluded: set[str] = set()
    owned: list[str] = []
    found: list[str] = []
    for line in tail_lines(Path(log_path), tail):
        tokens = [t for t in _IPV4_TOKEN.findall(line) if usable_ipv4(t) is not None]
        if not tokens:
            continue
        if _route_line(line):
            excluded.update(tokens)
            continue
        found.extend(tokens)
        if want is not None and want in map(normalize_mac, _MAC_TOKEN.findall(line)):
            owned.extend(tokens)
    pool = owned if owned else found
    ordered = [ip for ip in _dedupe(pool) if ip not in excluded]
    # Stable sort: private first, otherwise first-seen order.
    return sorted(ordered, key=lambda ip: not is_rfc1918(ip))


# --- SSH reachability ----------------------------------------------------------


def tcp_port_open(ip: str, port: int = 22, timeout: float = 1.0) -> bool:
    try:
        with socket.create_connection((ip, port), timeout=timeout):
            return True
    except OSError:
        return False
