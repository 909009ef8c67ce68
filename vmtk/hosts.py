"""Write VM name to best-IP mappings into a hosts file."""

from __future__ import annotations

import os
from pathlib import Path

from loguru import logger

from .config import ToolkitConfig
from .errors import VMToolkitError
from .registry import list_vm_names, load_target
from .resolver import BestIPResolver
from .results import HostsSyncResult
from .util import atomic_write_text, run_cmd

log = logger


def _names_on_line(line: str) -> list[str]:
    body = line.split('#', 1)[0].split()
    return body[1:]


def _drop_names(line: str, names: dict[str, str]) -> str:
    """``line`` without the names in ``names``; empty when none remain."""
    body, hash_, comment = line.rstrip('\r\n').partition('#')
    fields = body.split()
    rest = [n for n in fields[1:] if n not in names]
    if not rest:
        return ''
    ending = line[len(line.rstrip('\r\n')):]
    tail = f' #{comment}' if hash_ else ''
    return f'{fields[0]}\t{" ".join(rest)}{tail}{ending}'


def rewrite_hosts(text: str, mappings: dict[str, str]) -> str:
    """
    Replace the entries for ``mappings`` and leave every other line untouched.

    A managed name that shares a line with other names is removed from that
    line; the line itself is kept for the remaining names.

    Example:
        >>> from vmtk.hosts import rewrite_hosts
        >>> old = '127.0.0.1 localhost\\n10.0.0.4\\talpha\\n127.0.1.1 myhost alpha\\n'
        >>> rewrite_hosts(old, {'alpha': '10.0.0.9'})
        '127.0.0.1 localhost\\n127.0.1.1\\tmyhost\\n10.0.0.9\\talpha\\n'
    """
    if not mappings:
        return text
    kept = []
    for line in text.splitlines(keepends=True):
        if any(name in mappings for name in _names_on_line(line)):
            line = _drop_names(line, mappings)
        kept.append(line)
    out = ''.join(kept)
    if out and not out.endswith('\n'):
        out += '\n'
    for name in sorted(mappings):
        out += f'{mappings[name]}\t{name}\n'
    return out


def proposed_mappings(
    cfg: ToolkitConfig, names: list[str], resolver: BestIPResolver | None = None
) -> tuple[dict[str, str], list[str]]:
    """Current best IP of each VM; VMs without one are returned as skipped."""
    resolver = resolver or BestIPResolver(cfg)
    mappings: dict[str, str] = {}
    skipped: list[str] = []
    for name in names:
        try:
            _, target = load_target(cfg, name)
        except VMToolkitError as ex:
            log.warning('hosts-sync: skipping {}: {}', name, ex)
            skipped.append(name)
            continue
        res = resolver.resolve(target)
        if res.ip is None:
            log.info('hosts-sync: {} has no IP (not running or not on the network yet)', name)
            skipped.append(name)
        else:
            mappings[name] = res.ip
    return mappings, skipped


def write_hosts_file(path: Path, text: str) -> None:
    if os.access(path, os.W_OK) or (not path.exists() and os.access(path.parent, os.W_OK)):
        atomic_write_text(path, text, mode=0o644)
    else:
        run_cmd(['tee', str(path)], sudo=True, check=True, input_text=text)


def sync_hosts(
    cfg: ToolkitConfig,
    names: list[str] | None = None,
    *,
    apply: bool = False,
    path: str | Path | None = None,
    resolver: BestIPResolver | None = None,
) -> HostsSyncResult:
    """Compute (and with ``apply`` write) hosts entries for ``names`` or every VM."""
    hosts_path = Path(path or cfg.paths.hosts_file)
    if names is None:
        names = list_vm_names(Path(cfg.paths.registry_file))
    mappings, skipped = proposed_mappings(cfg, names, resolver)
    try:
        old = hosts_path.read_text(encoding='utf-8')
    except FileNotFoundError:
        old = ''
    new = rewrite_hosts(old, mappings)
    result = HostsSyncResult(
        mappings=mappings, skipped=skipped, changed=new != old, path=str(hosts_path)
    )
    for name, ip in sorted(mappings.items()):
        log.info('{} {}\t{}', 'UPDATE' if apply else 'DRYRUN:', ip, name)
    if apply and result.changed:
        write_hosts_file(hosts_path, new)
        result.applied = True
        log.info('Updated {} ({} entries)', hosts_path, len(mappings))
    return result
