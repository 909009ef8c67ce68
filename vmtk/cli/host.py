from __future__ import annotations

import json
import os
from pathlib import Path

import scriptconfig as scfg

from ..arch import host_architecture, native_accel
from ..host import check_commands
from ..hosts import sync_hosts
from ..registry import registry_stats, sync_registry
from ..resource_checks import vm_resource_warning_lines
from ..status import status_line
from ._common import _BaseCommand, _confirm_sudo_block, _load_cfg


class DoctorCLI(_BaseCommand):
    """Check host prerequisites and list missing required tools."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        missing, missing_opt = check_commands(cfg.vm.architecture)
        print(status_line(True, 'Host arch', f'{host_architecture().value} (accel={native_accel()})'))
        print(status_line(not missing, 'Required commands', ', '.join(missing) or 'all present'))
        print(status_line(
            None if missing_opt else True,
            'Optional commands',
            ', '.join(missing_opt) or 'all present',
        ))
        for line in vm_resource_warning_lines(cfg):
            print(status_line(None, 'Resources', line))
        stats = registry_stats(Path(cfg.paths.registry_file))
        print(status_line(True, 'Registry', f'{stats["vm_count"]} VM(s) in {stats["file"]}'))
        return 2 if missing else 0


class HostsSyncCLI(_BaseCommand):
    """Map VM names to their current IPs in the hosts file."""

    names = scfg.Value('', help='Comma separated VM names (default: all VMs).')
    apply = scfg.Value(
        False, isflag=True, help='Write the file; otherwise print a dry run.'
    )
    file = scfg.Value(None, help='Hosts file to update (default: paths.hosts_file).')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        names = [n.strip() for n in str(args.names or '').split(',') if n.strip()]
        path = Path(args.file or cfg.paths.hosts_file)
        if args.apply and not _writable(path):
            _confirm_sudo_block(yes=bool(args.yes), purpose=f'Rewrite {path} via sudo tee.')
        result = sync_hosts(cfg, names or None, apply=bool(args.apply), path=path)
        for name, ip in sorted(result.mappings.items()):
            print(f'{ip}\t{name}')
        if result.skipped:
            print(f'Skipped (no IP): {", ".join(result.skipped)}')
        if not args.apply:
            print('Dry run; pass --apply to write ' + str(path))
        elif result.applied:
            print(f'Updated {path}')
        else:
            print(f'{path} already up to date')
        return 0


def _writable(path: Path) -> bool:
    if path.exists():
        return os.access(path, os.W_OK)
    return os.access(path.parent, os.W_OK)


class SyncCLI(_BaseCommand):
    """Reconcile the registry with the VM directories on disk."""

    as_json = scfg.Value(
        False, isflag=True, alias=['json'], help='Print the result as JSON.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        result = sync_registry(Path(cfg.paths.registry_file), cfg)
        if args.as_json:
            print(json.dumps(result.as_dict(), indent=2))
            return 0
        for name in result.removed:
            print(f'Removed stale entry: {name}')
        for name in result.added:
            print(f'Registered from disk: {name}')
        if not result.changed:
            print('Registry already in sync.')
        return 0
