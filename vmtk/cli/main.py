"""Top-level modal CLI wiring, argv normalization, and logging setup."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import scriptconfig as scfg
from loguru import logger

from ..config import env_source, file_source, resolve_config, user_config_path
from ..errors import VMToolkitError
from ..registry import list_vm_names, load_target, registry_stats, sync_registry
from ..resolver import BatchSnapshot, BestIPResolver, ResolveMode
from ..status import (
    compute_state,
    render_report,
    render_table,
    status_report,
    summarize,
)
from ._common import _BaseCommand, _load_cfg, log
from .config import ConfigModalCLI
from .host import DoctorCLI, HostsSyncCLI, SyncCLI
from .vm import (
    CloneCLI,
    CreateCLI,
    DestroyCLI,
    KeysCopyCLI,
    PauseCLI,
    ResetCheckCLI,
    ResetCLI,
    ResumeCLI,
    StartCLI,
    StopCLI,
)


def _collect_reports(cfg, names: list[str], mode: ResolveMode) -> list[dict]:
    """Status reports for ``names``; FAST mode shares one host snapshot."""
    snapshot = None
    if mode is ResolveMode.FAST and names:
        snapshot = BatchSnapshot.take(cfg)
    resolver = BestIPResolver(cfg, mode=mode, snapshot=snapshot)
    reports = []
    for name in names:
        try:
            record, target = load_target(cfg, name)
        except VMToolkitError as ex:
            log.warning('Skipping {}: {}', name, ex)
            continue
        state = compute_state(
            target, cfg, mode=mode, snapshot=snapshot, resolver=resolver
        )
        reports.append(status_report(record, state))
    return reports


class StatusCLI(_BaseCommand):
    """Show live status of one VM, or of every registered VM."""

    name = scfg.Value('', position=1, help='VM name (default: all VMs).')
    as_json = scfg.Value(
        False, isflag=True, alias=['json'], help='Print a JSON report.'
    )
    basic = scfg.Value(
        False, isflag=True, help='Process and QMP checks only; no IP resolution.'
    )
    fast = scfg.Value(
        False,
        isflag=True,
        help='Use cached neighbor and process tables; skip DNS and console probes.',
    )
    sync = scfg.Value(
        False, isflag=True, help='Reconcile the registry with VM directories first.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        mode = ResolveMode.FULL
        if args.basic:
            mode = ResolveMode.BASIC
        elif args.fast:
            mode = ResolveMode.FAST
        registry_file = Path(cfg.paths.registry_file)
        if args.sync:
            synced = sync_registry(registry_file, cfg)
            if synced.changed:
                log.info('Registry synced: removed={} added={}', synced.removed, synced.added)
        name = str(args.name or '').strip()
        if name:
            record, target = load_target(cfg, name)
            state = compute_state(target, cfg, mode=mode)
            report = status_report(record, state)
            if args.as_json:
                print(json.dumps(report, indent=2))
            else:
                print(render_report(report))
            return 0
        reports = _collect_reports(cfg, list_vm_names(registry_file), mode)
        if args.as_json:
            print(json.dumps(
                {'vms': reports, 'registry': registry_stats(registry_file)},
                indent=2,
            ))
            return 0
        if not reports:
            print('No VMs registered.')
        for idx, report in enumerate(reports):
            if idx:
                print('')
            print(render_report(report))
        return 0


class ListCLI(_BaseCommand):
    """Table of every registered VM with its status and address."""

    basic = scfg.Value(
        False, isflag=True, help='Skip IP resolution; show process state only.'
    )
    as_json = scfg.Value(
        False, isflag=True, alias=['json'], help='Print JSON instead of a table.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        registry_file = Path(cfg.paths.registry_file)
        mode = ResolveMode.BASIC if args.basic else ResolveMode.FAST
        reports = _collect_reports(cfg, list_vm_names(registry_file), mode)
        stats = registry_stats(registry_file)
        if args.as_json:
            print(json.dumps({'vms': reports, 'registry': stats}, indent=2))
            return 0
        print(render_table(reports))
        print('')
        print(summarize(reports))
        print(f'Registry: {stats["file"]} (updated {stats["updated"] or "never"})')
        return 0


class VMToolkitModalCLI(scfg.ModalCLI):
    """Single-host QEMU VM manager with live status resolution."""

    config = ConfigModalCLI
    doctor = DoctorCLI
    create = CreateCLI
    start = StartCLI
    stop = StopCLI
    pause = PauseCLI
    resume = ResumeCLI
    destroy = DestroyCLI
    clone = CloneCLI
    keys_copy = KeysCopyCLI
    reset = ResetCLI
    reset_check = ResetCheckCLI
    status = StatusCLI
    list = ListCLI
    hosts_sync = HostsSyncCLI
    sync = SyncCLI


def main(argv: list[str] | None = None) -> None:
    if argv is None:
        argv = sys.argv[1:]
    argv = _normalize_argv(argv)
    config_value = None
    if '--config' in argv:
        try:
            config_value = argv[argv.index('--config') + 1]
        except IndexError:
            pass
    try:
        path = Path(config_value) if config_value else user_config_path()
        verbosity = resolve_config(
            sources=[env_source(), file_source(path)]
        ).verbosity
    except VMToolkitError:
        verbosity = 1

    explicit_verbose = _count_verbose(argv)
    _setup_logging(explicit_verbose, verbosity)

    try:
        rc = VMToolkitModalCLI.main(argv=argv, _noexit=True)
    except Exception as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.error('Unhandled vmtk error: {}', ex)
        sys.exit(2)

    if any(flag in argv for flag in ('-h', '--help')):
        sys.exit(0)
    if isinstance(rc, int):
        sys.exit(rc)
    sys.exit(0)


def _setup_logging(args_verbose: int, cfg_verbosity: int) -> None:
    logger.remove()
    effective_verbosity = args_verbose if args_verbose > 0 else cfg_verbosity
    level = 'WARNING'
    if effective_verbosity == 1:
        level = 'INFO'
    elif effective_verbosity >= 2:
        level = 'DEBUG'
    colorize = sys.stderr.isatty() and os.getenv('NO_COLOR') is None
    logger.add(
        sys.stderr,
        level=level,
        colorize=colorize,
        format='<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>',
    )
    log.debug(
        'Logging configured at {} (effective_verbosity={}, colorize={})',
        level,
        effective_verbosity,
        colorize,
    )


_COMMAND_ALIASES = {
    'ls': 'list',
    'rm': 'destroy',
    'reset-check': 'reset_check',
    'hosts-sync': 'hosts_sync',
    'keys-copy': 'keys_copy',
    'registry-sync': 'sync',
}


def _normalize_argv(argv: list[str]) -> list[str]:
    """Normalize accepted hyphenated spellings to scriptconfig command names."""
    if not argv:
        return argv
    argv = [_COMMAND_ALIASES.get(argv[0], argv[0]), *argv[1:]]
    if argv[0] == 'init':
        return ['config', 'init', *argv[1:]]
    if argv[0] == 'hosts_sync':
        names, rest = [], []
        items = iter(argv[1:])
        for item in items:
            if item in ('--file', '--names', '--config'):
                rest += [item, next(items, '')]
            elif item.startswith('-'):
                rest.append(item)
            else:
                names.append(item)
        if names:
            return ['hosts_sync', *rest, '--names', ','.join(names)]
    return argv


def _count_verbose(argv: list[str]) -> int:
    count = 0
    for item in argv:
        if item == '--verbose':
            count += 1
        elif item.startswith('-') and not item.startswith('--'):
            short = item[1:]
            if short and set(short) <= {'v'}:
                count += len(short)
    return count
