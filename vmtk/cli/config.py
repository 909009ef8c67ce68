from __future__ import annotations

import sys
from dataclasses import asdict
from pathlib import Path

import scriptconfig as scfg

from ..config import (
    default_source,
    dump_toml,
    env_source,
    flatten,
    resolve_config,
    save,
    user_config_path,
)
from ._common import _BaseCommand, _load_cfg, log


def _cfg_path(config_opt: str | None) -> Path:
    return Path(config_opt) if config_opt else user_config_path()


class ConfigInitCLI(_BaseCommand):
    """Write a config file populated with detected defaults."""

    force = scfg.Value(
        False,
        isflag=True,
        help='Overwrite an existing config file.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = _cfg_path(args.config)
        if path.exists() and not args.force:
            print(f'Config file already exists: {path}', file=sys.stderr)
            print('Use --force to overwrite it.', file=sys.stderr)
            return 2
        # Existing file content is not carried over.
        cfg = resolve_config(sources=[env_source(), default_source()]).validate()
        path.parent.mkdir(parents=True, exist_ok=True)
        save(path, cfg)
        log.info('Wrote config to {}', path)
        print(f'Wrote config: {path}')
        return 0


class ConfigShowCLI(_BaseCommand):
    """Show the resolved config, optionally with where each value came from."""

    provenance = scfg.Value(
        False,
        isflag=True,
        help='Annotate each key with its source (explicit, env, file, default).',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        if not args.provenance:
            print(dump_toml(cfg), end='')
            return 0
        flat = flatten(asdict(cfg))
        flat.pop('provenance', None)
        width = max(len(k) for k in flat)
        for key, value in flat.items():
            src = cfg.provenance.get(key, 'default')
            print(f'{key.ljust(width)} = {value!r}  # {src}')
        return 0


class ConfigPathCLI(_BaseCommand):
    """Print the config file path in use."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = _cfg_path(args.config)
        print(path)
        return 0 if path.exists() else 1


class ConfigModalCLI(scfg.ModalCLI):
    """Config file management commands."""

    init = ConfigInitCLI
    show = ConfigShowCLI
    path = ConfigPathCLI
