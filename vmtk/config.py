"""Toolkit configuration with an explicit precedence chain.

Every setting is looked up over an ordered list of named sources:
explicit overrides, then ``VM_*`` environment variables, then the user
TOML config file, then built-in defaults. The source that supplied each
value is remembered in :attr:`ToolkitConfig.provenance`.
"""

from __future__ import annotations

import os
import sys
import tomllib
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

import ubelt as ub
from loguru import logger

from .detect import default_vcpus, detect_ssh_identity, detect_username
from .errors import ConfigError
from .resource_checks import host_cpu_count
from .util import atomic_write_text, expand

log = logger

DEFAULT_KEEP_ITEMS = ['.ssh', '.gitconfig', '.config/gh']
DNS_PREFERENCES = ('dig-first', 'system-first', 'dig-only', 'system-only')
NETWORK_MODES = ('bridge', 'vmnet-bridged', 'user')


@dataclass
class VMConfig:
    username: str = ''
    ssh_pubkey_path: str = ''
    ssh_identity_file: str = ''
    disk_size: str = '60G'
    memory_mb: int = 16384
    vcpus: int = 0
    architecture: str = 'x86_64'
    os_name: str = 'ubuntu'
    os_version: str = 'noble'
    stop_timeout_sec: int = 30


@dataclass
class PathsConfig:
    project_dir: str = ''
    base_dir: str = ''
    cache_dir: str = ''
    registry_file: str = ''
    hosts_file: str = '/etc/hosts'


@dataclass
class NetworkConfig:
    mode: str = 'vmnet-bridged' if sys.platform == 'darwin' else 'bridge'
    bridge: str = 'en0' if sys.platform == 'darwin' else 'br0'
    dns_preference: str = 'system-first'
    probe_timeout: float = 1.0
    arp_timeout: float = 2.0
    console_tail_lines: int = 400


@dataclass
class StartConfig:
    wait_for_ip: bool = True
    wait_for_ip_timeout: int = 120
    hosts_sync_on_start: bool = True
    use_sudo: bool = sys.platform == 'darwin'


@dataclass
class ResetConfig:
    keep_items: list[str] = field(default_factory=lambda: list(DEFAULT_KEEP_ITEMS))
    keep_list_file: str = ''
    running_wait_attempts: int = 30
    running_wait_interval: float = 10.0
    ssh_wait_attempts: int = 20
    ssh_wait_interval: float = 10.0
    provision_wait_attempts: int = 30
    provision_wait_interval: float = 10.0
    remote_timeout: int = 600


SECTIONS = ('vm', 'paths', 'network', 'start', 'reset')


@dataclass
class ToolkitConfig:
    vm: VMConfig = field(default_factory=VMConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    start: StartConfig = field(default_factory=StartConfig)
    reset: ResetConfig = field(default_factory=ResetConfig)
    verbosity: int = 1
    provenance: dict[str, str] = field(
        default_factory=dict, repr=False, compare=False
    )

    def expanded_paths(self) -> 'ToolkitConfig':
        """Expand ``~``/``$VARS`` and derive the project-relative paths."""
        p = self.paths
        p.project_dir = expand(p.project_dir) if p.project_dir else ''
        if not p.project_dir:
            p.project_dir = os.fspath(ub.Path.appdir('vmtk', type='data'))
        p.base_dir = expand(p.base_dir) if p.base_dir else os.path.join(p.project_dir, 'vms')
        p.cache_dir = expand(p.cache_dir) if p.cache_dir else os.path.join(p.project_dir, '.cache')
        p.registry_file = (
            expand(p.registry_file)
            if p.registry_file
            else os.path.join(p.project_dir, '.vm-registry.json')
        )
        p.hosts_file = expand(p.hosts_file)
        v = self.vm
        v.ssh_pubkey_path = expand(v.ssh_pubkey_path) if v.ssh_pubkey_path else ''
        v.ssh_identity_file = expand(v.ssh_identity_file) if v.ssh_identity_file else ''
        if self.reset.keep_list_file:
            self.reset.keep_list_file = expand(self.reset.keep_list_file)
        return self

    def validate(self) -> 'ToolkitConfig':
        if self.network.dns_preference not in DNS_PREFERENCES:
            raise ConfigError(
                f'network.dns_preference must be one of {", ".join(DNS_PREFERENCES)} '
                f'(got {self.network.dns_preference!r})'
            )
        if self.network.mode not in NETWORK_MODES:
            raise ConfigError(
                f'network.mode must be one of {", ".join(NETWORK_MODES)} '
                f'(got {self.network.mode!r})'
            )
        if self.vm.memory_mb <= 0 or self.vm.vcpus <= 0:
            raise ConfigError('vm.memory_mb and vm.vcpus must be positive')
        return self


# Environment variable names, kept compatible with the shell toolkit.
ENV_KEYS: dict[str, str] = {
    'vm.username': 'VM_USERNAME',
    'vm.ssh_pubkey_path': 'VM_SSH_KEY',
    'vm.ssh_identity_file': 'VM_SSH_IDENTITY',
    'vm.disk_size': 'VM_DISK_SIZE',
    'vm.memory_mb': 'VM_MEM_MB',
    'vm.vcpus': 'VM_VCPUS',
    'vm.architecture': 'VM_ARCH',
    'vm.os_name': 'VM_OS',
    'vm.os_version': 'VM_OS_VERSION',
    'vm.stop_timeout_sec': 'VM_TIMEOUT',
    'paths.project_dir': 'VM_PROJECT_DIR',
    'paths.base_dir': 'VM_BASE_DIR',
    'paths.cache_dir': 'VM_IMAGE_CACHE',
    'paths.registry_file': 'VM_REGISTRY',
    'paths.hosts_file': 'VM_HOSTS_FILE',
    'network.mode': 'VM_NET_MODE',
    'network.bridge': 'VM_BRIDGE_IF',
    'network.dns_preference': 'VM_DNS_PREFERENCE',
    'network.probe_timeout': 'VM_PROBE_TIMEOUT',
    'start.wait_for_ip': 'VM_START_WAIT_FOR_IP',
    'start.hosts_sync_on_start': 'VM_HOSTS_SYNC_ON_START',
    'reset.keep_list_file': 'VM_KEEP_LIST_FILE',
    'verbosity': 'VM_VERBOSITY',
}


@dataclass(frozen=True)
class ConfigSource:
    """A named, flat mapping of dotted keys (``vm.memory_mb``) to values."""

    name: str
    values: Mapping[str, Any]

    def lookup(self, key: str) -> tuple[bool, Any]:
        if key in self.values:
            return True, self.values[key]
        return False, None


def flatten(raw: Mapping[str, Any]) -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        if key in SECTIONS and isinstance(value, Mapping):
            for sub, sub_value in value.items():
                flat[f'{key}.{sub}'] = sub_value
        else:
            flat[key] = value
    return flat


def env_source(environ: Mapping[str, str] | None = None) -> ConfigSource:
    environ = os.environ if environ is None else environ
    values = {
        key: environ[var]
        for key, var in ENV_KEYS.items()
        if environ.get(var, '') != ''
    }
    if 'reset.keep_list_file' not in values and environ.get('VM_PRESERVE_LIST_FILE'):
        values['reset.keep_list_file'] = environ['VM_PRESERVE_LIST_FILE']
    return ConfigSource('env', values)


def user_config_path(environ: Mapping[str, str] | None = None) -> Path:
    environ = os.environ if environ is None else environ
    if environ.get('VM_CONFIG_FILE'):
        return Path(expand(environ['VM_CONFIG_FILE']))
    return Path(ub.Path.appdir('vmtk', type='config')) / 'config.toml'


def file_source(path: Path) -> ConfigSource:
    if not path.exists():
        return ConfigSource(f'file:{path}', {})
    try:
        raw = tomllib.loads(path.read_text(encoding='utf-8'))
    except tomllib.TOMLDecodeError as ex:
        raise ConfigError(f'Invalid config file {path}: {ex}') from ex
    return ConfigSource(f'file:{path}', flatten(raw))


def default_source() -> ConfigSource:
    base = flatten(asdict(ToolkitConfig()))
    base.pop('provenance', None)
    ident, pub = detect_ssh_identity()
    base['vm.username'] = detect_username()
    base['vm.ssh_identity_file'] = ident
    base['vm.ssh_pubkey_path'] = pub
    base['vm.vcpus'] = default_vcpus(host_cpu_count())
    return ConfigSource('default', base)


def _coerce(key: str, value: Any, like: Any) -> Any:
    try:
        if isinstance(like, bool):
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in {'1', 'true', 'yes', 'on'}:
                return True
            if text in {'0', 'false', 'no', 'off', ''}:
                return False
            raise ValueError(text)
        if isinstance(like, int):
            return int(value)
        if isinstance(like, float):
            return float(value)
        if isinstance(like, list):
            if isinstance(value, str):
                return [v.strip() for v in value.split(',') if v.strip()]
            return [str(v) for v in value]
        return str(value)
    except (TypeError, ValueError):
        raise ConfigError(f'Invalid value for {key}: {value!r}') from None


def resolve_config(
    overrides: Mapping[str, Any] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    config_file: Path | str | None = None,
    sources: list[ConfigSource] | None = None,
) -> ToolkitConfig:
    """
    Build a config from the precedence chain.

    Args:
        overrides: explicit values, either flat dotted keys or nested
            ``{'vm': {...}}`` sections; ``None`` values are ignored.
        environ: environment mapping (default: ``os.environ``).
        config_file: user TOML file (default: :func:`user_config_path`).
        sources: replace the whole chain (mostly for tests).

    Example:
        >>> from vmtk.config import ConfigSource, resolve_config
        >>> cfg = resolve_config(sources=[
        ...     ConfigSource('explicit', {'vm.memory_mb': 2048}),
        ...     ConfigSource('env', {'vm.memory_mb': '4096', 'vm.vcpus': '3'}),
        ...     ConfigSource('default', {'vm.vcpus': 2}),
        ... ])
        >>> cfg.vm.memory_mb, cfg.vm.vcpus, cfg.provenance['vm.vcpus']
        (2048, 3, 'env')
    """
    if sources is None:
        explicit = {
            k: v for k, v in flatten(dict(overrides or {})).items() if v is not None
        }
        path = Path(config_file) if config_file else user_config_path(environ)
        sources = [
            ConfigSource('explicit', explicit),
            env_source(environ),
            file_source(path),
            default_source(),
        ]
    cfg = ToolkitConfig()
    for section in SECTIONS:
        obj = getattr(cfg, section)
        for f in fields(obj):
            key = f'{section}.{f.name}'
            _apply(cfg, obj, f.name, key, sources)
    _apply(cfg, cfg, 'verbosity', 'verbosity', sources)
    log.debug('Resolved config provenance: {}', cfg.provenance)
    return cfg.expanded_paths()


def _apply(cfg: ToolkitConfig, obj: Any, attr: str, key: str, sources) -> None:
    like = getattr(obj, attr)
    for src in sources:
        found, value = src.lookup(key)
        if found:
            setattr(obj, attr, _coerce(key, value, like))
            cfg.provenance[key] = src.name
            return


def _toml_escape(s: str) -> str:
    return s.replace('\\', '\\\\').replace('"', '\\"')


def dump_toml(cfg: ToolkitConfig) -> str:
    d = asdict(cfg)
    d.pop('provenance', None)
    lines: list[str] = []
    for section, body in d.items():
        if isinstance(body, dict):
            lines.append(f'[{section}]')
            for k, v in body.items():
                if isinstance(v, bool):
                    lines.append(f'{k} = {"true" if v else "false"}')
                elif isinstance(v, (int, float)):
                    lines.append(f'{k} = {v}')
                elif isinstance(v, list):
                    parts = [f'"{_toml_escape(str(item))}"' for item in v]
                    lines.append(f'{k} = [{", ".join(parts)}]')
                else:
                    lines.append(f'{k} = "{_toml_escape(str(v))}"')
            lines.append('')
        elif section == 'verbosity' and body != 1:
            lines.append(f'{section} = {body}')
            lines.append('')
    return '\n'.join(lines).rstrip() + '\n'


def load(path: Path) -> ToolkitConfig:
    """Read a TOML config file on its own, without env or defaults."""
    return resolve_config(sources=[file_source(Path(path))])


def save(path: Path, cfg: ToolkitConfig) -> None:
    atomic_write_text(Path(path), dump_toml(cfg))


def find_keep_list_file(
    cfg: ToolkitConfig, environ: Mapping[str, str] | None = None
) -> Path | None:
    environ = os.environ if environ is None else environ
    candidates: list[str] = []
    if cfg.reset.keep_list_file:
        candidates.append(cfg.reset.keep_list_file)
    home = environ.get('HOME') or os.path.expanduser('~')
    candidates += [
        os.path.join(home, '.vm-toolkit-keep.list'),
        os.path.join(home, '.vm-toolkit-preserve.list'),
    ]
    if cfg.paths.project_dir:
        candidates += [
            os.path.join(cfg.paths.project_dir, 'keep.list'),
            os.path.join(cfg.paths.project_dir, 'preserve.list'),
        ]
    for cand in candidates:
        path = Path(cand)
        if path.is_file():
            return path
    return None


def parse_keep_list(text: str) -> list[str]:
    items: list[str] = []
    for raw in text.splitlines():
        line = raw.split('#', 1)[0].strip()
        if line and line not in items:
            items.append(line)
    return items


def load_keep_items(
    cfg: ToolkitConfig, environ: Mapping[str, str] | None = None
) -> list[str]:
    """Items under the guest home to carry across a reset."""
    path = find_keep_list_file(cfg, environ)
    if path is not None:
        items = parse_keep_list(path.read_text(encoding='utf-8'))
        log.debug('Using keep list {} ({} items)', path, len(items))
        if items:
            return items
        log.warning('Keep list {} is empty; using defaults', path)
    return list(cfg.reset.keep_items) or list(DEFAULT_KEEP_ITEMS)
