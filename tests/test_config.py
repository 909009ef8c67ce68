"""Tests for config precedence, coercion, and keep-list discovery."""

from __future__ import annotations

from pathlib import Path

import pytest

from vmtk.config import (
    DEFAULT_KEEP_ITEMS,
    ConfigSource,
    ToolkitConfig,
    dump_toml,
    env_source,
    find_keep_list_file,
    load,
    load_keep_items,
    parse_keep_list,
    resolve_config,
    save,
)
from vmtk.errors import ConfigError


def _defaults(**extra) -> ConfigSource:
    values = {'vm.username': 'dev', 'vm.vcpus': 2, 'paths.project_dir': '/tmp/vmtk-proj'}
    values.update(extra)
    return ConfigSource('default', values)


def test_dump_load_roundtrip(tmp_path: Path) -> None:
    cfg = ToolkitConfig()
    cfg.vm.username = 'my "user"'
    cfg.vm.memory_mb = 2048
    cfg.paths.project_dir = str(tmp_path / 'proj')
    cfg.reset.keep_items = ['.ssh', 'notes/"quoted".txt']
    cfg.start.wait_for_ip = False
    cfg.verbosity = 3
    fpath = tmp_path / 'config.toml'
    save(fpath, cfg)

    cfg2 = load(fpath)
    assert cfg2.vm.username == cfg.vm.username
    assert cfg2.vm.memory_mb == 2048
    assert cfg2.reset.keep_items == cfg.reset.keep_items
    assert cfg2.start.wait_for_ip is False
    assert cfg2.verbosity == 3
    assert cfg2.paths.base_dir == str(tmp_path / 'proj' / 'vms')


def test_dump_toml_verbosity_default_omitted() -> None:
    text = dump_toml(ToolkitConfig())
    assert 'verbosity =' not in text
    assert '[vm]' in text and '[reset]' in text


def test_precedence_explicit_env_file_default(tmp_path: Path) -> None:
    fpath = tmp_path / 'config.toml'
    fpath.write_text('[vm]\nmemory_mb = 1024\nvcpus = 6\ndisk_size = "20G"\n')
    environ = {'VM_MEM_MB': '4096', 'VM_VCPUS': '3', 'HOME': str(tmp_path)}
    cfg = resolve_config(
        sources=[
            ConfigSource('explicit', {'vm.memory_mb': 512}),
            env_source(environ),
            ConfigSource('file', {'vm.memory_mb': 1024, 'vm.vcpus': 6, 'vm.disk_size': '20G'}),
            _defaults(),
        ]
    )
    assert cfg.vm.memory_mb == 512
    assert cfg.vm.vcpus == 3
    assert cfg.vm.disk_size == '20G'
    assert cfg.vm.username == 'dev'
    assert cfg.provenance['vm.memory_mb'] == 'explicit'
    assert cfg.provenance['vm.vcpus'] == 'env'
    assert cfg.provenance['vm.disk_size'] == 'file'
    assert cfg.provenance['vm.username'] == 'default'


def test_resolve_config_reads_file_and_ignores_none_overrides(tmp_path, monkeypatch) -> None:
    fpath = tmp_path / 'config.toml'
    fpath.write_text('[network]\ndns_preference = "dig-first"\n')
    monkeypatch.setattr(
        'vmtk.config.default_source', lambda: _defaults(**{'vm.memory_mb': 8192})
    )
    cfg = resolve_config(
        {'vm.memory_mb': None, 'vm': {'disk_size': '10G'}},
        environ={},
        config_file=fpath,
    )
    assert cfg.network.dns_preference == 'dig-first'
    assert cfg.provenance['network.dns_preference'] == f'file:{fpath}'
    assert cfg.vm.memory_mb == 8192
    assert cfg.vm.disk_size == '10G'


def test_env_coercion_of_bools_and_lists() -> None:
    environ = {
        'VM_START_WAIT_FOR_IP': 'no',
        'VM_HOSTS_SYNC_ON_START': 'yes',
        'VM_PRESERVE_LIST_FILE': '/tmp/keep.list',
    }
    cfg = resolve_config(sources=[env_source(environ), _defaults()])
    assert cfg.start.wait_for_ip is False
    assert cfg.start.hosts_sync_on_start is True
    assert cfg.reset.keep_list_file == '/tmp/keep.list'


def test_invalid_env_value_is_config_error() -> None:
    with pytest.raises(ConfigError, match='vm.memory_mb'):
        resolve_config(sources=[env_source({'VM_MEM_MB': 'lots'}), _defaults()])


def test_invalid_toml_is_config_error(tmp_path: Path) -> None:
    fpath = tmp_path / 'config.toml'
    fpath.write_text('[vm\nmemory_mb = ')
    with pytest.raises(ConfigError, match='Invalid config file'):
        load(fpath)


def test_validate_rejects_unknown_dns_preference() -> None:
    cfg = resolve_config(sources=[_defaults(**{'network.dns_preference': 'magic'})])
    with pytest.raises(ConfigError, match='dns_preference'):
        cfg.validate()


def test_expanded_paths_expands_env(monkeypatch) -> None:
    monkeypatch.setenv('VMTK_TEST_DIR', '/tmp/vmtk-x')
    cfg = ToolkitConfig()
    cfg.paths.project_dir = '$VMTK_TEST_DIR/proj'
    cfg.vm.ssh_identity_file = '$VMTK_TEST_DIR/id_ed25519'
    out = cfg.expanded_paths()
    assert out.paths.project_dir == '/tmp/vmtk-x/proj'
    assert out.paths.registry_file == '/tmp/vmtk-x/proj/.vm-registry.json'
    assert out.paths.cache_dir == '/tmp/vmtk-x/proj/.cache'
    assert out.vm.ssh_identity_file == '/tmp/vmtk-x/id_ed25519'


def test_parse_keep_list_strips_comments_and_duplicates() -> None:
    text = '# header\n.ssh\n\n.gitconfig  # git\n.ssh\n  .config/gh \n'
    assert parse_keep_list(text) == ['.ssh', '.gitconfig', '.config/gh']


def test_keep_list_discovery_order(tmp_path: Path) -> None:
    home = tmp_path / 'home'
    home.mkdir()
    cfg = resolve_config(sources=[_defaults(**{'paths.project_dir': str(tmp_path)})])
    environ = {'HOME': str(home)}
    assert find_keep_list_file(cfg, environ) is None
    assert load_keep_items(cfg, environ) == DEFAULT_KEEP_ITEMS

    (tmp_path / 'keep.list').write_text('projects\n')
    assert find_keep_list_file(cfg, environ) == tmp_path / 'keep.list'

    (home / '.vm-toolkit-keep.list').write_text('.bashrc\n')
    assert load_keep_items(cfg, environ) == ['.bashrc']

    explicit = tmp_path / 'explicit.list'
    explicit.write_text('# nothing\n')
    cfg.reset.keep_list_file = str(explicit)
    # An empty list falls back to the configured items.
    assert load_keep_items(cfg, environ) == DEFAULT_KEEP_ITEMS
