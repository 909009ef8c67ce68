"""Cloud-init NoCloud seed generation and identity rewriting."""

from __future__ import annotations

import re
from pathlib import Path

from loguru import logger

from ..errors import ConfigError
from ..host import seed_tool
from ..layout import VMPaths
from ..util import ensure_dir, run_cmd

log = logger


def render_user_data(
    *, hostname: str, username: str, pubkey: str, password: str
) -> str:
    if ':' in password or '\n' in password:
        raise ConfigError(
            "VM password must not contain ':' or newlines (cloud-init chpasswd format)."
        )
    return f"""#cloud-config
hostname: {hostname}
manage_etc_hosts: true

users:
  - name: {username}
    groups: [sudo]
    shell: /bin/bash
    sudo: ["ALL=(ALL) NOPASSWD:ALL"]
    lock_passwd: false
    ssh_authorized_keys:
      - {pubkey}

chpasswd:
  expire: false
  users:
    - name: {username}
      password: {password}
      type: text

ssh_pwauth: true
disable_root: true

packages:
  - openssh-server
  - avahi-daemon

runcmd:
  - systemctl enable --now ssh || systemctl enable --now sshd || true
  - systemctl enable --now avahi-daemon || true
"""


def render_meta_data(*, instance_id: str, hostname: str) -> str:
    return f'instance-id: {instance_id}\nlocal-hostname: {hostname}\n'


def write_cloud_init(
    paths: VMPaths,
    *,
    hostname: str,
    username: str,
    pubkey: str,
    password: str,
    instance_id: str,
) -> None:
    ensure_dir(paths.cloud_init_dir)
    paths.user_data.write_text(
        render_user_data(
            hostname=hostname, username=username, pubkey=pubkey, password=password
        ),
        encoding='utf-8',
    )
    write_instance_id(paths, instance_id, hostname=hostname)


def write_instance_id(paths: VMPaths, instance_id: str, *, hostname: str) -> None:
    """Record a new instance-id; cloud-init re-provisions on the next boot."""
    ensure_dir(paths.cloud_init_dir)
    paths.meta_data.write_text(
        render_meta_data(instance_id=instance_id, hostname=hostname),
        encoding='utf-8',
    )
    paths.instance_id_file.write_text(instance_id + '\n', encoding='utf-8')


def rewrite_identity(
    text: str, *, old_name: str, new_name: str, old_user: str = '', new_user: str = ''
) -> str:
    """Rename the host (and optionally the user) inside user-data/meta-data text."""
    text = re.sub(
        rf'^(\s*(?:local-)?hostname:\s*){re.escape(old_name)}\s*$',
        rf'\g<1>{new_name}',
        text,
        flags=re.MULTILINE,
    )
    if old_user and new_user and old_user != new_user:
        text = re.sub(
            rf'^(\s*-?\s*name:\s*){re.escape(old_user)}\s*$',
            rf'\g<1>{new_user}',
            text,
            flags=re.MULTILINE,
        )
        text = re.sub(
            rf'^(\s*password:\s*){re.escape(old_user)}-pw\s*$',
            rf'\g<1>{new_user}-pw',
            text,
            flags=re.MULTILINE,
        )
    return text


def build_seed_iso(paths: VMPaths) -> Path:
    tool = seed_tool()
    if tool is None:
        raise ConfigError('No seed ISO tool found (cloud-localds, mkisofs, genisoimage or xorriso)')
    out = paths.seed_iso
    if tool == 'cloud-localds':
        cmd = ['cloud-localds', str(out), str(paths.user_data), str(paths.meta_data)]
    else:
        prefix = ['xorriso', '-as', 'mkisofs'] if tool == 'xorriso' else [tool]
        cmd = [
            *prefix,
            '-output', str(out),
            '-volid', 'cidata',
            '-joliet', '-rock',
            str(paths.user_data),
            str(paths.meta_data),
        ]
    run_cmd(cmd, check=True, capture=True)
    log.debug('Built seed ISO {} with {}', out, tool)
    return out
