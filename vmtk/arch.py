"""Guest architecture table and host acceleration detection."""

from __future__ import annotations

import os
import platform
import sys
from dataclasses import dataclass, replace
from enum import Enum

from .errors import ConfigError


class Architecture(str, Enum):
    X86_64 = 'x86_64'
    ARM64 = 'arm64'
    I386 = 'i386'

    @classmethod
    def parse(cls, value: 'str | Architecture') -> 'Architecture':
        if isinstance(value, Architecture):
            return value
        key = str(value or '').strip().lower()
        try:
            return cls(_ALIASES.get(key, key))
        except ValueError:
            allowed = ', '.join(sorted({a.value for a in cls} | set(_ALIASES)))
            raise ConfigError(
                f'Unsupported architecture {value!r} (expected one of: {allowed})'
            ) from None


_ALIASES = {
    'amd64': 'x86_64',
    'aarch64': 'arm64',
    'x86': 'i386',
}


@dataclass(frozen=True)
class ArchProfile:
    binary: str
    machine: str
    accel: str
    cpu: str
    cloud_arch: str
    firmware: tuple[str, ...] = ()

    def find_firmware(self) -> str | None:
        for cand in self.firmware:
            if os.path.exists(cand):
                return cand
        return None


# Software-emulation defaults; native acceleration is layered on top.
ARCH_TABLE: dict[Architecture, ArchProfile] = {
    Architecture.X86_64: ArchProfile(
        binary='qemu-system-x86_64',
        machine='pc',
        accel='tcg',
        cpu='max',
        cloud_arch='amd64',
    ),
    Architecture.ARM64: ArchProfile(
        binary='qemu-system-aarch64',
        machine='virt',
        accel='tcg',
        cpu='cortex-a72',
        cloud_arch='arm64',
        firmware=(
            '/usr/share/qemu-efi-aarch64/QEMU_EFI.fd',
            '/usr/share/AAVMF/AAVMF_CODE.fd',
            '/opt/homebrew/share/qemu/edk2-aarch64-code.fd',
            '/usr/local/share/qemu/edk2-aarch64-code.fd',
        ),
    ),
    Architecture.I386: ArchProfile(
        binary='qemu-system-i386',
        machine='pc',
        accel='tcg',
        cpu='pentium3',
        cloud_arch='i386',
    ),
}


def host_architecture() -> Architecture | None:
    try:
        return Architecture.parse(platform.machine())
    except ConfigError:
        return None


def native_accel() -> str | None:
    """Return the hardware accelerator usable on this host, if any."""
    if sys.platform == 'darwin':
        return 'hvf'
    if sys.platform.startswith('linux') and os.access('/dev/kvm', os.R_OK | os.W_OK):
        return 'kvm'
    return None


def profile_for(
    arch: 'str | Architecture',
    *,
    host_arch: Architecture | None = None,
    accel: str | None = None,
) -> ArchProfile:
    """
    Look up the emulator profile for ``arch``.

    When the guest matches the host architecture and a native accelerator
    is available, the profile uses it with the ``host`` CPU model.

    Example:
        >>> from vmtk.arch import profile_for
        >>> profile_for('aarch64', host_arch=None).binary
        'qemu-system-aarch64'
    """
    arch = Architecture.parse(arch)
    base = ARCH_TABLE[arch]
    if host_arch is not None and host_arch == arch and accel:
        return replace(base, accel=accel, cpu='host')
    return base


def host_profile_for(arch: 'str | Architecture') -> ArchProfile:
    return profile_for(arch, host_arch=host_architecture(), accel=native_accel())


@dataclass(frozen=True)
class OSImage:
    url: str
    cache_name: str


OS_IMAGES: dict[str, str] = {
    'ubuntu': 'https://cloud-images.ubuntu.com/{version}/current/{version}-server-cloudimg-{arch}.img',
    'debian': 'https://cloud.debian.org/images/cloud/{version}/latest/debian-{version_num}-genericcloud-{arch}.qcow2',
}

_DEBIAN_NUMBERS = {'bullseye': '11', 'bookworm': '12', 'trixie': '13'}


def os_image_for(os_name: str, version: str, arch: 'str | Architecture') -> OSImage:
    key = str(os_name or '').strip().lower()
    if key not in OS_IMAGES:
        raise ConfigError(
            f'Unsupported OS {os_name!r} (expected one of: {", ".join(sorted(OS_IMAGES))})'
        )
    cloud_arch = ARCH_TABLE[Architecture.parse(arch)].cloud_arch
    if key == 'debian' and version not in _DEBIAN_NUMBERS:
        raise ConfigError(
            f'Unsupported debian version {version!r} (expected one of: {", ".join(_DEBIAN_NUMBERS)})'
        )
    url = OS_IMAGES[key].format(
        version=version,
        version_num=_DEBIAN_NUMBERS.get(version, version),
        arch=cloud_arch,
    )
    return OSImage(url=url, cache_name=f'{key}-{version}-{cloud_arch}.img')
