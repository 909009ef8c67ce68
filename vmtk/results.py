"""Result dataclasses returned by reconcile and restore style operations."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class RegistrySyncResult:
    removed: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.removed or self.added)

    def as_dict(self) -> dict[str, list[str]]:
        return {'removed': list(self.removed), 'added': list(self.added)}


@dataclass
class VerifyResult:
    present: list[str] = field(default_factory=list)
    recopied: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, list[str]]:
        return {
            'present': list(self.present),
            'recopied': list(self.recopied),
            'missing': list(self.missing),
            'failed': list(self.failed),
        }


@dataclass
class HostsSyncResult:
    mappings: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    changed: bool = False
    applied: bool = False
    path: str = ''
