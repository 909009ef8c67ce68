"""Reset entry point for a single VM."""

from __future__ import annotations

from loguru import logger

from ..backup import BackupMode, BackupRestoreEngine, ResetContext
from ..config import ToolkitConfig

log = logger


def reset_vm(
    cfg: ToolkitConfig,
    name: str,
    *,
    mode: BackupMode = BackupMode.KEEP,
    reimage: bool = False,
    keep_items: list[str] | None = None,
    engine: BackupRestoreEngine | None = None,
) -> ResetContext:
    """
    Reprovision ``name`` and carry its keep items (or whole home) across.

    Returns the final pipeline context; non-fatal problems are listed in
    ``ctx.warnings`` rather than raised.
    """
    engine = engine or BackupRestoreEngine(cfg)
    ctx = engine.reset(name, mode=mode, reimage=reimage, keep_items=keep_items)
    if ctx.warnings:
        log.info('Reset of {} finished with {} warning(s)', name, len(ctx.warnings))
    return ctx
