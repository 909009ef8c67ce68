"""VM lifecycle operation exports."""

from __future__ import annotations

from .lifecycle import (
    build_qemu_cmd,
    create_vm,
    destroy_vm,
    fetch_image,
    live_state,
    pause_vm,
    reprovision,
    resume_vm,
    start_vm,
    stop_vm,
    wait_for_status,
)

__all__ = [
    'build_qemu_cmd',
    'create_vm',
    'destroy_vm',
    'fetch_image',
    'live_state',
    'pause_vm',
    'reprovision',
    'resume_vm',
    'start_vm',
    'stop_vm',
    'wait_for_status',
]
