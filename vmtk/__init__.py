"""Single-host QEMU VM manager with live status resolution."""

__version__ = '0.1.0'
