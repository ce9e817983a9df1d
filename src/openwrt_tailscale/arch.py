"""CPU architecture detection.

Maps the kernel machine identifier (``uname -m``) to the architecture tag
used in release asset names.
"""

from __future__ import annotations

import platform
from enum import StrEnum

from openwrt_tailscale.logging import get_logger

log = get_logger("openwrt_tailscale.arch")


class Architecture(StrEnum):
    """Architecture tags used in release asset names."""

    AMD64 = "amd64"
    ARM64 = "arm64"
    ARM = "arm"
    MIPS = "mips"
    MIPSLE = "mipsle"
    UNKNOWN = "unknown"


def classify_machine(machine: str) -> Architecture:
    """Return the architecture tag for a raw machine identifier."""
    if machine == "x86_64":
        return Architecture.AMD64
    if machine == "aarch64" or machine.startswith("armv8"):
        return Architecture.ARM64
    if machine.startswith("arm"):
        return Architecture.ARM
    if machine == "mips":
        return Architecture.MIPS
    if machine == "mipsel":
        return Architecture.MIPSLE
    return Architecture.UNKNOWN


class ArchitectureDetector:
    """Detects the host architecture.

    The machine identifier is read from :func:`platform.machine` unless one
    is supplied, which keeps detection side-effect free and testable.
    """

    def __init__(self, machine: str | None = None) -> None:
        self._machine = machine

    @property
    def machine(self) -> str:
        return self._machine if self._machine is not None else platform.machine()

    def detect(self) -> Architecture:
        machine = self.machine
        arch = classify_machine(machine)
        log.debug("arch_detected", machine=machine, arch=arch.value)
        return arch
