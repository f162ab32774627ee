"""Host platform detection (OS, CPU architecture, libc variant)."""
from __future__ import annotations

import functools
import platform as _platform
from dataclasses import dataclass
from typing import Optional

_OS_ALIASES = {
    "linux": "linux",
    "darwin": "macos",
    "macos": "macos",
    "windows": "windows",
}

_ARCH_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
    "armv6l": "arm",
    "armv7l": "arm",
    "arm": "arm",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "i386": "x86",
    "i686": "x86",
    "x86": "x86",
}

# Rust style names used in target triples
_TRIPLE_ARCH = {
    "x86_64": "x86_64",
    "aarch64": "aarch64",
    "arm": "arm",
    "ppc64le": "powerpc64le",
    "s390x": "s390x",
    "x86": "i686",
}


@dataclass(frozen=True)
class Platform:
    """Normalized host description used to select archive assets."""

    os: str
    arch: str
    libc: Optional[str] = None

    @property
    def target_triple(self) -> str:
        arch = _TRIPLE_ARCH.get(self.arch, self.arch)
        if self.os == "macos":
            return f"{arch}-apple-darwin"
        if self.os == "windows":
            return f"{arch}-pc-windows-msvc"
        libc = self.libc or "gnu"
        if self.arch == "arm" and libc == "gnu":
            libc = "gnueabihf"
        return f"{arch}-unknown-linux-{libc}"

    @property
    def is_windows(self) -> bool:
        return self.os == "windows"

    def __str__(self) -> str:
        return self.target_triple


def normalize(system: str, machine: str, libc_name: str = "") -> Platform:
    """Build a Platform from raw ``platform.system()``/``machine()`` values."""
    os_name = _OS_ALIASES.get(system.lower(), system.lower())
    arch = _ARCH_ALIASES.get(machine.lower(), machine.lower())
    libc = None
    if os_name == "linux":
        libc = "gnu" if libc_name.lower() == "glibc" else "musl"
    return Platform(os=os_name, arch=arch, libc=libc)


@functools.lru_cache(maxsize=1)
def detect_platform() -> Platform:
    """Describe the running host; evaluated once per process."""
    system = _platform.system()
    libc_name = _platform.libc_ver()[0] if system.lower() == "linux" else ""
    return normalize(system, _platform.machine(), libc_name)
