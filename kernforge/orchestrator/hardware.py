"""
Host fact detection.

Best effort and read-only. Anything that cannot be read stays None, and
the resolver then falls back to overrides and presets.
"""

from __future__ import annotations
from typing import Dict, Optional
import glob
import os
import shutil

from ..contracts.configuration import GpuVendor, HardwareFacts


# PCI vendor ids as exposed in /sys/class/drm/card*/device/vendor
PCI_VENDORS: Dict[str, GpuVendor] = {
    "0x10de": GpuVendor.NVIDIA,
    "0x1002": GpuVendor.AMD,
    "0x8086": GpuVendor.INTEL,
}

# Discrete cards win over an integrated one when both are present
_VENDOR_RANK = (GpuVendor.NVIDIA, GpuVendor.AMD, GpuVendor.INTEL)


def detect_gpu_vendor(drm_root: str = "/sys/class/drm") -> Optional[GpuVendor]:
    seen = set()
    for path in glob.glob(os.path.join(drm_root, "card*", "device", "vendor")):
        try:
            with open(path, "r", encoding="ascii") as f:
                vendor = PCI_VENDORS.get(f.read().strip().lower())
        except OSError:
            continue
        if vendor is not None:
            seen.add(vendor)
    for vendor in _VENDOR_RANK:
        if vendor in seen:
            return vendor
    return None


def detect_ram_gb(meminfo: str = "/proc/meminfo") -> Optional[int]:
    try:
        with open(meminfo, "r", encoding="ascii") as f:
            for line in f:
                if line.startswith("MemTotal:"):
                    kib = int(line.split()[1])
                    return max(1, round(kib / (1024 * 1024)))
    except (OSError, ValueError, IndexError):
        return None
    return None


def detect_disk_free_gb(path: str) -> Optional[int]:
    try:
        return shutil.disk_usage(path).free // (1024 ** 3)
    except OSError:
        return None


def detect_hardware(workspace: str) -> HardwareFacts:
    return HardwareFacts(
        gpu_vendor=detect_gpu_vendor(),
        cpu_cores=os.cpu_count(),
        ram_gb=detect_ram_gb(),
        disk_free_gb=detect_disk_free_gb(workspace),
    )
