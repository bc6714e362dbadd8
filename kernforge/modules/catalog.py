"""
Static module catalogs, embedded at build time.

- WHITELIST_CATALOG: drivers a stripped kernel must keep so the machine
  can still boot, mount its root and take input, grouped by category
- GPU_EXCLUSIONS: drivers for GPU vendors other than the detected one
- KNOWN_SYMBOLS: module identifier -> Kconfig symbol
"""

from __future__ import annotations
from typing import Dict, FrozenSet, Mapping, Optional, Tuple

from ..contracts.base import ConfigError, Error, ErrorCode
from ..contracts.configuration import GpuVendor
from ..contracts.modules import SYMBOL_PREFIX, canonical_module_id, is_config_symbol


WHITELIST_CATALOG: Dict[str, Tuple[str, ...]] = {
    "storage": ("nvme", "ahci", "libata", "scsi_mod"),
    "filesystem": (
        "ext4", "btrfs", "vfat", "exfat",
        "nls_cp437", "nls_iso8859_1", "nls_utf8", "nls_ascii",
    ),
    "human_interface": ("evdev", "hid", "hid_generic", "usbhid"),
    "usb": ("usbcore", "usb_storage", "usb_common", "xhci_hcd", "ehci_hcd", "ohci_hcd"),
}

GPU_DRIVERS = ("nouveau", "nvidia", "amdgpu", "radeon", "i915", "xe")

GPU_EXCLUSIONS: Dict[GpuVendor, FrozenSet[str]] = {
    GpuVendor.NVIDIA: frozenset({"amdgpu", "radeon", "i915", "xe"}),
    GpuVendor.AMD: frozenset({"nouveau", "nvidia", "i915", "xe"}),
    GpuVendor.INTEL: frozenset({"nouveau", "nvidia", "amdgpu", "radeon"}),
    # No dedicated GPU detected: none of the GPU drivers are needed
    GpuVendor.UNKNOWN: frozenset(GPU_DRIVERS),
}

KNOWN_SYMBOLS: Dict[str, str] = {
    # storage
    "nvme": "CONFIG_BLK_DEV_NVME",
    "ahci": "CONFIG_SATA_AHCI",
    "libata": "CONFIG_ATA",
    "scsi_mod": "CONFIG_SCSI",
    # filesystem
    "ext4": "CONFIG_EXT4_FS",
    "btrfs": "CONFIG_BTRFS_FS",
    "vfat": "CONFIG_VFAT_FS",
    "exfat": "CONFIG_EXFAT_FS",
    "nls_cp437": "CONFIG_NLS_CODEPAGE_437",
    "nls_iso8859_1": "CONFIG_NLS_ISO8859_1",
    "nls_utf8": "CONFIG_NLS_UTF8",
    "nls_ascii": "CONFIG_NLS_ASCII",
    # human interface
    "evdev": "CONFIG_INPUT_EVDEV",
    "hid": "CONFIG_HID",
    "hid_generic": "CONFIG_HID_GENERIC",
    "usbhid": "CONFIG_USB_HID",
    # usb
    "usbcore": "CONFIG_USB",
    "usb_storage": "CONFIG_USB_STORAGE",
    "usb_common": "CONFIG_USB_COMMON",
    "xhci_hcd": "CONFIG_USB_XHCI_HCD",
    "ehci_hcd": "CONFIG_USB_EHCI_HCD",
    "ohci_hcd": "CONFIG_USB_OHCI_HCD",
    # gpu (nvidia is out of tree and has no symbol)
    "nouveau": "CONFIG_DRM_NOUVEAU",
    "amdgpu": "CONFIG_DRM_AMDGPU",
    "radeon": "CONFIG_DRM_RADEON",
    "i915": "CONFIG_DRM_I915",
    "xe": "CONFIG_DRM_XE",
}


def whitelist_modules(catalog: Optional[Mapping[str, Tuple[str, ...]]] = None) -> FrozenSet[str]:
    """Flatten a categorized catalog into canonical identifiers."""
    catalog = WHITELIST_CATALOG if catalog is None else catalog
    return frozenset(canonical_module_id(m) for members in catalog.values() for m in members)


ESSENTIAL_DRIVERS = whitelist_modules()


def check_exclusion_table(
    table: Mapping[GpuVendor, FrozenSet[str]],
    essential: FrozenSet[str] = ESSENTIAL_DRIVERS,
):
    """Refuse an exclusion table that would remove an essential driver."""
    for vendor, excluded in table.items():
        clash = sorted({canonical_module_id(m) for m in excluded} & essential)
        if clash:
            raise ConfigError(Error.create(
                ErrorCode.ESSENTIAL_DRIVER_EXCLUDED,
                f"GPU exclusion for {vendor.value} names essential drivers: {', '.join(clash)}",
                vendor=vendor.value,
            ))


class SymbolTable:
    """
    Module identifier -> config symbol.

    Unknown identifiers look up to None. The hard lock resolves them
    later from the kernel tree (see kbuild.py).
    """

    def __init__(self, extra: Optional[Mapping[str, str]] = None):
        self._symbols: Dict[str, str] = dict(KNOWN_SYMBOLS)
        for module, symbol in (extra or {}).items():
            if not is_config_symbol(symbol):
                raise ConfigError(Error.create(
                    ErrorCode.INVALID_SETTING_VALUE,
                    f"Symbol for module {module} must start with {SYMBOL_PREFIX}: {symbol}",
                    module=module,
                ))
            self._symbols[canonical_module_id(module)] = symbol

    def lookup(self, identifier: str) -> Optional[str]:
        return self._symbols.get(canonical_module_id(identifier))

    def __contains__(self, identifier: str) -> bool:
        return canonical_module_id(identifier) in self._symbols

    def __len__(self) -> int:
        return len(self._symbols)
