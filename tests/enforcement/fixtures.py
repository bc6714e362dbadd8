"""
Enforcement Test Fixtures

Fixed build scripts and config files. All fixtures are explicit text,
never generated, so a failing test can be read against them directly.
"""

from dataclasses import replace

from kernforge.contracts.base import SessionId
from kernforge.contracts.configuration import (
    ConfigEntry, ConfigFamily, ConfigValue, FamilySelection, HardwareFacts, Provenance,
    Setting,
)
from kernforge.contracts.modules import InclusionMode, ModuleEntry, ModuleSet
from kernforge.modules.catalog import KNOWN_SYMBOLS
from kernforge.orchestrator.state import PhaseStateMachine
from kernforge.resolution import ResolutionEngine


# =============================================================================
# BUILD SCRIPTS
# =============================================================================

ARCH_PKGBUILD = """\
pkgbase=linux
pkgver=6.9.1
pkgrel=1
_srcname=linux-${pkgver}
arch=(x86_64)
makedepends=(bc cpio gettext libelf pahole perl python tar xz)

prepare() {
  cd $_srcname

  echo "Setting version..."
  echo "-$pkgrel" > localversion.10-pkgrel

  local src
  for src in "${source[@]}"; do
    src="${src%%::*}"
    src="${src##*/}"
    [[ $src = *.patch ]] || continue
    echo "Applying patch $src..."
    patch -Np1 < "../$src"
  done

  echo "Setting config..."
  cp ../config .config
  make olddefconfig
  diff -u ../config .config || :

  make -s kernelrelease > version
  echo "Prepared $pkgbase version $(<version)"
}

build() {
  cd $_srcname
  make all
  make -C tools/bpf/bpftool vmlinux.h feature-clang-bpf-co-re=1
}

package() {
  echo "Installing boot image..."
}
"""

# Every clobbering step, the overwrite and regeneration ones twice
CLOBBERING_PKGBUILD = """\
pkgbase=linux-custom

prepare() {
  cd linux
  cp ../config .config
  yes '' | make localmodconfig
  make olddefconfig
  cp -f ../config.extra ./.config; make oldconfig
}

build() {
  cd linux
  make bzImage
  make modules
}
"""

NO_BUILD_FUNCTION = """\
pkgbase=linux-broken

prepare() {
  cp ../config .config
}
"""

NO_COMPILE_STEP = """\
pkgbase=linux-broken

prepare() {
  cp ../config .config
}

build() {
  echo "nothing to compile"
}
"""

# make all appears only inside a heredoc and a string; neither is a command
HEREDOC_PKGBUILD = """\
pkgbase=linux-heredoc

build() {
  cd linux
  cat > notes.txt <<EOF
make all
}
EOF
  echo "make all
  is what runs next"
  make bzImage
}
"""


# =============================================================================
# CONFIG FILES
# =============================================================================

STOCK_CONFIG = """\
CONFIG_LOCALVERSION=""
# CONFIG_LTO_NONE is not set
CONFIG_LTO_CLANG=y
CONFIG_LTO_CLANG_THIN=y
# CONFIG_LTO_CLANG_FULL is not set
CONFIG_HAS_LTO_CLANG=y
CONFIG_PREEMPT_VOLUNTARY=y
# CONFIG_PREEMPT is not set
CONFIG_HZ_300=y
CONFIG_HZ=300
CONFIG_SCHED_CLASS_EXT=y
CONFIG_BLK_DEV_NVME=m
CONFIG_BTRFS_FS=m
CONFIG_DRM_NOUVEAU=m
CONFIG_EXT4_FS=y
# CONFIG_INPUT_EVDEV is not set
CONFIG_SYSFS=y
"""


# =============================================================================
# SPECS
# =============================================================================

FIXED_HARDWARE = HardwareFacts(cpu_cores=8, ram_gb=16, disk_free_gb=100)


def resolved_spec(profile="generic", **overrides):
    """Resolve against fixed hardware so no host detection leaks in."""
    return ResolutionEngine().resolve(
        hardware_facts=FIXED_HARDWARE,
        overrides={Setting(k): v for k, v in overrides.items()},
        profile=profile,
    )


VARIANT_FAMILY = ConfigFamily(
    name="variant",
    keys=("NONE_VARIANT", "THIN_VARIANT", "FULL_VARIANT", "CAPABILITY_FLAG"),
    selectors=frozenset({"NONE_VARIANT", "THIN_VARIANT", "FULL_VARIANT"}),
    primary=True,
)


def variant_selection(member="FULL_VARIANT"):
    return FamilySelection(
        VARIANT_FAMILY,
        (
            ConfigEntry(member, ConfigValue.enabled()),
            ConfigEntry("CAPABILITY_FLAG", ConfigValue.enabled()),
        ),
        Provenance.FROM_OVERRIDE,
    )


def variant_spec(member="FULL_VARIANT"):
    """A spec whose only family is the synthetic variant family."""
    return replace(resolved_spec(), families=(variant_selection(member),))


def kernel_modules(*identifiers):
    """A frozen set rendered with real Kconfig symbols."""
    return ModuleSet(entries=tuple(
        ModuleEntry(i, InclusionMode.MODULE, KNOWN_SYMBOLS[i]) for i in identifiers
    ))


def lease_for(phase, session_id=SessionId("session_test")):
    """The lease a fresh state machine holds once it has walked forward to phase."""
    machine = PhaseStateMachine(session_id)
    while machine.phase != phase:
        machine.advance()
    return machine.lease
