"""
Integration Test Fixtures

A throwaway build workspace and a fake build driver that stands in for
makepkg: it sources the PKGBUILD, runs prepare() and build() with a stub
`make`, prints compiler-style progress and leaves a package archive.
Everything runs in tmp_path; nothing touches a real kernel tree.
"""

import os
import shutil

import pytest

from kernforge.contracts.configuration import HardwareFacts
from kernforge.orchestrator import OrchestratorConfig, RunnerConfig


HAS_SHELL = shutil.which("bash") is not None and shutil.which("awk") is not None

requires_shell = pytest.mark.skipif(not HAS_SHELL, reason="needs bash and awk")

FIXED_HARDWARE = HardwareFacts(cpu_cores=8, ram_gb=16, disk_free_gb=100)

ARTIFACT_NAME = "linux-test-6.9.1-1-x86_64.pkg.tar.zst"


# =============================================================================
# WORKSPACE CONTENT
# =============================================================================

INTEGRATION_PKGBUILD = """\
pkgbase=linux-test
pkgver=6.9.1
pkgrel=1
_srcname=linux-test
arch=(x86_64)

prepare() {
  cd "$srcdir/$_srcname"
  echo "Setting config..."
  cp ../config .config
  make olddefconfig
}

build() {
  cd "$srcdir/$_srcname"
  make all
}

package() {
  echo "Installing boot image..."
}
"""

INTEGRATION_CONFIG = """\
# CONFIG_LTO_NONE is not set
CONFIG_LTO_CLANG=y
# CONFIG_LTO_CLANG_THIN is not set
CONFIG_LTO_CLANG_FULL=y
CONFIG_HAS_LTO_CLANG=y
CONFIG_PREEMPT_NONE=y
CONFIG_HZ_250=y
CONFIG_HZ=250
CONFIG_BLK_DEV_NVME=m
CONFIG_BTRFS_FS=m
CONFIG_SND_HDA_INTEL=m
CONFIG_EXT4_FS=y
CONFIG_SYSFS=y
"""

# makepkg stand-in: src/<_srcname>, src/config, then prepare and build
BUILD_DRIVER = """\
set -e
startdir="$PWD"
srcdir="$startdir/src"
mkdir -p "$srcdir/linux-test"
printf 'obj-$(CONFIG_SND_HDA_INTEL) += snd-hda-intel.o\\n' > "$srcdir/linux-test/Makefile"
cp config "$srcdir/config"
make() { echo "make $* KCFLAGS=${KCFLAGS-}"; }
source ./PKGBUILD
echo "==> Starting prepare()..."
( prepare )
echo "==> Starting build()..."
echo "[ 50/100] CC kernel/sched/core.o"
( build )
echo "[100/100] LD vmlinux"
echo "==> Creating package \\"linux-test\\"..."
touch "$startdir/{artifact}"
""".replace("{artifact}", ARTIFACT_NAME)

FAILING_DRIVER = """\
echo "==> Starting build()..."
echo "error: compiler exploded" >&2
exit 3
"""

# Prints the marker the cancelling listener waits for, then hangs
HANGING_DRIVER = """\
echo "==> Starting build()..."
echo "waiting for cancel"
sleep 30
echo "should never print"
"""


def write_file(path, text):
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)


def read_file(path):
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def make_workspace(root, script=INTEGRATION_PKGBUILD, config=INTEGRATION_CONFIG, driver=BUILD_DRIVER):
    """Lay out a build directory. Pass None to leave a file out."""
    os.makedirs(root, exist_ok=True)
    if script is not None:
        write_file(os.path.join(root, "PKGBUILD"), script)
    if config is not None:
        write_file(os.path.join(root, "config"), config)
    if driver is not None:
        write_file(os.path.join(root, "driver.sh"), driver)
    return str(root)


def shell_config(**overrides):
    """Orchestrator config that runs driver.sh instead of makepkg."""
    overrides.setdefault("required_tools", ("bash", "awk"))
    overrides.setdefault(
        "runner", RunnerConfig(command=("bash", "driver.sh"), termination_grace_seconds=2.0),
    )
    return OrchestratorConfig(**overrides)
