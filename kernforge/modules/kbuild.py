"""
Config symbols from a kernel source tree.

A loadable module is named after the object its Kbuild line adds:

    obj-$(CONFIG_SND_HDA_INTEL) += snd-hda-intel.o

so the symbol of any in-tree module can be read from the tree's
Makefile and Kbuild files. The prebuild shell payload runs the same scan
in awk; both walk the files in byte order of their './'-relative path
and keep the first symbol seen for an identifier.
"""

from __future__ import annotations
from typing import Dict, Iterable, Iterator, List
import os
import re

from ..contracts.modules import canonical_module_id


KBUILD_NAMES = ("Makefile", "Kbuild")

OBJ_LINE = re.compile(r'^[ \t]*obj-\$\((CONFIG_[A-Za-z0-9_]+)\)[ \t]*[+:]?=(.*)$')


def kbuild_files(tree_root: str) -> List[str]:
    """Every Makefile/Kbuild under tree_root as './'-relative paths, sorted."""
    found = []
    for directory, subdirs, files in os.walk(tree_root):
        for name in files:
            if name not in KBUILD_NAMES:
                continue
            path = os.path.join(directory, name)
            if os.path.islink(path) or not os.path.isfile(path):
                continue
            relative = os.path.relpath(path, tree_root).replace(os.sep, "/")
            found.append(f"./{relative}")
    return sorted(found)


def logical_lines(text: str) -> Iterator[str]:
    """Join backslash continuations the way make reads them."""
    pending = None
    for line in text.split("\n"):
        if pending is not None:
            line = pending + line
            pending = None
        if line.endswith("\\"):
            pending = line[:-1] + " "
            continue
        yield line
    if pending is not None:
        yield pending


def parse_obj_lines(text: str) -> Iterator[tuple]:
    """Yield (symbol, module identifier) for every object an obj- line adds."""
    for line in logical_lines(text):
        match = OBJ_LINE.match(line)
        if not match:
            continue
        symbol, rest = match.groups()
        for token in re.split(r"[ \t]+", rest.split("#", 1)[0]):
            if token.endswith(".o"):
                yield symbol, canonical_module_id(token[:-2])


def scan_kbuild_symbols(tree_root: str, identifiers: Iterable[str]) -> Dict[str, str]:
    """
    Map each wanted identifier to the symbol that builds it.

    Identifiers the tree does not build are absent from the result.
    """
    wanted = {canonical_module_id(i) for i in identifiers}
    found: Dict[str, str] = {}
    if not wanted or not os.path.isdir(tree_root):
        return found
    for relative in kbuild_files(tree_root):
        if len(found) == len(wanted):
            break
        path = os.path.join(tree_root, relative[2:])
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            text = f.read()
        for symbol, identifier in parse_obj_lines(text):
            if identifier in wanted and identifier not in found:
                found[identifier] = symbol
    return found
