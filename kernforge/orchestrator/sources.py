"""
Kernel Variant Sources
======================

Where a pristine build script comes from when the workspace has none.

PRINCIPLES:
===========
1. Fetched once, stored in the pristine store, never fetched again
2. A failed fetch is a PreparationError, not a retry loop
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from ..contracts.base import Error, ErrorCode, PreparationError


@dataclass(frozen=True)
class VariantSource:
    name: str
    git_url: str
    pkgbuild_url: str
    description: str


_ARCH = "https://gitlab.archlinux.org/archlinux/packaging/packages"

VARIANTS: Dict[str, VariantSource] = {
    v.name: v for v in (
        VariantSource(
            name="linux",
            git_url=f"{_ARCH}/linux.git",
            pkgbuild_url=f"{_ARCH}/linux/-/raw/main/PKGBUILD",
            description="Stable Arch Linux kernel",
        ),
        VariantSource(
            name="linux-lts",
            git_url=f"{_ARCH}/linux-lts.git",
            pkgbuild_url=f"{_ARCH}/linux-lts/-/raw/main/PKGBUILD",
            description="Long-term support kernel",
        ),
        VariantSource(
            name="linux-hardened",
            git_url=f"{_ARCH}/linux-hardened.git",
            pkgbuild_url=f"{_ARCH}/linux-hardened/-/raw/main/PKGBUILD",
            description="Security-hardened kernel",
        ),
        VariantSource(
            name="linux-zen",
            git_url=f"{_ARCH}/linux-zen.git",
            pkgbuild_url=f"{_ARCH}/linux-zen/-/raw/main/PKGBUILD",
            description="Zen desktop kernel",
        ),
        VariantSource(
            name="linux-mainline",
            git_url="https://aur.archlinux.org/linux-mainline.git",
            pkgbuild_url="https://aur.archlinux.org/cgit/aur.git/plain/PKGBUILD?h=linux-mainline",
            description="Mainline kernel (AUR)",
        ),
        VariantSource(
            name="linux-tkg",
            git_url="https://github.com/Frogging-Family/linux-tkg.git",
            pkgbuild_url="https://raw.githubusercontent.com/Frogging-Family/linux-tkg/master/PKGBUILD",
            description="TKG kernel",
        ),
    )
}


def get_variant(name: str) -> VariantSource:
    try:
        return VARIANTS[name]
    except KeyError:
        raise PreparationError(Error.create(
            ErrorCode.SOURCE_UNREACHABLE,
            f"Unknown kernel variant: {name} (known: {', '.join(sorted(VARIANTS))})",
            variant=name,
        ))


class SourceFetcher:
    """
    Fetches a variant's PKGBUILD over HTTP.

    The transport can be replaced (httpx.MockTransport in tests).
    """

    def __init__(
        self,
        timeout: float = 30.0,
        user_agent: str = "kernforge/0.1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._timeout = timeout
        self._user_agent = user_agent
        self._transport = transport

    async def fetch_pkgbuild(self, variant: str) -> str:
        source = get_variant(variant)
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(
                    source.pkgbuild_url,
                    headers={'User-Agent': self._user_agent},
                    follow_redirects=True,
                )
        except httpx.HTTPError as e:
            raise PreparationError(Error.create(
                ErrorCode.SOURCE_UNREACHABLE,
                f"Fetching {source.pkgbuild_url} failed: {e}",
                variant=variant,
            ))

        if response.status_code != 200:
            raise PreparationError(Error.create(
                ErrorCode.SOURCE_UNREACHABLE,
                f"Fetching {source.pkgbuild_url} returned HTTP {response.status_code}",
                variant=variant,
                status=response.status_code,
            ))
        if "pkgbase=" not in response.text and "pkgname=" not in response.text:
            raise PreparationError(Error.create(
                ErrorCode.SOURCE_UNREACHABLE,
                f"Response from {source.pkgbuild_url} does not look like a PKGBUILD",
                variant=variant,
            ))
        return response.text
