"""
Tenant asset resolution.

Header media can point at a file in the tenant's asset directory. Files live
at <config_root>/<tenant>/assets/<path> and are published over HTTP at
<public_base_url>/tenants/<tenant>/assets/<path>.
"""
from __future__ import annotations

import posixpath
from pathlib import Path
from urllib.parse import quote


class AssetPathError(ValueError):
    """An asset path is empty, unsafe, or cannot be published."""


def clean_asset_path(asset_path: str) -> str:
    """Normalize a relative asset path; reject anything that escapes its root."""
    clean = posixpath.normpath(asset_path.strip().lstrip("/"))
    if clean in (".", "") or clean == ".." or clean.startswith("../"):
        raise AssetPathError(f"Invalid asset path: {asset_path!r}")
    if ".." in clean.split("/"):
        raise AssetPathError(f"Invalid asset path: {asset_path!r}")
    return clean


def build_public_asset_url(base_url: str, tenant: str, asset_path: str) -> str:
    """Absolute, URL-escaped address of a tenant asset."""
    base = base_url.rstrip("/")
    if not base:
        raise AssetPathError("public_base_url is not configured")
    clean = clean_asset_path(asset_path)
    escaped = "/".join(quote(part, safe="") for part in clean.split("/"))
    return f"{base}/tenants/{quote(tenant, safe='')}/assets/{escaped}"


def resolve_asset_file(config_root: str | Path, tenant: str, asset_path: str) -> Path:
    """
    Filesystem location of a tenant asset, guaranteed to sit inside the
    tenant's asset directory.
    """
    if not tenant or "/" in tenant or "\\" in tenant or tenant in (".", ".."):
        raise AssetPathError(f"Invalid tenant: {tenant!r}")
    clean = clean_asset_path(asset_path)
    base = (Path(config_root) / tenant / "assets").resolve()
    target = (base / clean).resolve()
    if target != base and base not in target.parents:
        raise AssetPathError(f"Invalid asset path: {asset_path!r}")
    return target
