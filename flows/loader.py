"""
Flow document loading from tenant-scoped storage.

Layout on disk:
    <config_root>/<tenant>/flow.json
    <config_root>/<tenant>/calendar.json     (optional, read by calendar actions)
    <config_root>/<tenant>/assets/...        (header media served over HTTP)
"""
from __future__ import annotations

import json
import structlog
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from flows.validator import FlowConfigError, ensure_valid
from models.schemas import FlowDefinition

logger = structlog.get_logger()

FLOW_FILENAME = "flow.json"


def tenant_dir(config_root: str | Path, tenant: str) -> Path:
    """Directory holding a tenant's documents. Rejects unsafe tenant names."""
    if not tenant or tenant in (".", "..") or "/" in tenant or "\\" in tenant:
        raise FlowConfigError(tenant, f"Invalid tenant name: {tenant!r}")
    return Path(config_root) / tenant


def parse_flow(tenant: str, raw: dict) -> FlowDefinition:
    try:
        return FlowDefinition.model_validate(raw)
    except ValidationError as e:
        raise FlowConfigError(tenant, f"Flow document for '{tenant}' does not match the schema: {e}") from e


def load_flow(
    tenant: str,
    config_root: str | Path = "configs",
    known_actions: Optional[Iterable[str]] = None,
) -> FlowDefinition:
    """
    Read, parse and validate a tenant's flow document.

    Raises:
        FlowConfigError: file unreadable, invalid JSON, schema mismatch,
                         or validator defects (FlowValidationError).
    """
    path = tenant_dir(config_root, tenant) / FLOW_FILENAME
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise FlowConfigError(tenant, f"Cannot read {path}: {e}") from e

    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise FlowConfigError(tenant, f"Invalid JSON in {path}: {e}") from e

    if not isinstance(raw, dict):
        raise FlowConfigError(tenant, f"{path} must contain a JSON object")

    flow = ensure_valid(tenant, parse_flow(tenant, raw), known_actions)
    logger.info("flow_loaded",
                tenant=tenant,
                version=flow.version,
                states=len(flow.states))
    return flow
