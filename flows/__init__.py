"""
Tenant flow documents.

A flow is a tenant-authored JSON state graph. This package loads it from
tenant storage, checks it against the channel's UI limits, and caches one
validated copy per tenant.
"""
from flows.validator import (
    FlowConfigError, FlowValidationError,
    validate_flow, validate_state, ensure_valid,
)
from flows.loader import load_flow, parse_flow, tenant_dir
from flows.cache import FlowCache
