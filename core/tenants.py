"""
Tenant routing — which tenant owns an inbound event.

The channel reports the business phone-number id the user wrote to; a
configured mapping turns that id into a tenant name. Unmapped ids fall back
to the default tenant.
"""
from __future__ import annotations

from typing import Mapping, Optional


class TenantResolver:

    def __init__(self, mapping: Optional[Mapping[str, str]] = None, default_tenant: str = "broker"):
        self._mapping = {k.strip(): v.strip() for k, v in (mapping or {}).items() if k.strip() and v.strip()}
        self.default_tenant = default_tenant

    def resolve(self, phone_number_id: str) -> str:
        return self._mapping.get(phone_number_id.strip(), self.default_tenant)

    @property
    def mapping(self) -> dict[str, str]:
        return dict(self._mapping)
