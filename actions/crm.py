"""
CRM lookup action.

Stand-in for a real CRM query: the user id's last digit decides the answer,
even → known client, odd → first-time visitor. Deterministic per user, so
different test phones exercise both branches of a flow.
"""
from __future__ import annotations

import structlog

from models.schemas import Session

logger = structlog.get_logger()


async def mock_crm_lookup(tenant: str, user_id: str, session: Session) -> dict[str, str]:
    logger.info("crm_lookup", tenant=tenant, user=user_id)

    is_client = bool(user_id) and user_id[-1].isdigit() and int(user_id[-1]) % 2 == 0
    if is_client:
        return {
            "is_client": "true",
            "client_name": "Carlos (Cliente VIP)",
            "last_visit": "15 de Febrero",
        }
    return {
        "is_client": "false",
        "client_name": "Visitante",
    }
