"""
Actions attached to flow states.

Quick start:
  from actions import create_default_action_registry
  registry = create_default_action_registry(settings)
  handler = registry.get_handler("mock_crm_lookup")
"""
from __future__ import annotations

from typing import Optional

import httpx

from actions.registry import (
    ActionError, ActionHandler, ActionName, ActionRegistry, ActionSchema,
)
from actions.crm import mock_crm_lookup
from actions.calendar import (
    CalendarFactory, make_calendar_factory,
    make_get_calendar_slots, make_schedule_appointment,
)
from config.settings import Settings


def create_default_action_registry(
    settings: Settings,
    calendar_factory: Optional[CalendarFactory] = None,
    http: Optional[httpx.AsyncClient] = None,
) -> ActionRegistry:
    """Registry with every shipped action bound to this process's settings."""
    factory = calendar_factory or make_calendar_factory(settings.calendar, settings.config_root, http)
    registry = ActionRegistry()

    registry.register(ActionSchema(
        name=ActionName.MOCK_CRM_LOOKUP,
        description="Look the user up in the CRM",
        output_keys=["is_client", "client_name", "last_visit"],
    ), mock_crm_lookup)

    registry.register(ActionSchema(
        name=ActionName.GET_CALENDAR_SLOTS,
        description="Offer up to three free one-hour slots from the tenant calendar",
        output_keys=["slot_1", "slot_2", "slot_3", "SLOT_1_ISO", "SLOT_2_ISO", "SLOT_3_ISO"],
    ), make_get_calendar_slots(factory))

    registry.register(ActionSchema(
        name=ActionName.SCHEDULE_APPOINTMENT,
        description="Book the slot the user selected",
        output_keys=["appointment_confirm_time"],
        reads_keys=["last_selected_id", "client_name", "name"],
        is_idempotent=False,
    ), make_schedule_appointment(factory, settings.calendar.summary_prefix))

    return registry


__all__ = [
    "ActionError", "ActionHandler", "ActionName", "ActionRegistry", "ActionSchema",
    "create_default_action_registry", "mock_crm_lookup",
]
