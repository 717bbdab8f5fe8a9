"""
Action Registry — the closed catalog of side-effecting operations a flow
state can trigger before it is rendered.

Flow documents name actions by string. Those strings resolve against the
`ActionName` enum: only members of the enum can ever be registered, and the
flow validator checks every state's `action` against the registered names at
load time, so a typo in a tenant document rejects the flow instead of
silently doing nothing mid-conversation.

Handlers are async callables:

    async def handler(tenant: str, user_id: str, session: Session) -> dict[str, str]

They may read session data written by earlier actions, may perform external
I/O (and are expected to apply their own timeouts), and raise ActionError on
failure. The returned variables are merged into the render context and the
persisted session by the dispatcher.
"""
from __future__ import annotations

import structlog
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from pydantic import BaseModel

from models.schemas import Session

logger = structlog.get_logger()

ActionHandler = Callable[[str, str, Session], Awaitable[dict[str, str]]]


class ActionName(str, Enum):
    MOCK_CRM_LOOKUP = "mock_crm_lookup"
    GET_CALENDAR_SLOTS = "get_calendar_slots"
    SCHEDULE_APPOINTMENT = "schedule_appointment"


class ActionError(Exception):
    """An action could not produce its variables."""

    def __init__(self, action: str, message: str):
        self.action = action
        super().__init__(message)


class ActionSchema(BaseModel):
    """Describes one registered action."""
    name: ActionName
    description: str = ""
    output_keys: list[str] = []                 # variables the handler may return
    reads_keys: list[str] = []                  # session keys the handler reads
    is_idempotent: bool = True                  # safe to run twice?


def as_action_name(name: Union[str, ActionName]) -> Optional[ActionName]:
    if isinstance(name, ActionName):
        return name
    try:
        return ActionName(name)
    except ValueError:
        return None


class ActionRegistry:

    def __init__(self):
        self._schemas: dict[ActionName, ActionSchema] = {}
        self._handlers: dict[ActionName, ActionHandler] = {}

    # ── Registration ──────────────────────────────────

    def register(self, schema: ActionSchema, handler: ActionHandler):
        self._schemas[schema.name] = schema
        self._handlers[schema.name] = handler
        logger.info("action_registered",
                    name=schema.name.value,
                    idempotent=schema.is_idempotent)

    def register_handler(self, name: ActionName, handler: ActionHandler, **kwargs):
        """Convenience: register a handler with a minimal schema."""
        self.register(ActionSchema(name=name, **kwargs), handler)

    # ── Lookup ────────────────────────────────────────

    def get(self, name: Union[str, ActionName]) -> Optional[ActionSchema]:
        key = as_action_name(name)
        return self._schemas.get(key) if key else None

    def get_handler(self, name: Union[str, ActionName]) -> Optional[ActionHandler]:
        key = as_action_name(name)
        return self._handlers.get(key) if key else None

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, (str, ActionName)):
            return False
        key = as_action_name(name)
        return key is not None and key in self._handlers

    @property
    def names(self) -> set[str]:
        return {n.value for n in self._handlers}

    @property
    def count(self) -> int:
        return len(self._handlers)

    # ── Validation ────────────────────────────────────

    def validate_reference(self, name: str) -> Optional[str]:
        """Check an action reference from a flow. Returns error or None."""
        if as_action_name(name) is None:
            return f"Unknown action: {name}"
        if name not in self:
            return f"Action not registered: {name}"
        return None
