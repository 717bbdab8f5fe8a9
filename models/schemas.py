"""
Core data models for the flowly bot.
These are the universal types shared across all modules: the tenant flow
document, the per-user session, and the normalized inbound/outbound messages.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class StateKind(str, Enum):
    TEXT = "text"
    LIST = "list"
    BUTTONS = "buttons"


# Spellings found in older tenant documents
KIND_ALIASES: dict[str, str] = {
    "interactive_list": StateKind.LIST.value,
    "interactive_buttons": StateKind.BUTTONS.value,
}


class MediaKind(str, Enum):
    IMAGE = "image"


class EventKind(str, Enum):
    TEXT = "text"
    LIST_REPLY = "list_reply"
    BUTTON_REPLY = "button_reply"
    OTHER = "other"


# ──────────────────────────────────────────────────────────────
#  Flow definition — one tenant's state graph
# ──────────────────────────────────────────────────────────────

class HeaderMedia(BaseModel):
    """Image shown in the header of an interactive message."""
    kind: str = Field(default="", alias="type")
    path: str = ""                          # relative to the tenant's assets/
    url: str = ""                           # absolute remote URL

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ListRow(BaseModel):
    id: str = ""
    title: str = ""
    description: str = ""

    model_config = ConfigDict(frozen=True)


class ListSection(BaseModel):
    title: str = ""
    rows: tuple[ListRow, ...] = ()

    model_config = ConfigDict(frozen=True)


class ListPayload(BaseModel):
    header: str = ""
    footer: str = ""
    button_text: str = ""
    sections: tuple[ListSection, ...] = ()

    model_config = ConfigDict(frozen=True)


class Button(BaseModel):
    id: str = ""
    title: str = ""

    model_config = ConfigDict(frozen=True)


class ButtonsPayload(BaseModel):
    header: str = ""
    footer: str = ""
    buttons: tuple[Button, ...] = ()

    model_config = ConfigDict(frozen=True)


class StateDefinition(BaseModel):
    """
    One node of a flow: a message template, its UI shape and its transitions.

    `kind` is kept as a plain string so that an unsupported value still loads
    and can be reported by the validator with the state's name attached.
    """
    kind: str = Field(default=StateKind.TEXT.value, alias="type")
    body: str = ""
    action: str = ""                                     # action registry name
    header_media: Optional[HeaderMedia] = None
    list_ui: Optional[ListPayload] = Field(default=None, alias="list")
    buttons_ui: Optional[ButtonsPayload] = Field(default=None, alias="buttons")
    on_text_next: str = ""
    on_select_next: dict[str, str] = {}                  # option id → state name

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            return KIND_ALIASES.get(value, value)
        return value


class FlowDefinition(BaseModel):
    """A tenant's flow document. Immutable; replaced wholesale on reload."""
    version: str = ""
    default_state: str = "MENU"
    states: dict[str, StateDefinition] = {}

    model_config = ConfigDict(frozen=True)

    def get_state(self, name: str) -> Optional[StateDefinition]:
        return self.states.get(name)

    def has_state(self, name: str) -> bool:
        return name in self.states

    @property
    def action_names(self) -> set[str]:
        return {s.action for s in self.states.values() if s.action}


# ──────────────────────────────────────────────────────────────
#  Session — per (tenant, user) conversation record
# ──────────────────────────────────────────────────────────────

class SessionKeys:
    """Session data keys the core itself reads or writes."""
    LAST_SELECTED_ID = "last_selected_id"
    NAME = "name"


class Session(BaseModel):
    state: str
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: dict[str, str] = {}                 # open bag of durable per-user variables

    @property
    def last_selected_id(self) -> str:
        return self.data.get(SessionKeys.LAST_SELECTED_ID, "")

    @last_selected_id.setter
    def last_selected_id(self, option_id: str) -> None:
        self.data[SessionKeys.LAST_SELECTED_ID] = option_id

    @property
    def name(self) -> str:
        return self.data.get(SessionKeys.NAME, "")

    def merge(self, variables: dict[str, str]) -> None:
        self.data.update(variables)

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Inbound event — normalized shape the core consumes
# ──────────────────────────────────────────────────────────────

class InboundEvent(BaseModel):
    tenant_key: str = ""                      # channel phone-number id
    sender: str
    sender_name: str = ""
    kind: EventKind = EventKind.OTHER
    text: str = ""
    option_id: str = ""
    option_title: str = ""
    message_id: str = ""

    @property
    def is_interactive(self) -> bool:
        return self.kind in (EventKind.LIST_REPLY, EventKind.BUTTON_REPLY)


# ──────────────────────────────────────────────────────────────
#  Outgoing message — channel-agnostic render result
# ──────────────────────────────────────────────────────────────

class OutgoingMessage(BaseModel):
    kind: StateKind
    body: str = ""
    header: str = ""
    header_image_url: str = ""
    footer: str = ""
    button_text: str = ""
    sections: tuple[ListSection, ...] = ()
    buttons: tuple[Button, ...] = ()

    model_config = ConfigDict(frozen=True)
