"""
Renderer — turns a flow state into a channel-agnostic OutgoingMessage.

Every user-visible string of the state (body, header, footer, list button,
section and row titles, row descriptions, button titles) goes through
`{{key}}` substitution. Placeholders with no matching variable are left in
place verbatim. Option ids are never substituted; they are what the
resolver matches replies against.

Rendering is deterministic: the same (flow, state, variables) always yields
an equal OutgoingMessage.
"""
from __future__ import annotations

import re
from typing import Mapping, Optional

from core.assets import AssetPathError, build_public_asset_url
from models.schemas import (
    Button, FlowDefinition, HeaderMedia, ListRow, ListSection, MediaKind,
    OutgoingMessage, StateDefinition, StateKind,
)

PLACEHOLDER = re.compile(r"\{\{([^{}]+)\}\}")
DEFAULT_PROMPT = "Elegí una opción:"


class RenderError(Exception):
    """A state cannot be turned into a deliverable message."""

    def __init__(self, state: str, message: str):
        self.state = state
        super().__init__(message)


def substitute(template: str, variables: Mapping[str, str]) -> str:
    """Replace `{{key}}` with variables[key]; unknown keys stay as written."""
    if not template or not variables:
        return template

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        return variables[key] if key in variables else match.group(0)

    return PLACEHOLDER.sub(_replace, template)


class Renderer:

    def __init__(self, public_base_url: str = ""):
        self.public_base_url = public_base_url

    def render(
        self,
        tenant: str,
        flow: FlowDefinition,
        state_name: str,
        variables: Optional[Mapping[str, str]] = None,
    ) -> OutgoingMessage:
        variables = variables or {}
        state = flow.get_state(state_name)
        if state is None:
            raise RenderError(state_name, f"State does not exist: {state_name}")

        if state.kind == StateKind.TEXT.value:
            return OutgoingMessage(kind=StateKind.TEXT, body=substitute(state.body, variables))
        if state.kind == StateKind.LIST.value:
            return self._render_list(tenant, state_name, state, variables)
        if state.kind == StateKind.BUTTONS.value:
            return self._render_buttons(tenant, state_name, state, variables)

        raise RenderError(state_name, f"Unsupported kind {state.kind!r} in state {state_name}")

    # ── Interactive kinds ─────────────────────────────────────

    def _render_list(
        self, tenant: str, name: str, state: StateDefinition, variables: Mapping[str, str],
    ) -> OutgoingMessage:
        ui = state.list_ui
        if ui is None:
            raise RenderError(name, f"State {name} is a list state but has no list")

        sections = tuple(
            ListSection(
                title=substitute(section.title, variables),
                rows=tuple(
                    ListRow(
                        id=row.id,
                        title=substitute(row.title, variables),
                        description=substitute(row.description, variables),
                    )
                    for row in section.rows
                ),
            )
            for section in ui.sections
        )
        return OutgoingMessage(
            kind=StateKind.LIST,
            body=self._body(state, variables),
            header=substitute(ui.header, variables),
            header_image_url=self._header_image(tenant, name, state.header_media, variables),
            footer=substitute(ui.footer, variables),
            button_text=substitute(ui.button_text, variables),
            sections=sections,
        )

    def _render_buttons(
        self, tenant: str, name: str, state: StateDefinition, variables: Mapping[str, str],
    ) -> OutgoingMessage:
        ui = state.buttons_ui
        if ui is None:
            raise RenderError(name, f"State {name} is a buttons state but has no buttons")

        buttons = tuple(
            Button(id=b.id, title=substitute(b.title, variables)) for b in ui.buttons
        )
        return OutgoingMessage(
            kind=StateKind.BUTTONS,
            body=self._body(state, variables),
            header=substitute(ui.header, variables),
            header_image_url=self._header_image(tenant, name, state.header_media, variables),
            footer=substitute(ui.footer, variables),
            buttons=buttons,
        )

    # ── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _body(state: StateDefinition, variables: Mapping[str, str]) -> str:
        # Interactive messages require a body
        body = state.body.strip() or DEFAULT_PROMPT
        return substitute(body, variables)

    def _header_image(
        self,
        tenant: str,
        name: str,
        media: Optional[HeaderMedia],
        variables: Mapping[str, str],
    ) -> str:
        if media is None or media.kind.strip().lower() != MediaKind.IMAGE.value:
            return ""
        if media.url.strip():
            return media.url.strip()
        if media.path.strip():
            try:
                return build_public_asset_url(
                    self.public_base_url, tenant, substitute(media.path, variables),
                )
            except AssetPathError as e:
                raise RenderError(name, f"Header media of state {name}: {e}") from e
        return ""
