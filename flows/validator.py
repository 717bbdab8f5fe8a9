"""
Flow Validator — structural and channel UI-limit checks for tenant flows.

A tenant flow is untrusted, tenant-authored configuration. Before the cache
hands it to the dispatcher it is checked here; any defect rejects the whole
document. The outbound channel silently drops or mis-renders interactive
payloads that exceed its UI limits, so those limits are enforced at load time.

All lengths are counted in Unicode code points (`len()` on `str`), which is
how the channel defines them.
"""
from __future__ import annotations

import posixpath
from typing import Iterable, Optional

from models.schemas import (
    ButtonsPayload, FlowDefinition, HeaderMedia, ListPayload, MediaKind,
    StateDefinition, StateKind,
)


# ──────────────────────────────────────────────────────────────
#  Channel UI limits
# ──────────────────────────────────────────────────────────────

MAX_HEADER = 60
MAX_FOOTER = 60
MAX_LIST_BUTTON_TEXT = 20
MAX_SECTION_TITLE = 24
MAX_ROW_TITLE = 24
MAX_ROW_DESCRIPTION = 72
MAX_BUTTON_TITLE = 20
MIN_BUTTONS = 1
MAX_BUTTONS = 3

SUPPORTED_KINDS = {k.value for k in StateKind}
SUPPORTED_MEDIA = {m.value for m in MediaKind}


class FlowConfigError(Exception):
    """A tenant's flow document could not be loaded or trusted."""

    def __init__(self, tenant: str, message: str, defects: Optional[list[str]] = None):
        self.tenant = tenant
        self.defects = defects or []
        super().__init__(message)


class FlowValidationError(FlowConfigError):
    """Raised when a flow has one or more defects."""

    def __init__(self, tenant: str, defects: list[str]):
        super().__init__(
            tenant,
            f"Invalid flow for tenant '{tenant}':\n- " + "\n- ".join(defects),
            defects,
        )


def has_parent_segment(path: str) -> bool:
    """True if the normalized relative path escapes its root."""
    clean = posixpath.normpath(path.strip().lstrip("/"))
    return clean == ".." or clean.startswith("../") or "/../" in f"/{clean}/"


def _too_long(text: str, limit: int) -> bool:
    return len(text) > limit


# ──────────────────────────────────────────────────────────────
#  Per-part checks
# ──────────────────────────────────────────────────────────────

def _check_header_media(name: str, media: HeaderMedia) -> list[str]:
    errors = []
    kind = media.kind.strip().lower()
    if not kind:
        errors.append(f"state={name} header_media.type is empty")
    elif kind not in SUPPORTED_MEDIA:
        errors.append(f"state={name} header_media.type not supported: {media.kind!r}")

    has_url = bool(media.url.strip())
    has_path = bool(media.path.strip())
    if has_url == has_path:
        errors.append(f"state={name} header_media needs exactly one of url or path")
    if has_path and has_parent_segment(media.path):
        errors.append(f"state={name} header_media.path escapes the asset directory: {media.path!r}")
    return errors


def _check_list(name: str, ui: ListPayload) -> list[str]:
    errors = []
    if _too_long(ui.header, MAX_HEADER):
        errors.append(f"state={name} list.header > {MAX_HEADER} ({len(ui.header)}): {ui.header!r}")
    if _too_long(ui.footer, MAX_FOOTER):
        errors.append(f"state={name} list.footer > {MAX_FOOTER} ({len(ui.footer)}): {ui.footer!r}")
    if _too_long(ui.button_text, MAX_LIST_BUTTON_TEXT):
        errors.append(
            f"state={name} list.button_text > {MAX_LIST_BUTTON_TEXT} "
            f"({len(ui.button_text)}): {ui.button_text!r}"
        )

    seen: set[str] = set()
    for section in ui.sections:
        if _too_long(section.title, MAX_SECTION_TITLE):
            errors.append(
                f"state={name} section title > {MAX_SECTION_TITLE} "
                f"({len(section.title)}): {section.title!r}"
            )
        for row in section.rows:
            row_id = row.id.strip()
            if not row_id:
                errors.append(f"state={name} row id is empty (title={row.title!r})")
            elif row_id in seen:
                errors.append(f"state={name} duplicate row id {row_id!r}")
            seen.add(row_id)
            if _too_long(row.title, MAX_ROW_TITLE):
                errors.append(f"state={name} row title > {MAX_ROW_TITLE} ({len(row.title)}): {row.title!r}")
            if _too_long(row.description, MAX_ROW_DESCRIPTION):
                errors.append(
                    f"state={name} row description > {MAX_ROW_DESCRIPTION} "
                    f"({len(row.description)}): {row.description!r}"
                )
    return errors


def _check_buttons(name: str, ui: ButtonsPayload) -> list[str]:
    errors = []
    if _too_long(ui.header, MAX_HEADER):
        errors.append(f"state={name} buttons.header > {MAX_HEADER} ({len(ui.header)}): {ui.header!r}")
    if _too_long(ui.footer, MAX_FOOTER):
        errors.append(f"state={name} buttons.footer > {MAX_FOOTER} ({len(ui.footer)}): {ui.footer!r}")

    count = len(ui.buttons)
    if count < MIN_BUTTONS or count > MAX_BUTTONS:
        errors.append(f"state={name} has {count} buttons (must have {MIN_BUTTONS} to {MAX_BUTTONS})")

    seen: set[str] = set()
    for button in ui.buttons:
        button_id = button.id.strip()
        if not button_id:
            errors.append(f"state={name} button id is empty (title={button.title!r})")
        elif button_id in seen:
            errors.append(f"state={name} duplicate button id {button_id!r}")
        seen.add(button_id)
        if _too_long(button.title, MAX_BUTTON_TITLE):
            errors.append(
                f"state={name} button title > {MAX_BUTTON_TITLE} ({len(button.title)}): {button.title!r}"
            )
    return errors


def validate_state(
    name: str,
    state: StateDefinition,
    known_actions: Optional[Iterable[str]] = None,
) -> list[str]:
    """Return the defects of a single state, in field order."""
    errors = []

    if state.kind not in SUPPORTED_KINDS:
        errors.append(f"state={name} kind not supported: {state.kind!r}")

    if state.header_media is not None:
        errors.extend(_check_header_media(name, state.header_media))

    if state.kind == StateKind.LIST.value:
        if state.list_ui is None:
            errors.append(f"state={name} is a list state but has no list")
        else:
            errors.extend(_check_list(name, state.list_ui))
    elif state.kind == StateKind.BUTTONS.value:
        if state.buttons_ui is None:
            errors.append(f"state={name} is a buttons state but has no buttons")
        else:
            errors.extend(_check_buttons(name, state.buttons_ui))

    if known_actions is not None and state.action and state.action not in set(known_actions):
        errors.append(f"state={name} action not registered: {state.action!r}")

    return errors


def validate_flow(
    flow: FlowDefinition,
    known_actions: Optional[Iterable[str]] = None,
) -> list[str]:
    """
    Validate a whole flow.

    Args:
        flow:          The loaded flow document
        known_actions: Registered action names. When given, a state naming an
                       unregistered action is a defect.

    Returns:
        Ordered list of human-readable defects; empty means the flow is valid.
    """
    if not flow.states:
        return ["flow has no states"]

    errors = []
    if flow.default_state not in flow.states:
        errors.append(f"default_state {flow.default_state!r} is not a state")

    actions = set(known_actions) if known_actions is not None else None
    for name in sorted(flow.states):
        errors.extend(validate_state(name, flow.states[name], actions))
    return errors


def ensure_valid(
    tenant: str,
    flow: FlowDefinition,
    known_actions: Optional[Iterable[str]] = None,
) -> FlowDefinition:
    """Return the flow unchanged, or raise FlowValidationError."""
    errors = validate_flow(flow, known_actions)
    if errors:
        raise FlowValidationError(tenant, errors)
    return flow
