"""
Transition Resolver — decides a conversation's next state.

Pure and deterministic: (flow, current state, inbound event) → (next state,
handled). No I/O, no logging, no session mutation.

Resolution:
  1. Unknown current state            → default state, unhandled
  2. Text "menu" (trimmed, any case)  → default state, handled
     Text with on_text_next           → that state, handled
     Other text                       → default state, unhandled
  3. List/button reply whose option id is in on_select_next
                                      → mapped state, handled
     Any other reply                  → default state, unhandled
  4. Any other event kind             → default state, unhandled

A transition whose target is not a state of the flow also lands on the
default state, unhandled. Whatever goes wrong, the user ends up back at the
menu instead of in a dead state.
"""
from __future__ import annotations

from typing import NamedTuple

from models.schemas import EventKind, FlowDefinition, InboundEvent

MENU_KEYWORD = "menu"


class Resolution(NamedTuple):
    """Outcome of resolving one inbound event."""
    next_state: str
    handled: bool

    def __repr__(self):
        tag = "handled" if self.handled else "fallback"
        return f"<Resolution → {self.next_state} [{tag}]>"


def _fallback(flow: FlowDefinition) -> Resolution:
    return Resolution(flow.default_state, False)


def _goto(flow: FlowDefinition, target: str) -> Resolution:
    if target and flow.has_state(target):
        return Resolution(target, True)
    return _fallback(flow)


def is_menu_keyword(text: str) -> bool:
    return text.strip().casefold() == MENU_KEYWORD


def resolve(flow: FlowDefinition, current_state: str, event: InboundEvent) -> Resolution:
    """Resolve the next state for `event` received while in `current_state`."""
    state = flow.get_state(current_state)
    if state is None:
        return _fallback(flow)

    if event.kind == EventKind.TEXT:
        if is_menu_keyword(event.text):
            return Resolution(flow.default_state, True)
        if state.on_text_next:
            return _goto(flow, state.on_text_next)
        return _fallback(flow)

    if event.is_interactive:
        option_id = event.option_id
        if option_id and option_id in state.on_select_next:
            return _goto(flow, state.on_select_next[option_id])
        return _fallback(flow)

    return _fallback(flow)
