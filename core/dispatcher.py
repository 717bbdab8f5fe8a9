"""
Dispatcher — sequences the flow engine for one inbound event.

Per event:
  resolve tenant → get flow → get-or-create session → build variables
  → resolve next state → run the target state's action → persist session
  → render → deliver

Failure policy:
  Flow cannot be loaded        → apology, session untouched
  Action fails / unregistered  → logged; transition and render still happen
  Render or delivery fails     → logged; best-effort plain-text apology
  Anything else raised         → logged with traceback; the event is dropped

A failure in one conversation never propagates to another: each event is
handled in isolation and `handle_events` gathers them concurrently.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass
from typing import Callable

from actions.registry import ActionError, ActionRegistry
from channels.base import ChannelClient, ChannelError
from context.sessions import SessionKey, SessionStore
from context.state_machine import resolve
from core.renderer import Renderer, RenderError
from core.tenants import TenantResolver
from flows.cache import FlowCache
from flows.validator import FlowConfigError
from models.schemas import InboundEvent, Session, SessionKeys

logger = structlog.get_logger()

APOLOGY_PROCESSING = "Perdón, hubo un error. Probá de nuevo."
APOLOGY_RENDER = "Perdón, hubo un problema mostrando el menú."

ChannelProvider = Callable[[str], ChannelClient]


class ActionOutcome:
    NONE = "none"                   # target state has no action
    OK = "ok"
    FAILED = "failed"
    UNREGISTERED = "unregistered"


@dataclass
class DispatchResult:
    tenant: str
    user: str
    previous_state: str = ""
    next_state: str = ""
    handled: bool = False
    action: str = ""
    action_outcome: str = ActionOutcome.NONE
    delivered: bool = False
    error: str = ""


class Dispatcher:
    """
    Owns no state of its own: the flow cache, session store, action registry
    and channel clients are handed in at construction.
    """

    def __init__(
        self,
        flows: FlowCache,
        sessions: SessionStore,
        actions: ActionRegistry,
        renderer: Renderer,
        tenants: TenantResolver,
        channels: ChannelProvider,
        fallback_contact_name: str = "ahí",
    ):
        self.flows = flows
        self.sessions = sessions
        self.actions = actions
        self.renderer = renderer
        self.tenants = tenants
        self.channels = channels
        self.fallback_contact_name = fallback_contact_name

    # ══════════════════════════════════════════════════════════
    #  ENTRY POINTS
    # ══════════════════════════════════════════════════════════

    async def handle_events(self, events: list[InboundEvent]) -> list[DispatchResult]:
        """Dispatch a batch concurrently. Results come back in input order."""
        if not events:
            return []
        return list(await asyncio.gather(*(self.handle_event(e) for e in events)))

    async def handle_event(self, event: InboundEvent) -> DispatchResult:
        tenant = self.tenants.resolve(event.tenant_key)
        result = DispatchResult(tenant=tenant, user=event.sender)
        try:
            await self._dispatch(event, result)
        except Exception as e:
            logger.exception("event_dispatch_failed",
                             tenant=tenant,
                             user=event.sender,
                             error=str(e))
            result.error = str(e)
        return result

    async def _dispatch(self, event: InboundEvent, result: DispatchResult) -> None:
        tenant, user = result.tenant, result.user
        channel = self.channels(event.tenant_key)

        logger.info("inbound_event",
                    tenant=tenant,
                    user=user,
                    kind=event.kind.value,
                    option_id=event.option_id,
                    text=event.text[:100])

        # 1. Flow (a cache miss reads the disk off the event loop)
        try:
            flow = self.flows.peek(tenant)
            if flow is None:
                flow = await asyncio.to_thread(self.flows.get, tenant)
        except FlowConfigError as e:
            logger.error("flow_load_failed", tenant=tenant, error=str(e), defects=e.defects)
            result.error = str(e)
            await self._apologize(channel, user, APOLOGY_PROCESSING, tenant)
            return

        # 2. Session and variables
        key = SessionKey(tenant, user)
        session, _ = self.sessions.get_or_create(key, flow.default_state)
        result.previous_state = session.state

        profile_name = event.sender_name.strip()
        if profile_name:
            session.data[SessionKeys.NAME] = profile_name

        variables = {SessionKeys.NAME: self.fallback_contact_name}
        variables.update(session.data)

        if event.is_interactive and event.option_id:
            session.last_selected_id = event.option_id
            variables[SessionKeys.LAST_SELECTED_ID] = event.option_id

        # 3. Transition
        resolution = resolve(flow, session.state, event)
        result.next_state = resolution.next_state
        result.handled = resolution.handled
        logger.info("transition_resolved",
                    tenant=tenant,
                    user=user,
                    from_state=session.state,
                    to_state=resolution.next_state,
                    handled=resolution.handled)

        # 4. Action (no lock is held here)
        target = flow.get_state(resolution.next_state)
        if target is not None and target.action:
            result.action = target.action
            output = await self._run_action(tenant, user, target.action, session, result)
            variables.update(output)
            session.merge(output)

        # 5. Persist
        session.state = resolution.next_state
        session.touch()
        self.sessions.set(key, session)

        # 6. Render and deliver
        try:
            message = self.renderer.render(tenant, flow, resolution.next_state, variables)
            await channel.send(user, message)
        except (RenderError, ChannelError) as e:
            logger.error("render_or_send_failed",
                         tenant=tenant,
                         user=user,
                         state=resolution.next_state,
                         error=str(e))
            result.error = str(e)
            await self._apologize(channel, user, APOLOGY_RENDER, tenant)
            return

        result.delivered = True

    # ══════════════════════════════════════════════════════════
    #  HELPERS
    # ══════════════════════════════════════════════════════════

    async def _run_action(
        self, tenant: str, user: str, name: str, session: Session, result: DispatchResult,
    ) -> dict[str, str]:
        handler = self.actions.get_handler(name)
        if handler is None:
            logger.warning("action_not_registered", tenant=tenant, action=name)
            result.action_outcome = ActionOutcome.UNREGISTERED
            return {}

        try:
            output = await handler(tenant, user, session)
        except ActionError as e:
            logger.error("action_failed", tenant=tenant, user=user, action=name, error=str(e))
            result.action_outcome = ActionOutcome.FAILED
            return {}
        except Exception as e:
            logger.exception("action_crashed", tenant=tenant, user=user, action=name, error=str(e))
            result.action_outcome = ActionOutcome.FAILED
            return {}

        result.action_outcome = ActionOutcome.OK
        output = {str(k): str(v) for k, v in (output or {}).items()}
        logger.info("action_executed", tenant=tenant, user=user, action=name, keys=sorted(output))
        return output

    @staticmethod
    async def _apologize(channel: ChannelClient, user: str, text: str, tenant: str) -> None:
        try:
            await channel.send_text(user, text)
        except ChannelError as e:
            logger.error("apology_send_failed", tenant=tenant, user=user, error=str(e))

    def stats(self) -> dict[str, int]:
        return {
            "cached_flows": self.flows.count,
            "sessions": self.sessions.count,
            "actions": self.actions.count,
        }
