"""Shared test fixtures for flowly."""
import copy
import json
from typing import Any

import pytest

from actions.registry import ActionName, ActionRegistry
from channels.base import ChannelClient, ChannelError
from context.sessions import SessionStore
from core.dispatcher import Dispatcher
from core.renderer import Renderer
from core.tenants import TenantResolver
from flows.cache import FlowCache
from flows.validator import FlowConfigError
from models.schemas import EventKind, FlowDefinition, InboundEvent, OutgoingMessage, StateKind


BROKER_FLOW: dict[str, Any] = {
    "version": "1",
    "states": {
        "MENU": {
            "type": "list",
            "body": "Hola {{name}}, elegí una opción",
            "list": {
                "header": "Broker",
                "footer": "Escribí menu para volver",
                "button_text": "Ver opciones",
                "sections": [{
                    "title": "Opciones",
                    "rows": [
                        {"id": "A", "title": "Precios", "description": "Cuánto cuesta"},
                        {"id": "B", "title": "Contacto", "description": ""},
                    ],
                }],
            },
            "on_select_next": {"A": "PRICING", "B": "CONTACT"},
        },
        "PRICING": {
            "type": "text",
            "body": "Our price is {{price}}",
            "action": "mock_crm_lookup",
            "on_text_next": "CONTACT",
        },
        "CONTACT": {
            "type": "buttons",
            "body": "¿Te llamamos, {{name}}?",
            "buttons": {
                "buttons": [
                    {"id": "YES", "title": "Sí"},
                    {"id": "NO", "title": "No"},
                ],
            },
            "on_select_next": {"YES": "DONE", "NO": "MENU"},
        },
        "DONE": {
            "type": "text",
            "body": "Gracias {{name}}",
        },
    },
}


@pytest.fixture
def broker_flow_doc() -> dict[str, Any]:
    return copy.deepcopy(BROKER_FLOW)


@pytest.fixture
def broker_flow(broker_flow_doc) -> FlowDefinition:
    return FlowDefinition.model_validate(broker_flow_doc)


@pytest.fixture
def config_root(tmp_path, broker_flow_doc):
    """A configs/ tree with the broker tenant on disk."""
    tenant = tmp_path / "broker"
    tenant.mkdir()
    (tenant / "flow.json").write_text(json.dumps(broker_flow_doc), encoding="utf-8")
    return tmp_path


# ── Events ──────────────────────────────────────────

def text_event(sender: str = "5491100000001", text: str = "hola", name: str = "Ana",
               tenant_key: str = "PHONE_ID") -> InboundEvent:
    return InboundEvent(tenant_key=tenant_key, sender=sender, sender_name=name,
                        kind=EventKind.TEXT, text=text)


def list_reply(option_id: str, sender: str = "5491100000001", name: str = "Ana",
               tenant_key: str = "PHONE_ID") -> InboundEvent:
    return InboundEvent(tenant_key=tenant_key, sender=sender, sender_name=name,
                        kind=EventKind.LIST_REPLY, option_id=option_id)


def button_reply(option_id: str, sender: str = "5491100000001", name: str = "Ana",
                 tenant_key: str = "PHONE_ID") -> InboundEvent:
    return InboundEvent(tenant_key=tenant_key, sender=sender, sender_name=name,
                        kind=EventKind.BUTTON_REPLY, option_id=option_id)


# ── Collaborators ───────────────────────────────────

class RecordingChannel(ChannelClient):
    """Collects every message instead of delivering it."""

    channel_name = "recording"

    def __init__(self, fail_kinds: tuple[StateKind, ...] = ()):
        super().__init__()
        self.sent: list[tuple[str, OutgoingMessage]] = []
        self.fail_kinds = fail_kinds

    async def _do_send(self, recipient: str, message: OutgoingMessage) -> dict[str, Any]:
        if message.kind in self.fail_kinds:
            raise ChannelError(f"refused {message.kind.value}", self.channel_name)
        self.sent.append((recipient, message))
        return {"status": "sent"}

    def to(self, recipient: str) -> list[OutgoingMessage]:
        return [m for r, m in self.sent if r == recipient]


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def registry() -> ActionRegistry:
    async def fetch_price(tenant, user_id, session):
        return {"price": "100"}

    reg = ActionRegistry()
    reg.register_handler(ActionName.MOCK_CRM_LOOKUP, fetch_price)
    return reg


def dict_loader(flows: dict[str, FlowDefinition]):
    def load(tenant: str) -> FlowDefinition:
        if tenant not in flows:
            raise FlowConfigError(tenant, f"No flow for {tenant}")
        return flows[tenant]
    return load


@pytest.fixture
def make_dispatcher(broker_flow, registry, channel):
    """Dispatcher over in-memory collaborators; override any of them by keyword."""
    def build(flows=None, actions=None, chan=None, sessions=None, mapping=None) -> Dispatcher:
        chan = chan or channel
        return Dispatcher(
            flows=FlowCache(loader=dict_loader(flows or {"broker": broker_flow})),
            sessions=sessions or SessionStore(shards=4),
            actions=actions or registry,
            renderer=Renderer("https://bot.example.com"),
            tenants=TenantResolver(mapping or {}, default_tenant="broker"),
            channels=lambda phone_number_id: chan,
        )
    return build


@pytest.fixture
def dispatcher(make_dispatcher) -> Dispatcher:
    return make_dispatcher()
