"""
WhatsApp Channel Client — WhatsApp Business Cloud API integration.

Provides:
- Outbound: text, interactive list and interactive button messages
- Recipient normalization for non-production numbers
- Webhook verification (hub.verify_token challenge, X-Hub-Signature-256)
- Inbound: webhook payload → normalized InboundEvent list
"""
from __future__ import annotations

import hashlib
import hmac
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import ChannelClient, ChannelError
from config.settings import WhatsAppConfig
from models.schemas import EventKind, InboundEvent, OutgoingMessage, StateKind

logger = structlog.get_logger()

GRAPH_URL = "https://graph.facebook.com"


# ══════════════════════════════════════════════════════════════
#  RECIPIENTS
# ══════════════════════════════════════════════════════════════

def normalize_recipient(to: str, env: str = "dev") -> str:
    """
    Outside prod the Cloud API test allow-list stores Argentine mobiles
    without the mobile '9': inbound wa_id 549XXXXXXXXXX is answered at
    54XXXXXXXXXX.
    """
    if env == "prod":
        return to
    to = to.strip().lstrip("+")
    if to.startswith("549") and len(to) > 3:
        return "54" + to[3:]
    return to


# ══════════════════════════════════════════════════════════════
#  OUTBOUND ENCODING
# ══════════════════════════════════════════════════════════════

def _header(message: OutgoingMessage) -> Optional[dict[str, Any]]:
    if message.header_image_url.strip():
        return {"type": "image", "image": {"link": message.header_image_url}}
    if message.header.strip():
        return {"type": "text", "text": message.header}
    return None


def encode_message(to: str, message: OutgoingMessage) -> dict[str, Any]:
    """Cloud API request body for one rendered message."""
    payload: dict[str, Any] = {"messaging_product": "whatsapp", "to": to}

    if message.kind == StateKind.TEXT:
        payload["type"] = "text"
        payload["text"] = {"body": message.body}
        return payload

    if message.kind == StateKind.LIST:
        sections = []
        for section in message.sections:
            rows = []
            for row in section.rows:
                item = {"id": row.id, "title": row.title}
                if row.description.strip():
                    item["description"] = row.description
                rows.append(item)
            sections.append({"title": section.title, "rows": rows})
        interactive: dict[str, Any] = {
            "type": "list",
            "body": {"text": message.body},
            "action": {"button": message.button_text, "sections": sections},
        }
    elif message.kind == StateKind.BUTTONS:
        interactive = {
            "type": "button",
            "body": {"text": message.body},
            "action": {"buttons": [
                {"type": "reply", "reply": {"id": b.id, "title": b.title}}
                for b in message.buttons
            ]},
        }
    else:
        raise ChannelError(f"Cannot encode message kind {message.kind!r}", "whatsapp")

    header = _header(message)
    if header:
        interactive["header"] = header
    if message.footer.strip():
        interactive["footer"] = {"text": message.footer}

    payload["type"] = "interactive"
    payload["interactive"] = interactive
    return payload


# ══════════════════════════════════════════════════════════════
#  INBOUND PARSING
# ══════════════════════════════════════════════════════════════

def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _dicts(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _parse_message(msg: dict[str, Any], tenant_key: str, sender_name: str) -> InboundEvent:
    msg_type = msg.get("type", "")
    event = {
        "tenant_key": tenant_key,
        "sender": _str(msg.get("from")),
        "sender_name": sender_name,
        "message_id": _str(msg.get("id")),
    }

    if msg_type == "text":
        return InboundEvent(**event, kind=EventKind.TEXT,
                            text=_str(_dict(msg.get("text")).get("body")))

    if msg_type == "interactive":
        interactive = _dict(msg.get("interactive"))
        itype = interactive.get("type", "")
        reply = _dict(interactive.get(itype)) if itype in ("list_reply", "button_reply") else {}
        if reply:
            kind = EventKind.LIST_REPLY if itype == "list_reply" else EventKind.BUTTON_REPLY
            return InboundEvent(**event, kind=kind,
                                option_id=_str(reply.get("id")), option_title=_str(reply.get("title")))

    return InboundEvent(**event, kind=EventKind.OTHER)


def parse_webhook(payload: dict[str, Any]) -> list[InboundEvent]:
    """
    Every message of every change of every entry, in payload order.
    Status-only updates (sent/delivered/read) yield nothing, and parts of
    the payload that are not the expected objects are skipped.
    """
    events = []
    for entry in _dicts(payload.get("entry")):
        for change in _dicts(entry.get("changes")):
            value = _dict(change.get("value"))
            messages = _dicts(value.get("messages"))
            if not messages:
                continue
            tenant_key = _str(_dict(value.get("metadata")).get("phone_number_id"))
            contacts = _dicts(value.get("contacts"))
            sender_name = ""
            if contacts:
                sender_name = _str(_dict(contacts[0].get("profile")).get("name")).strip()
            for msg in messages:
                event = _parse_message(msg, tenant_key, sender_name)
                if event.sender:
                    events.append(event)
    return events


# ══════════════════════════════════════════════════════════════
#  WHATSAPP CLIENT
# ══════════════════════════════════════════════════════════════

class WhatsAppClient(ChannelClient):
    """
    Sends rendered messages from one business phone number.

    One client per phone-number id; the access token is shared by all of
    them.
    """

    channel_name = "whatsapp"

    def __init__(
        self,
        phone_number_id: str,
        config: WhatsAppConfig,
        env: str = "dev",
        http: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__()
        if not config.access_token:
            raise ChannelError("WhatsApp access token is not configured", self.channel_name)
        self.phone_number_id = phone_number_id
        self.env = env
        self._config = config
        self._force_to = config.force_to if env == "dev" else ""
        self._url = f"{GRAPH_URL}/{config.api_version}/{phone_number_id}/messages"
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=15.0)

    def _address(self, recipient: str) -> str:
        if self._force_to:
            logger.warning("whatsapp_force_to_active", original=recipient, forced=self._force_to)
            recipient = self._force_to
        return normalize_recipient(recipient, self.env)

    async def _do_send(self, recipient: str, message: OutgoingMessage) -> dict[str, Any]:
        payload = encode_message(self._address(recipient), message)
        try:
            response = await self._post(payload)
        except httpx.TransportError as e:
            raise ChannelError(f"WhatsApp transport error: {e}", self.channel_name, retryable=True) from e

        if not response.is_success:
            raise ChannelError(
                f"WhatsApp API returned {response.status_code}: {response.text}",
                self.channel_name,
                retryable=response.status_code >= 500,
            )
        logger.info("whatsapp_sent",
                    phone_number_id=self.phone_number_id,
                    kind=message.kind.value)
        try:
            return response.json()
        except ValueError:
            logger.warning("whatsapp_response_not_json",
                           phone_number_id=self.phone_number_id,
                           status=response.status_code)
            return {}

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        return await self._http.post(
            self._url,
            json=payload,
            headers={"Authorization": f"Bearer {self._config.access_token}"},
        )

    async def shutdown(self) -> None:
        if self._owns_http:
            await self._http.aclose()


# ══════════════════════════════════════════════════════════════
#  WEBHOOK VERIFICATION
# ══════════════════════════════════════════════════════════════

def verify_subscription(params: dict[str, Any], verify_token: str) -> Optional[str]:
    """
    Verify the webhook subscription handshake.
    Returns the challenge string on success, None on failure.
    """
    mode = params.get("hub.mode", "")
    token = params.get("hub.verify_token", "")
    challenge = params.get("hub.challenge", "")
    if mode == "subscribe" and token and hmac.compare_digest(token.encode(), verify_token.encode()):
        return challenge
    return None


def verify_signature(body: bytes, signature: str, app_secret: str) -> bool:
    """Check X-Hub-Signature-256. Always passes when no app secret is set."""
    if not app_secret:
        return True
    if not signature.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode(), signature[len("sha256="):].encode())


# ══════════════════════════════════════════════════════════════
#  CLIENT POOL
# ══════════════════════════════════════════════════════════════

class WhatsAppClientPool:
    """One WhatsAppClient per business phone-number id, sharing one HTTP pool."""

    def __init__(self, config: WhatsAppConfig, env: str = "dev", http: Optional[httpx.AsyncClient] = None):
        if not config.access_token:
            raise ChannelError("WhatsApp access token is not configured", "whatsapp")
        self._config = config
        self._env = env
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=15.0)
        self._clients: dict[str, WhatsAppClient] = {}

    def get(self, phone_number_id: str) -> WhatsAppClient:
        client = self._clients.get(phone_number_id)
        if client is None:
            client = WhatsAppClient(phone_number_id, self._config, self._env, self._http)
            self._clients[phone_number_id] = client
        return client

    def for_event(self, event: InboundEvent) -> WhatsAppClient:
        return self.get(event.tenant_key)

    async def shutdown(self) -> None:
        if self._owns_http:
            await self._http.aclose()
