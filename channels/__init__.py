"""Outbound channel clients and inbound webhook parsing."""
from channels.base import (
    ChannelClient,
    ChannelError,
    CircuitBreaker,
    CircuitOpenError,
)
from channels.whatsapp_adapter import (
    WhatsAppClient,
    WhatsAppClientPool,
    encode_message,
    normalize_recipient,
    parse_webhook,
    verify_signature,
    verify_subscription,
)

__all__ = [
    "ChannelClient", "ChannelError", "CircuitBreaker", "CircuitOpenError",
    "WhatsAppClient", "WhatsAppClientPool",
    "encode_message", "normalize_recipient", "parse_webhook",
    "verify_signature", "verify_subscription",
]
