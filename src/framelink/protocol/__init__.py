"""Wire protocol for Frame glasses: outbound messages, codec and inbound types."""

from framelink.protocol.codec import encode, encode_message, max_payload_length
from framelink.protocol.messages import (
    MessageType,
    TxAutoExpSettings,
    TxCaptureSettings,
    TxCode,
    TxManualExpSettings,
    TxMsg,
    TxPlainText,
)
from framelink.protocol.rx import DecodedMessage, InboundFlag

__all__ = [
    "encode",
    "encode_message",
    "max_payload_length",
    "MessageType",
    "TxMsg",
    "TxCode",
    "TxAutoExpSettings",
    "TxManualExpSettings",
    "TxCaptureSettings",
    "TxPlainText",
    "InboundFlag",
    "DecodedMessage",
]
