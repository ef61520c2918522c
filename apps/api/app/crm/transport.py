from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from opentelemetry import trace

from app.context import get_correlation_id
from app.core.config import get_settings


logger = logging.getLogger("app.crm.transport")
tracer = trace.get_tracer("app.crm.transport")


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    success: bool
    error: str | None = None
    provider_message_id: str | None = None

    @classmethod
    def ok(cls, provider_message_id: str | None = None) -> DeliveryResult:
        return cls(success=True, provider_message_id=provider_message_id)

    @classmethod
    def failed(cls, error: str) -> DeliveryResult:
        return cls(success=False, error=error)


class Transport(Protocol):
    def send(self, recipient: str, subject: str, body: str) -> DeliveryResult: ...


class LoggingTransport:
    """Records outbound messages in the log instead of handing them to a provider."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, recipient: str, subject: str, body: str) -> DeliveryResult:
        with tracer.start_as_current_span("crm.transport.send") as span:
            span.set_attribute("correlation_id", get_correlation_id())
            span.set_attribute("subject_length", len(subject))
            self.sent.append((recipient, subject, body))
            logger.info("transport.message_logged", extra={"status": "SENT"})
            return DeliveryResult.ok(provider_message_id=f"log-{len(self.sent)}")


class DisabledTransport:
    def send(self, recipient: str, subject: str, body: str) -> DeliveryResult:
        return DeliveryResult.failed("transport disabled")


def build_transport(name: str | None = None) -> Transport:
    transport_name = (name or get_settings().nurture_transport).lower()
    if transport_name == "log":
        return LoggingTransport()
    if transport_name == "disabled":
        return DisabledTransport()
    raise ValueError(f"unknown nurture transport '{transport_name}'")
