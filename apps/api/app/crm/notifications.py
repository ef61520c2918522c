from __future__ import annotations

import logging
from typing import Protocol

from app.crm.models import CRMContact, CRMSalesRep
from app.crm.transport import DeliveryResult, Transport


logger = logging.getLogger("app.crm.notifications")


class LeadAlertNotifier(Protocol):
    def notify_lead_assigned(self, rep: CRMSalesRep, contact: CRMContact) -> None: ...


class TransportLeadAlertNotifier:
    """Sends the "new lead assigned" alert to the rep through the outbound transport."""

    def __init__(self, transport: Transport) -> None:
        self.transport = transport

    def notify_lead_assigned(self, rep: CRMSalesRep, contact: CRMContact) -> None:
        if not rep.email:
            logger.info("lead_alert.skipped", extra={"rep_id": str(rep.id), "contact_id": str(contact.id)})
            return
        subject = f"New lead assigned: {contact.name}"
        details = [f"Lead: {contact.name}"]
        if contact.company:
            details.append(f"Company: {contact.company}")
        if contact.score is not None:
            details.append(f"Score: {contact.score}")
        if contact.source:
            details.append(f"Source: {contact.source}")
        result: DeliveryResult = self.transport.send(rep.email, subject, "\n".join(details))
        if not result.success:
            raise RuntimeError(result.error or "lead alert delivery failed")
