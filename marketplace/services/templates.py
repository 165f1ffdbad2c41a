from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


@dataclass(frozen=True)
class Template:
    subject: str
    body: str


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    body: str


TEMPLATES: Dict[str, Template] = {
    "request_created": Template(
        subject="We received your request: {project_title}",
        body="Hi,\n\nYour request \"{project_title}\" was received. We are matching you with providers near {postal_code}.\n\n{request_url}",
    ),
    "no_provider_available": Template(
        subject="Still looking for a provider for {project_title}",
        body="We could not find an available provider for \"{project_title}\" yet. We will keep looking and let you know.\n\n{request_url}",
    ),
    "new_lead": Template(
        subject="New lead: {project_title}",
        body="A customer near {postal_code} needs help with \"{project_title}\".\n\nLead cost: {lead_cost}\n\nView and respond: {lead_url}",
    ),
    "lead_accepted_customer": Template(
        subject="Provider assigned for {project_title}",
        body="{provider_name} accepted your request \"{project_title}\" and will be in touch.\n\n{request_url}",
    ),
    "lead_accepted_provider": Template(
        subject="You accepted: {project_title}",
        body="You accepted the lead for \"{project_title}\". Contact the customer to agree on the work.\n\n{lead_url}",
    ),
    "lead_payment_failed": Template(
        subject="Payment failed - lead acceptance",
        body="Hi {provider_name},\n\nWe could not charge the lead cost of {lead_cost} for \"{project_title}\": {charge_error}\n\nCheck your payment method and try accepting again while the lead is still open.\n\n{lead_url}",
    ),
    "lead_moved_to_alternative": Template(
        subject="New lead: {project_title}",
        body="Hi {provider_name},\n\nA lead near {postal_code} for \"{project_title}\" has been passed to you as an alternative provider.\n\nLead cost: {lead_cost}\n\nView and respond: {lead_url}",
    ),
    "lead_no_longer_available": Template(
        subject="Lead no longer available: {project_title}",
        body="The request \"{project_title}\" was taken by another provider or cancelled.",
    ),
    "work_started": Template(
        subject="Work started on {project_title}",
        body="{provider_name} marked \"{project_title}\" as in progress.\n\n{request_url}",
    ),
    "work_completed": Template(
        subject="Please review the work on {project_title}",
        body="{provider_name} marked \"{project_title}\" as complete. Please approve the work to release payment.\n\n{request_url}",
    ),
    "payout_scheduled": Template(
        subject="Payout scheduled for {project_title}",
        body="The customer approved \"{project_title}\". A payout of {payout_amount} (fee {platform_fee}) is being processed.",
    ),
    "payout_completed": Template(
        subject="Payout sent for {project_title}",
        body="Your payout of {payout_amount} for \"{project_title}\" was sent. Transfer reference: {transfer_id}.",
    ),
    "payout_failed": Template(
        subject="Payout problem for {project_title}",
        body="We could not send your payout of {payout_amount} for \"{project_title}\". Our team has been notified.",
    ),
    "request_cancelled": Template(
        subject="Request cancelled: {project_title}",
        body="The request \"{project_title}\" was cancelled.",
    ),
}


def render(message_type: str, payload: Mapping[str, Any]) -> RenderedMessage:
    """Fill a template; missing placeholders render empty. Unknown types raise ``KeyError``."""
    template = TEMPLATES[message_type]
    values = _Blank({key: "" if value is None else value for key, value in payload.items()})
    body = template.body.format_map(values)
    if values.get("unsubscribe_url"):
        body += f"\n\nUnsubscribe: {values['unsubscribe_url']}"
    return RenderedMessage(subject=template.subject.format_map(values), body=body)
