"""
Notification dispatcher.

Registered providers:
  email — EmailNotificationDispatcher (Django mail, one template per event type)

Templates live at lifecycle/templates/lifecycle/notifications/<event_type>.txt;
the first line is the subject, the rest the body.
"""

import logging
import smtplib

from django.conf import settings
from django.core.mail import EmailMessage
from django.template.loader import render_to_string

from .base import BaseNotificationDispatcher
from .types import Recipient

logger = logging.getLogger(__name__)


class EmailNotificationDispatcher(BaseNotificationDispatcher):

    provider = "email"

    def notify(self, recipient: Recipient, event_type: str, payload: dict) -> None:
        if not recipient.email:
            logger.warning("[Notify] %s %s has no email; %s not sent",
                           recipient.kind, recipient.id, event_type)
            return

        rendered = render_to_string(
            f"lifecycle/notifications/{event_type}.txt",
            dict(payload, recipient=recipient),
        ).strip()
        subject, _, body = rendered.partition("\n")

        message = EmailMessage(
            subject=subject.strip(),
            body=body.strip(),
            from_email=settings.DEFAULT_FROM_EMAIL,
            to=[recipient.email],
        )
        attachment = payload.get("attachment")
        if attachment:
            message.attach(attachment["filename"], attachment["content"], attachment["mimetype"])

        try:
            message.send()
        except (smtplib.SMTPException, OSError):
            logger.exception("[Notify] %s to %s %s failed", event_type, recipient.kind, recipient.id)
            return
        logger.info("[Notify] %s sent to %s %s", event_type, recipient.kind, recipient.id)
