"""Escalation notices to a human specialist, delivered with Resend.

Two situations page a specialist: a session that runs unusually long and a
turn the frustration scorer flags. Without a Resend key or recipient the
notice is only logged.
"""

from __future__ import annotations

import asyncio
import html
import logging
from datetime import UTC, datetime
from string import Template
from typing import TYPE_CHECKING, Any

import resend

if TYPE_CHECKING:
    from eaa_assistant.services.frustration import FrustrationAnalysis

logger = logging.getLogger(__name__)

_LAYOUT = Template(
    """<div style="font-family: Arial, sans-serif; max-width: 650px; margin: 0 auto;">
  <div style="background: #c82333; color: #ffffff; padding: 20px; text-align: center;">
    <h1 style="margin: 0; font-size: 22px;">Escalation Alert</h1>
    <p style="margin: 8px 0 0 0;">EAA Assistant - user support required</p>
  </div>
  <div style="padding: 24px;">
    <p>$intro <strong>Please connect to the chat to provide assistance.</strong></p>
    <table style="width: 100%; border-collapse: collapse;">$rows
    </table>
    $body
    <h3>Recommended actions</h3>
    <ul>
      <li>Review the conversation history to understand the user's concerns</li>
      <li>Provide personalized assistance and clarification</li>
      <li>Involve a colleague if specialized knowledge is required</li>
    </ul>
  </div>
  <p style="color: #6c757d; font-size: 12px; text-align: center;">Generated on $generated_at UTC</p>
</div>"""
)


def _rows(details: dict[str, Any]) -> str:
    return "".join(
        "\n      <tr>"
        f"<td style=\"padding: 6px 0; font-weight: 600; width: 40%;\">{html.escape(label)}:</td>"
        f"<td style=\"padding: 6px 0;\">{html.escape(str(value))}</td></tr>"
        for label, value in details.items()
    )


def render_escalation_email(intro: str, details: dict[str, Any], body: str = "") -> str:
    """Fill the shared HTML layout."""
    return _LAYOUT.substitute(
        intro=html.escape(intro),
        rows=_rows(details),
        body=body,
        generated_at=datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S"),
    )


class EscalationNotifier:
    """Sends escalation emails to the configured specialist address."""

    def __init__(self, api_key: str, from_email: str, to_email: str) -> None:
        self._api_key = api_key
        self._from_email = from_email
        self._to_email = to_email
        if not self.configured:
            logger.warning("Escalation email not configured - notices will be logged but not sent")
        else:
            resend.api_key = api_key

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._to_email)

    async def notify_message_threshold(self, session_id: str, message_count: int) -> str | None:
        """Notify that a session has grown past the message threshold."""
        escalated_at = datetime.now(UTC).isoformat()
        body = render_escalation_email(
            "A user session has been escalated because it has run unusually long.",
            {
                "Session ID": session_id,
                "Message count": message_count,
                "Escalation time": escalated_at,
            },
        )
        return await self._send(
            f"Escalation: long conversation needs a specialist ({session_id})", body
        )

    async def notify_frustration(
        self,
        *,
        user_id: str,
        session_id: str,
        question: str,
        answer: str,
        analysis: FrustrationAnalysis,
        language: str = "en",
    ) -> str | None:
        """Notify that a turn was scored as frustrated enough to escalate."""
        excerpt = (
            "<h3>Last exchange</h3>"
            f"<p><strong>User:</strong> {html.escape(question)}</p>"
            f"<p><strong>Assistant:</strong> {html.escape(answer[:1000])}</p>"
        )
        body = render_escalation_email(
            "A user session has been automatically escalated due to detected high frustration.",
            {
                "Session ID": session_id,
                "User ID": user_id,
                "Language": language,
                "Frustration level": f"{analysis.frustration_level:.2f}",
                "Confidence": f"{analysis.confidence_score:.2f}",
                "Triggers": ", ".join(analysis.trigger_phrases) or "-",
                "Reason": analysis.escalation_reason or "-",
            },
            excerpt,
        )
        return await self._send(
            f"User Frustration Alert - Specialist Intervention Required: {session_id}", body
        )

    async def _send(self, subject: str, body: str) -> str | None:
        """Deliver one notice. Returns the Resend email id, or None when not sent."""
        if not self.configured:
            logger.info(
                "Escalation email not sent (Resend not configured)",
                extra={"subject": subject},
            )
            return None

        params: resend.Emails.SendParams = {
            "from": self._from_email,
            "to": [self._to_email],
            "subject": subject,
            "html": body,
        }
        try:
            result = await asyncio.to_thread(resend.Emails.send, params)
        except Exception:
            logger.exception("Failed to send escalation email", extra={"subject": subject})
            return None

        email_id = result.get("id", "") if isinstance(result, dict) else getattr(result, "id", "")
        logger.info(
            "Escalation email sent",
            extra={"email_id": email_id, "to": self._to_email, "subject": subject},
        )
        return email_id
