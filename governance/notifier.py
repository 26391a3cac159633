"""
notifier.py — Webhook notification for critical alerts.

Posts a Slack-compatible message summarising active `critica` alerts to an
incoming webhook. The URL is read from the environment variable named in
config (default GOVERNANCE_WEBHOOK_URL); when it is unset the message is
logged instead and nothing is sent.

Delivery failure is reported through the return value and never raised:
alerting is a side channel and must not fail the run that triggered it.
"""

import logging
import os
from typing import Any, Iterable, Optional

import requests

from governance.models import AlertaFinanciera, PrioridadAlerta

logger = logging.getLogger(__name__)

MAX_LISTED_ALERTS = 10


def build_payload(alerts: list[AlertaFinanciera], project_name: str) -> dict[str, Any]:
    """Slack block-kit payload for a list of critical alerts."""
    lines = [
        f"• *{a.proyecto_nombre}* — {a.titulo}: {a.mensaje}"
        for a in alerts[:MAX_LISTED_ALERTS]
    ]
    if len(alerts) > MAX_LISTED_ALERTS:
        lines.append(f"…and {len(alerts) - MAX_LISTED_ALERTS} more")

    return {
        "text": f"{project_name}: {len(alerts)} critical financial alert(s)",
        "blocks": [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"🚨 {len(alerts)} alerta(s) crítica(s)"},
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": "\n".join(lines)},
            },
        ],
    }


class WebhookNotifier:
    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: float = 10,
        project_name: str = "Construction Financial Governance",
        session: Optional[requests.Session] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.project_name = project_name
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> "WebhookNotifier":
        notifier_cfg = cfg.get("notifier", {})
        return cls(
            webhook_url=os.environ.get(notifier_cfg.get("webhook_env_var", "GOVERNANCE_WEBHOOK_URL")),
            timeout=notifier_cfg.get("timeout_seconds", 10),
            project_name=cfg.get("project", {}).get("name", "Construction Financial Governance"),
        )

    def notify_critical(self, alerts: Iterable[AlertaFinanciera]) -> bool:
        """Send the critical subset of `alerts`.

        Returns:
            True if there was nothing to send or the webhook accepted the
            message, False on a missing URL or delivery failure.
        """
        critical = [a for a in alerts if a.prioridad == PrioridadAlerta.CRITICA and a.is_active]
        if not critical:
            logger.info("No critical alerts — nothing to notify")
            return True

        payload = build_payload(critical, self.project_name)
        if not self.webhook_url:
            logger.warning(
                "Webhook URL not configured — %d critical alert(s) not sent: %s",
                len(critical),
                payload["text"],
            )
            return False

        try:
            response = self.session.post(self.webhook_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Webhook delivery failed: %s", exc)
            return False

        logger.info("Critical alert notification sent (%d alerts)", len(critical))
        return True
