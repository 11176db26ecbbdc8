from typing import Optional, Dict, Any
import asyncio
from pathlib import Path
import jinja2
import structlog
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from ..config import Settings, get_settings
from ..errors import QueueDeliveryError

logger = structlog.get_logger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"


class AlertEmailService:
    """Operator e-mail for SYSTEM_ALERT jobs, sent through SendGrid."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[SendGridAPIClient] = None):
        self.settings = settings or get_settings()
        self.enabled = self.settings.email_enabled
        self.sender_email = self.settings.sender_email
        self.alert_email = self.settings.alert_email

        if not self.enabled:
            logger.info("alert_email_disabled")

        self.sg = client or (SendGridAPIClient(api_key=self.settings.sendgrid_api_key) if self.enabled else None)

        self.template_env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=jinja2.select_autoescape(["html"]),
        )

    def render(self, template_name: str, context: Dict[str, Any]) -> str:
        template = self.template_env.get_template(f"{template_name}.html")
        return template.render(**context)

    async def send_system_alert(self, title: str, body: str,
                                data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.enabled:
            return {"success": False, "message": "Email service not configured"}

        html_content = self.render("system_alert", {
            "subject": title,
            "title": title,
            "body": body,
            "data": data or {},
            "app_name": self.settings.app_name,
        })
        mail = Mail(
            from_email=self.sender_email,
            to_emails=self.alert_email,
            subject=f"[{self.settings.app_name}] {title}",
            html_content=html_content,
        )
        try:
            response = await asyncio.to_thread(self.sg.send, mail)
        except Exception as e:
            logger.warning("alert_email_failed", error=str(e))
            raise QueueDeliveryError(f"Failed to send alert e-mail: {e}") from e

        status_code = getattr(response, "status_code", 202)
        if status_code >= 400:
            raise QueueDeliveryError(f"SendGrid returned {status_code}")

        logger.info("alert_email_sent", title=title)
        return {"success": True, "message": "Email sent successfully"}
