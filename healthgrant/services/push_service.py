from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..config import Settings, get_settings
from ..errors import QueueDeliveryError

logger = structlog.get_logger(__name__)


class PushService:
    """Sends push notifications through an HTTP push gateway.

    Without a configured gateway the send is simulated and logged, so the
    queue still drives jobs to COMPLETED in development.
    """

    def __init__(self, settings: Optional[Settings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or get_settings()
        self.transport = transport
        self.enabled = self.settings.push_enabled

        if not self.enabled:
            logger.info("push_gateway_disabled")

    def build_message(self, device_tokens: List[str], payload: Dict[str, Any],
                      priority: str = "normal") -> Dict[str, Any]:
        notification = {
            "title": payload.get("title"),
            "body": payload.get("body"),
        }
        for key in ("icon", "badge"):
            if payload.get(key):
                notification[key] = payload[key]
        message = {
            "registration_ids": list(device_tokens),
            "notification": notification,
            "data": payload.get("data") or {},
            "priority": priority,
        }
        if payload.get("actions"):
            message["actions"] = payload["actions"]
        return message

    async def send(self, device_tokens: Optional[List[str]], payload: Dict[str, Any],
                   priority: str = "normal") -> Dict[str, Any]:
        tokens = [t for t in (device_tokens or []) if t]
        if not tokens:
            logger.info("push_skipped_no_devices", title=payload.get("title"))
            return {"success": True, "delivered": 0}

        if not self.enabled:
            logger.info("push_simulated", title=payload.get("title"), device_count=len(tokens))
            return {"success": True, "delivered": len(tokens), "simulated": True}

        message = self.build_message(tokens, payload, priority)
        headers = {"Authorization": f"key={self.settings.push_server_key}"}
        try:
            async with httpx.AsyncClient(transport=self.transport,
                                         timeout=self.settings.delivery_timeout_seconds) as client:
                response = await client.post(self.settings.push_gateway_url, json=message, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("push_gateway_unreachable", error=str(e))
            raise QueueDeliveryError(f"Push gateway request failed: {e}") from e

        if response.status_code >= 400:
            logger.warning("push_gateway_rejected", status_code=response.status_code)
            raise QueueDeliveryError(f"Push gateway returned {response.status_code}")

        logger.info("push_sent", title=payload.get("title"), device_count=len(tokens))
        return {"success": True, "delivered": len(tokens)}
