"""Delivery Service - Deliver outbox actions to the collaborating services"""
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote
import httpx

from ..config.settings import settings
from ..domain.models import ActionRecord
from ..domain.enums import ActionKind
from ..domain.errors import DispatchFailureError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class DeliveryService:
    """
    Send one action to its endpoint.

    Every request carries the action's idempotency key, so a redelivery after
    a lost response is recognised downstream. A 409 means the receiver
    already processed that key and counts as delivered.
    """

    SUCCESS_CODES = {200, 201, 202, 204, 409}

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def _endpoint(self, action: ActionRecord) -> Tuple[str, Dict[str, Any]]:
        """(url, body) for an action"""
        body = {
            "tag": action.tag,
            "application_id": action.application_id,
            "history_id": action.history_id,
            "payload": action.payload,
        }

        if action.kind == ActionKind.NOTIFY.value:
            return f"{settings.notification_service_url.rstrip('/')}/notifications", body
        if action.kind == ActionKind.INTEGRATE.value:
            return f"{settings.integration_service_url.rstrip('/')}/sync", body
        if action.kind == ActionKind.RECOMPUTE_CHECKLIST.value:
            return (
                f"{settings.document_service_url.rstrip('/')}"
                f"/applications/{quote(action.application_id or '', safe='')}/checklist/recompute",
                body
            )
        raise DispatchFailureError(f"No endpoint for action kind {action.kind}")

    async def deliver(self, action: ActionRecord) -> None:
        """
        Raises:
            DispatchFailureError: Transport failure or non-success response
        """
        url, body = self._endpoint(action)
        headers = {
            "Idempotency-Key": action.idempotency_key,
            "Content-Type": "application/json",
        }
        correlation_id = action.payload.get("correlation_id")
        if correlation_id:
            headers["X-Correlation-Id"] = correlation_id

        try:
            async with httpx.AsyncClient(
                timeout=settings.external_request_timeout_seconds,
                transport=self._transport
            ) as client:
                response = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise DispatchFailureError(
                f"Delivery of {action.kind} {action.tag} failed: {e}",
                details={"action_id": action.action_id, "url": url}
            )

        if response.status_code not in self.SUCCESS_CODES:
            raise DispatchFailureError(
                f"Delivery of {action.kind} {action.tag} rejected: {response.status_code}",
                details={"action_id": action.action_id, "url": url, "response": response.text[:500]}
            )

        if response.status_code == 409:
            logger.info(
                f"Action {action.action_id} was already processed downstream",
                extra={"action_id": action.action_id}
            )
