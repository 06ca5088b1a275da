"""Identity Service - Resolve an actor's permission tags"""
from typing import Optional
from urllib.parse import quote
import httpx

from ..config.settings import settings
from ..domain.models import ActorContext
from ..domain.errors import AuthenticationError, IdentityServiceError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class IdentityService:
    """
    Client for the Identity Service.

    Authentication happens upstream; this service only turns an actor ID into
    the permission set transitions are gated on.
    """

    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = settings.identity_service_url.rstrip("/")
        self._transport = transport

    def resolve_actor(self, actor_id: str) -> ActorContext:
        """
        Raises:
            AuthenticationError: Actor unknown to the identity service
            IdentityServiceError: Service unavailable or malformed response
        """
        try:
            with httpx.Client(
                base_url=self.base_url,
                timeout=settings.external_request_timeout_seconds,
                transport=self._transport
            ) as client:
                response = client.get(f"/actors/{quote(actor_id, safe='')}/permissions")
        except httpx.HTTPError as e:
            logger.error(f"Identity service request failed: {e}", extra={"actor_id": actor_id})
            raise IdentityServiceError("Identity service is unavailable", details={"error": str(e)})

        if response.status_code == 404:
            raise AuthenticationError(f"Unknown actor {actor_id}", details={"actor_id": actor_id})
        if response.status_code != 200:
            raise IdentityServiceError(
                f"Identity service error: {response.status_code}",
                details={"actor_id": actor_id, "response": response.text[:500]}
            )

        try:
            data = response.json()
        except ValueError:
            raise IdentityServiceError("Identity service returned invalid JSON")

        permissions = data.get("permissions") if isinstance(data, dict) else None
        if not isinstance(permissions, list):
            raise IdentityServiceError(
                "Identity service response has no permission list",
                details={"actor_id": actor_id}
            )

        return ActorContext(
            actor_id=actor_id,
            display_name=data.get("display_name"),
            permissions=[str(p) for p in permissions]
        )
