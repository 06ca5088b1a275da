"""Fact Sources - HTTP clients for the services guard facts come from"""
from typing import Any, Dict, Optional
from urllib.parse import quote
import httpx

from ..config.settings import settings
from ..domain.errors import FactSourceError, NotFoundError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class _FactSourceClient:
    """Shared GET helper; every failure surfaces as FactSourceError"""

    SERVICE_NAME = "service"

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.external_request_timeout_seconds
        self._transport = transport

    def _get(self, path: str, application_id: str) -> Any:
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self._transport) as client:
                response = client.get(path)
        except httpx.HTTPError as e:
            logger.error(
                f"{self.SERVICE_NAME} request failed: {e}",
                extra={"application_id": application_id}
            )
            raise FactSourceError(
                f"{self.SERVICE_NAME} is unavailable",
                details={"service": self.SERVICE_NAME, "path": path, "error": str(e)}
            )

        if response.status_code == 404:
            raise NotFoundError(
                f"{self.SERVICE_NAME} has no record for application {application_id}",
                details={"service": self.SERVICE_NAME, "path": path}
            )
        if response.status_code != 200:
            logger.error(
                f"{self.SERVICE_NAME} returned {response.status_code} for {path}",
                extra={"application_id": application_id}
            )
            raise FactSourceError(
                f"{self.SERVICE_NAME} error: {response.status_code}",
                details={"service": self.SERVICE_NAME, "path": path, "response": response.text[:500]}
            )

        try:
            return response.json()
        except ValueError:
            raise FactSourceError(
                f"{self.SERVICE_NAME} returned invalid JSON",
                details={"service": self.SERVICE_NAME, "path": path}
            )


class DocumentServiceClient(_FactSourceClient):
    """Document Service: verification status per required document tag"""

    SERVICE_NAME = "Document service"

    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        super().__init__(settings.document_service_url, transport=transport)

    def document_status(self, application_id: str) -> Dict[str, str]:
        """
        Returns:
            {document_tag: "verified" | "pending" | "missing"}
        """
        data = self._get(f"/applications/{quote(application_id, safe='')}/documents", application_id)
        if not isinstance(data, dict):
            raise FactSourceError(f"{self.SERVICE_NAME} returned {type(data).__name__}, expected an object")
        return {str(tag): str(status).lower() for tag, status in data.items()}


class PaymentServiceClient(_FactSourceClient):
    """Payment Service: paid/unpaid per fee type"""

    SERVICE_NAME = "Payment service"

    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        super().__init__(settings.payment_service_url, transport=transport)

    def payment_status(self, application_id: str, fee_type: str) -> str:
        """
        Returns:
            "paid" or "unpaid"; a fee the service has no record of is unpaid
        """
        try:
            path = f"/applications/{quote(application_id, safe='')}/payments/{quote(fee_type, safe='')}"
            data = self._get(path, application_id)
        except NotFoundError:
            return "unpaid"
        status = data.get("status") if isinstance(data, dict) else None
        return str(status).lower() if status else "unpaid"


class ApplicationRecordsClient(_FactSourceClient):
    """Application Records: submitted dates, program and other application facts"""

    SERVICE_NAME = "Application records service"

    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        super().__init__(settings.application_records_url, transport=transport)

    def get_application(self, application_id: str) -> Dict[str, Any]:
        data = self._get(f"/applications/{quote(application_id, safe='')}", application_id)
        if not isinstance(data, dict):
            raise FactSourceError(f"{self.SERVICE_NAME} returned {type(data).__name__}, expected an object")
        return data
