"""
Business-data API client for the API service.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from shared.errors import ExternalServiceError
from shared.logging import get_logger


@dataclass(frozen=True)
class BusinessResponse:
    status_code: int
    body: Any


class BusinessApiClient:
    """Forwards admitted requests to the business-data API.

    The organization resolved by the gatekeeper is always sent as the
    ``x-org-id`` header, replacing anything the client supplied.
    """

    def __init__(self, base_url: Optional[str], timeout: float = 30.0):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.logger = get_logger("api.business_client")
        self._client = httpx.AsyncClient(timeout=timeout)

    @property
    def configured(self) -> bool:
        return self.base_url is not None

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def forward(
        self,
        method: str,
        path: str,
        *,
        organization_id: Optional[str] = None,
        params: Optional[Dict[str, str]] = None,
        body: Any = None,
        request_id: Optional[str] = None,
    ) -> BusinessResponse:
        if not self.configured:
            raise ExternalServiceError(
                "business-api",
                "Business API is not configured",
                status_code=503,
            )

        headers = {"Accept": "application/json"}
        if organization_id:
            headers["x-org-id"] = organization_id
        if request_id:
            headers["X-Request-ID"] = request_id

        try:
            response = await self._client.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=body,
                headers=headers,
            )
        except httpx.HTTPError as e:
            self.logger.error("Business API request failed", method=method, path=path, error=str(e))
            raise ExternalServiceError("business-api", "Business API unavailable", {"error": str(e)}) from e

        try:
            payload = response.json()
        except ValueError:
            payload = {"raw": response.text}

        if response.status_code >= 500:
            self.logger.warning(
                "Business API error response",
                method=method,
                path=path,
                status_code=response.status_code,
            )

        return BusinessResponse(status_code=response.status_code, body=payload)
