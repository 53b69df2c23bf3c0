import logging
from typing import Any

import httpx

from fieldflow.core.config import settings
from fieldflow.core.observability import automation_logger, log_json
from fieldflow.models.location import Location
from fieldflow.services.automation_errors import CrmError


class GhlClient:
    """Bearer-token REST client for the GoHighLevel CRM."""

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self._client = httpx.Client(
            base_url=base_url or settings.ghl_base_url,
            timeout=settings.http_timeout_seconds,
            transport=transport,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Version": settings.ghl_api_version,
                "Accept": "application/json",
            },
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GhlClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _request(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            log_json(
                automation_logger,
                logging.WARNING,
                "crm.request_failed",
                method=method,
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise CrmError(f"CRM request failed: {exc}") from exc

        if response.status_code >= 400:
            body = response.text[:200]
            log_json(
                automation_logger,
                logging.WARNING,
                "crm.request_rejected",
                method=method,
                path=path,
                status_code=response.status_code,
                body=body,
            )
            raise CrmError(
                f"CRM {method} {path} returned {response.status_code}: {body}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {"data": payload}

    def send_message(
        self,
        *,
        contact_id: str,
        message_type: str,
        message: str,
        subject: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"type": message_type, "contactId": contact_id}
        if message_type == "Email":
            body["subject"] = subject or ""
            body["html"] = message
        else:
            body["message"] = message
        return self._request("POST", "/conversations/messages", json=body)

    def update_opportunity(self, opportunity_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request("PUT", f"/opportunities/{opportunity_id}", json=payload)

    def update_contact(self, contact_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request("PUT", f"/contacts/{contact_id}", json=payload)


class CrmClientFactory:
    def __init__(self, *, transport: httpx.BaseTransport | None = None):
        self._transport = transport

    def for_location(self, location: Location | None) -> GhlClient | None:
        if location is None or not location.crm_access_token:
            return None
        return GhlClient(location.crm_access_token, transport=self._transport)
