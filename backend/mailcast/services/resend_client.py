"""Resend HTTP client - batch submission and sent-email listing"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from mailcast.core.config import DEFAULT_RESEND_BASE_URL, Settings, get_resend_config
from mailcast.core.errors import ProviderError
from mailcast.core.logging import resend_logger


@dataclass(frozen=True)
class SentEmail:
    """One item of the provider's sent-email listing"""
    id: str
    last_event: Optional[str]
    created_at: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class EmailPage:
    items: List[SentEmail]
    has_more: bool
    next_cursor: Optional[str]


def batch_idempotency_key(campaign_id: str, batch_index: int) -> str:
    """Provider idempotency key for one batch of one campaign.

    Must stay a pure function of its inputs so a batch resubmitted after a
    crash is deduplicated by the provider.
    """
    return f"campaign-{campaign_id}-batch-{batch_index}"


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)[:500]
    return str(body)[:500]


class ResendClient:
    """Thin async wrapper over the Resend REST API"""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_RESEND_BASE_URL,
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        request_headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if headers:
            request_headers.update(headers)

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport
            ) as client:
                response = await client.request(method, path, json=json, params=params, headers=request_headers)
        except httpx.TimeoutException as e:
            resend_logger.warning(f"Resend {method} {path} timed out after {self.timeout}s")
            raise ProviderError(f"Resend request timed out: {e}") from e
        except httpx.RequestError as e:
            resend_logger.warning(f"Resend {method} {path} failed: {e}")
            raise ProviderError(f"Resend request failed: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            message = _error_message(response)
            resend_logger.error(f"Resend {method} {path} returned {response.status_code}: {message}")
            raise ProviderError(message, upstream_status=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"Resend returned a non-JSON response: {response.text[:200]}") from e

    async def send_batch(self, messages: List[Dict[str, Any]], idempotency_key: Optional[str] = None) -> List[Optional[str]]:
        """Submit up to 100 messages in one call.

        Args:
            messages: Resend message payloads
            idempotency_key: Sent as Idempotency-Key when given

        Returns:
            One provider email id per input message, in order; None marks a message
            the provider did not accept.

        Raises:
            ProviderError: Network failure, timeout or non-2xx response
        """
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        body = await self._request("POST", "/emails/batch", json=messages, headers=headers)

        data = body.get("data") if isinstance(body, dict) else None
        data = data or []
        ids = []
        for position in range(len(messages)):
            item = data[position] if position < len(data) else None
            ids.append(item.get("id") if isinstance(item, dict) and item.get("id") else None)
        return ids

    async def list_emails(self, limit: int = 100, after: Optional[str] = None) -> EmailPage:
        """List sent emails, most recent first, with cursor pagination"""
        params = {"limit": limit}
        if after:
            params["after"] = after

        body = await self._request("GET", "/emails", params=params)
        if not isinstance(body, dict):
            raise ProviderError("Resend returned an unexpected email listing payload")
        data = body.get("data") or []

        items = [
            SentEmail(
                id=item["id"],
                last_event=item.get("last_event"),
                created_at=item.get("created_at"),
                raw=item
            )
            for item in data
            if isinstance(item, dict) and item.get("id")
        ]
        return EmailPage(
            items=items,
            has_more=bool(body.get("has_more")),
            next_cursor=data[-1].get("id") if data and isinstance(data[-1], dict) else None
        )


def make_resend_client_factory(config: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
    """Build the provider client factory handed to the dispatch and sync engines.

    The factory checks configuration on every call, so a missing API key
    surfaces as ConfigurationError at the operation that needs the provider.
    """
    def factory() -> ResendClient:
        resend_config = get_resend_config(config, require_sender=False)
        return ResendClient(
            api_key=resend_config.api_key,
            base_url=resend_config.base_url,
            timeout=resend_config.timeout,
            transport=transport
        )

    return factory
