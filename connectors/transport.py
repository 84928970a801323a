"""
Credential transport — the one authenticated HTTP sender for Alloy.

Every other component talks to the intermediary service through
``CredentialTransport.send``.  The transport classifies failures but never
retries; retry is the executor's job.
"""

from __future__ import annotations

import email.utils
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import httpx

from config.settings import Settings
from connectors.errors import (
    CredentialNotFound,
    MalformedResponseError,
    NetworkError,
    PermanentClientError,
    RemoteServiceError,
    TransientServiceError,
)

logger = logging.getLogger(__name__)

_CREDENTIAL_NOT_FOUND = "credential not found"


@dataclass
class TransportResponse:
    status_code: int
    data: Any
    headers: Dict[str, str] = field(default_factory=dict)


class CredentialTransport:
    """Thin async sender: bearer token, API version header, base URL."""

    def __init__(
        self,
        settings: Settings,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.request_timeout)

    @property
    def base_url(self) -> str:
        return self._settings.base_url

    def build_headers(self, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._settings.api_key}",
            "x-api-version": self._settings.api_version,
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    async def send(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        headers: Optional[Mapping[str, str]] = None,
    ) -> TransportResponse:
        """
        Send one request and return the decoded JSON body.

        Raises
        ------
        NetworkError            – no HTTP response at all
        TransientServiceError   – 429 / 5xx
        CredentialNotFound      – 4xx naming an unknown credential
        PermanentClientError    – any other non-2xx
        MalformedResponseError  – 2xx with a body that is not JSON
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        start = time.perf_counter()
        try:
            response = await self._client.request(
                method.upper(),
                url,
                json=body,
                headers=self.build_headers(headers),
            )
        except httpx.RequestError as exc:
            logger.warning("%s %s failed before a response: %s", method.upper(), path, exc)
            raise NetworkError(f"{method.upper()} {path} failed: {exc}") from exc

        elapsed = time.perf_counter() - start
        logger.debug("%s %s → %d (%.3fs)", method.upper(), path, response.status_code, elapsed)

        if response.status_code // 100 != 2:
            raise classify_status(response, method.upper(), path)

        if not response.content:
            return TransportResponse(response.status_code, None, dict(response.headers))

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                f"{method.upper()} {path} returned a non-JSON body",
                status_code=response.status_code,
                body=response.text[:500],
            ) from exc

        return TransportResponse(response.status_code, data, dict(response.headers))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "CredentialTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def classify_status(response: httpx.Response, method: str, path: str) -> RemoteServiceError:
    """Map a non-2xx response to the matching error type."""
    try:
        payload: Any = response.json()
    except ValueError:
        payload = response.text

    status = response.status_code
    message = f"{method} {path} → HTTP {status}"
    detail = _payload_message(payload)
    if detail:
        message += f": {detail}"

    if status == 429 or status >= 500:
        return TransientServiceError(
            message,
            status_code=status,
            payload=payload,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if detail and _CREDENTIAL_NOT_FOUND in detail.lower():
        return CredentialNotFound(message, status_code=status, payload=payload)
    return PermanentClientError(message, status_code=status, payload=payload)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """``Retry-After`` as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0.0, when.timestamp() - time.time())


def _payload_message(payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if payload.get("message"):
            return str(payload["message"])
        return None
    if isinstance(payload, str) and payload.strip():
        return payload.strip()[:200]
    return None
