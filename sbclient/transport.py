"""
Management Transport

The request/response seam the entity listers talk to. ``AtomXmlTransport`` is
the HTTP implementation (httpx + the Atom codec); the emulator's in-memory
broker implements the same interface without a network hop.

Author: sbclient contributors
Date: 2026-10-17
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from .atom import parse_atom
from .constants import (
    API_VERSION_QUERY_KEY,
    CURRENT_API_VERSION,
    DEFAULT_REQUEST_TIMEOUT,
    XML_MEDIA_TYPE_ATOM,
)
from .exceptions import EntityNotFoundError, ParseError, TransportError
from .logging_utils import CorrelationContext, StructuredLogger


logger = StructuredLogger('sbclient.transport')


@dataclass
class TransportResponse:
    """Outcome of a management request."""
    status: int
    parsed_body: Any
    headers: Dict[str, str] = field(default_factory=dict)
    url: Optional[str] = None


class Transport(ABC):
    """Sends management requests and returns parsed bodies."""

    @abstractmethod
    async def send_request(
        self,
        method: str,
        path: str,
        query_params: Optional[Dict[str, str]] = None,
    ) -> TransportResponse:
        """
        Send one request.

        Args:
            method: HTTP verb
            path: Resource path relative to the namespace (e.g. ``$Resources/Queues``)
            query_params: Extra query parameters (``$skip``, ``$top``)

        Returns:
            TransportResponse with the parsed body

        Raises:
            TransportError: The service rejected the request
            ParseError: The body could not be parsed
        """

    async def close(self) -> None:
        """Release transport resources."""


def _error_from_response(response: httpx.Response, path: str) -> TransportError:
    code = None
    detail = response.text or response.reason_phrase
    try:
        body = parse_atom(response.text) if response.text else None
    except ParseError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("Error"), dict):
        code = body["Error"].get("Code")
        detail = body["Error"].get("Detail") or detail

    if response.status_code == 404:
        return EntityNotFoundError("entity", path, message=detail)

    return TransportError(
        f"Management request failed with status {response.status_code}: {detail}",
        status_code=response.status_code,
        code=code,
        details={"path": path},
    )


class AtomXmlTransport(Transport):
    """
    HTTP transport for the Atom/XML management endpoint.

    Authentication and proxy policies are supplied by the caller through
    ``headers`` or a pre-configured ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        endpoint: str,
        api_version: str = CURRENT_API_VERSION,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
        scheme: str = "https",
    ):
        self.endpoint = endpoint.rstrip("/")
        self.api_version = api_version
        self.scheme = scheme
        self._headers = {"Accept": XML_MEDIA_TYPE_ATOM, **(headers or {})}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def get_url(self, path: str) -> str:
        """Absolute URL of a namespace-relative path."""
        return f"{self.scheme}://{self.endpoint}/{path.lstrip('/')}"

    async def send_request(
        self,
        method: str,
        path: str,
        query_params: Optional[Dict[str, str]] = None,
    ) -> TransportResponse:
        params = {API_VERSION_QUERY_KEY: self.api_version}
        params.update(query_params or {})
        url = self.get_url(path)

        logger.debug(
            f"Performing management operation - {method} {path}",
            operation="management_request",
            method=method,
            path=path,
            query=params,
        )

        headers = {CorrelationContext.HEADER: CorrelationContext.get_correlation_id(), **self._headers}
        try:
            response = await self._client.request(method, url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(
                f"Management request to {path} failed: {e}",
                details={"path": path, "error_type": type(e).__name__},
            ) from e

        if response.status_code >= 400:
            raise _error_from_response(response, path)

        parsed_body = parse_atom(response.text) if response.text.strip() else None

        return TransportResponse(
            status=response.status_code,
            parsed_body=parsed_body,
            headers=dict(response.headers),
            url=str(response.url),
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
