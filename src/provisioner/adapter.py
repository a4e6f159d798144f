"""Remote CRUD adapter for resource kinds.

One HttpResourceClient speaks for one resource kind against one base URL.
It turns desired attributes into requests, responses into OperationResults,
and HTTP failures into the reconciliation error taxonomy.

ERROR CLASSIFICATION:
- Connection failures, timeouts, 429 and 5xx: TransientNetworkError, retried here
- 404: NotFoundError
- Any other 4xx: RemoteRejected with the API's own detail message
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import httpx

from .config import MAX_TRANSIENT_RETRIES, RETRY_BACKOFF_BASE_SECONDS, ProviderContext
from .errors import (
    InvalidDesiredState,
    NotFoundError,
    ReconcileError,
    RemoteRejected,
    TransientNetworkError,
)
from .models import ErrorKind, OperationResult, ResourceInstance, ResourceType
from .resources import ResourceSchema, get_schema

logger = logging.getLogger(__name__)

USER_AGENT = "ccloud-provisioner"


class RemoteClient(Protocol):
    """CRUD surface the reconciler drives for one resource kind."""

    async def create(self, desired: dict[str, Any]) -> OperationResult: ...

    async def read(self, resource_id: str) -> OperationResult: ...

    async def update(self, resource_id: str, desired: dict[str, Any]) -> OperationResult: ...

    async def delete(self, resource_id: str) -> None: ...


class ClientProvider(Protocol):
    """Source of the RemoteClient an instance is reconciled through."""

    def for_instance(
        self, instance: ResourceInstance, attributes: dict[str, Any] | None = None
    ) -> RemoteClient: ...


def _error_detail(response: httpx.Response) -> str:
    """Extract the API's diagnostic message, falling back to the raw body."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            detail = errors[0].get("detail") or errors[0].get("title")
            if detail:
                return str(detail)
        if body.get("message"):
            return str(body["message"])
    return response.text.strip() or response.reason_phrase or f"HTTP {response.status_code}"


class HttpResourceClient:
    """RemoteClient over HTTP for one resource kind.

    Args:
        schema: Codec and paths of the resource kind.
        http: Shared async HTTP client. Not closed by this class.
        base_url: Base URL requests are issued against.
        auth: Optional credentials sent with every request.
        max_retries: Attempts per request for transient failures.
        backoff_base: Base of the exponential backoff between attempts.
        sleep: Awaitable sleep, replaceable in tests.
    """

    def __init__(
        self,
        schema: ResourceSchema,
        http: httpx.AsyncClient,
        *,
        base_url: str,
        auth: httpx.Auth | None = None,
        max_retries: int = MAX_TRANSIENT_RETRIES,
        backoff_base: float = RETRY_BACKOFF_BASE_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._schema = schema
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._auth = auth
        self._max_retries = max(1, max_retries)
        self._backoff_base = backoff_base
        self._sleep = sleep

    @property
    def resource_type(self) -> ResourceType:
        return self._schema.resource_type

    async def create(self, desired: dict[str, Any]) -> OperationResult:
        path = self._schema.collection_path(desired)
        response = await self._request("POST", path, self._schema.encode_create(desired))
        return self._result(response)

    async def read(self, resource_id: str) -> OperationResult:
        response = await self._request(
            "GET", self._schema.item_path(resource_id), resource_id=resource_id
        )
        return self._result(response, resource_id)

    async def update(self, resource_id: str, desired: dict[str, Any]) -> OperationResult:
        response: httpx.Response | None = None
        for request in self._schema.encode_update(resource_id, desired):
            response = await self._request(
                request.method, request.path, request.body, resource_id=resource_id
            )
        # Some update calls answer 204; the resulting state then comes from a read
        if response is None or not response.content:
            return await self.read(resource_id)
        return self._result(response, resource_id)

    async def delete(self, resource_id: str) -> None:
        await self._request("DELETE", self._schema.item_path(resource_id), resource_id=resource_id)

    def _result(self, response: httpx.Response, resource_id: str = "") -> OperationResult:
        try:
            body = response.json() if response.content else {}
            if not body and resource_id:
                return OperationResult(resource_id=resource_id, http_status=response.status_code)
            decoded_id, attributes = self._schema.decode(body)
        except (KeyError, TypeError, ValueError) as e:
            raise ReconcileError(
                f"malformed response from {response.request.url}: {e}",
                resource_type=self.resource_type.value,
                instance_id=resource_id,
            ) from e

        return OperationResult(
            resource_id=decoded_id or resource_id,
            payload=attributes,
            remote_status=self._schema.remote_status(body),
            http_status=response.status_code,
            message=self._schema.status_message(body),
        )

    async def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        *,
        resource_id: str = "",
    ) -> httpx.Response:
        """Issue one request with exponential backoff retry on transient failures.

        Raises:
            TransientNetworkError: If every attempt failed transiently.
            NotFoundError: On 404.
            RemoteRejected: On any other 4xx.
        """
        url = f"{self._base_url}{path}"
        kwargs: dict[str, Any] = {}
        if body is not None:
            kwargs["json"] = body
        if self._auth is not None:
            kwargs["auth"] = self._auth
        context = {"resource_type": self.resource_type.value, "instance_id": resource_id}
        last_error: TransientNetworkError | None = None

        for attempt in range(1, self._max_retries + 1):
            try:
                response = await self._http.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                last_error = TransientNetworkError(f"{method} {path} timed out: {e}", **context)
            except httpx.TransportError as e:
                last_error = TransientNetworkError(f"{method} {path} failed: {e}", **context)
            else:
                status = response.status_code
                if status == 429 or status >= 500:
                    last_error = TransientNetworkError(
                        f"{method} {path} returned {status}: {_error_detail(response)}",
                        status_code=status,
                        **context,
                    )
                elif status == 404:
                    raise NotFoundError(_error_detail(response), **context)
                elif status >= 400:
                    raise RemoteRejected(_error_detail(response), status_code=status, **context)
                else:
                    logger.debug(
                        "Request complete",
                        extra={"method": method, "path": path, "status": status},
                    )
                    return response

            if attempt < self._max_retries:
                # Exponential backoff with jitter
                backoff = self._backoff_base * (2 ** (attempt - 1))
                wait_time = backoff + random.uniform(0, backoff * 0.2)
                logger.warning(
                    "Transient API failure, retrying",
                    extra={
                        "method": method,
                        "path": path,
                        "attempt": attempt,
                        "max_attempts": self._max_retries,
                        "wait_seconds": wait_time,
                        "error": str(last_error),
                    },
                )
                await self._sleep(wait_time)

        # Loop runs at least once, so last_error is set here
        assert last_error is not None
        raise last_error


def error_kind(error: Exception) -> ErrorKind:
    """Classify an adapter error for retry decisions."""
    match error:
        case TransientNetworkError():
            return ErrorKind.TRANSIENT
        case NotFoundError():
            return ErrorKind.NOT_FOUND
        case RemoteRejected():
            return ErrorKind.REJECTED
        case _:
            return ErrorKind.NONE


class ClientFactory:
    """Builds the RemoteClient an instance is reconciled through.

    Control-plane kinds share one client per kind against the provider
    endpoint. Data-plane kinds (topics) get a client bound to the endpoint
    and credentials carried in their own attributes.
    """

    def __init__(
        self,
        context: ProviderContext,
        http: httpx.AsyncClient,
        *,
        max_retries: int = MAX_TRANSIENT_RETRIES,
        backoff_base: float = RETRY_BACKOFF_BASE_SECONDS,
    ) -> None:
        self._context = context
        self._http = http
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._shared: dict[ResourceType, HttpResourceClient] = {}

    def for_instance(
        self,
        instance: ResourceInstance,
        attributes: dict[str, Any] | None = None,
    ) -> RemoteClient:
        """Client for an instance.

        Args:
            instance: Instance to reconcile.
            attributes: Resolved desired attributes; falls back to observed.

        Raises:
            InvalidDesiredState: If a data-plane instance has no endpoint.
        """
        schema = get_schema(instance.resource_type)
        if schema.endpoint_of is None:
            client = self._shared.get(schema.resource_type)
            if client is None:
                auth = None
                if self._context.has_credentials:
                    auth = httpx.BasicAuth(self._context.api_key, self._context.api_secret)
                client = self._build(schema, self._context.endpoint, auth)
                self._shared[schema.resource_type] = client
            return client

        attrs = attributes or instance.observed or {}
        endpoint = schema.endpoint_of(attrs)
        if not endpoint:
            raise InvalidDesiredState(
                "no endpoint to reach the resource",
                resource_type=schema.resource_type.value,
                instance_id=instance.id,
            )
        credentials = schema.credentials_of(attrs) if schema.credentials_of else None
        auth = httpx.BasicAuth(*credentials) if credentials else None
        return self._build(schema, endpoint, auth)

    def _build(
        self, schema: ResourceSchema, base_url: str, auth: httpx.Auth | None
    ) -> HttpResourceClient:
        return HttpResourceClient(
            schema,
            self._http,
            base_url=base_url,
            auth=auth,
            max_retries=self._max_retries,
            backoff_base=self._backoff_base,
        )


def build_http_client(
    context: ProviderContext, transport: httpx.AsyncBaseTransport | None = None
) -> httpx.AsyncClient:
    """Create the shared async HTTP client. The caller owns closing it."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(context.request_timeout_seconds, connect=10.0),
        limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
        headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        transport=transport,
    )
