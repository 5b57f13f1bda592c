"""HTTP client for the cloud API built on the azure-core pipeline.

The pipeline supplies what every call needs without the resource code
having to care about it:
- x-api-key authentication (AzureKeyCredentialPolicy)
- transport-level retries for throttling and 5xx (RetryPolicy)
- request/response logging with secrets redacted (HttpLoggingPolicy)

Errors are mapped onto azure-core exceptions so callers can rely on a
single taxonomy: 404 is ResourceNotFoundError, 409 ResourceExistsError,
401/403 ClientAuthenticationError, anything else non-2xx HttpResponseError.

The client is synchronous and stateless per call, so one instance can be
shared by every concurrent poll loop.
"""

from __future__ import annotations

import logging
from typing import Any

from azure.core import PipelineClient
from azure.core.credentials import AzureKeyCredential
from azure.core.exceptions import (
    ClientAuthenticationError,
    DecodeError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    map_error,
)
from azure.core.pipeline.policies import (
    AzureKeyCredentialPolicy,
    HeadersPolicy,
    HttpLoggingPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest

from .config import Config

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-api-key"
USER_AGENT = "mgc-provisioner/0.1.0"
CONNECTION_TIMEOUT_SECONDS = 10

ERROR_MAP: dict[int, type[HttpResponseError]] = {
    401: ClientAuthenticationError,
    403: ClientAuthenticationError,
    404: ResourceNotFoundError,
    409: ResourceExistsError,
}


class MgcApiClient:
    """Thin JSON client over an azure-core PipelineClient."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        request_timeout: int = 60,
        max_retries: int = 3,
        **kwargs: Any,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: API base URL including the region segment.
            api_key: Key sent in the x-api-key header.
            request_timeout: Read timeout per HTTP request in seconds.
            max_retries: Transport retries for retryable responses.
            **kwargs: Passed to PipelineClient (e.g. a custom `transport`).
        """
        self._base_url = base_url
        self._request_timeout = request_timeout
        policies = [
            HeadersPolicy({"Accept": "application/json"}),
            UserAgentPolicy(base_user_agent=USER_AGENT),
            AzureKeyCredentialPolicy(AzureKeyCredential(api_key), API_KEY_HEADER),
            RetryPolicy(retry_total=max_retries),
            HttpLoggingPolicy(),
        ]
        self._client = PipelineClient(base_url=base_url, policies=policies, **kwargs)

    @classmethod
    def from_config(cls, config: Config) -> MgcApiClient:
        """Build a client from validated configuration.

        Raises:
            ConfigurationError: If no API key is configured.
        """
        return cls(
            config.base_url,
            config.require_api_key(),
            request_timeout=config.request_timeout_seconds,
            max_retries=config.max_http_retries,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request and decode the JSON body.

        Args:
            method: HTTP method.
            path: Path relative to the base URL.
            json: Optional JSON body.
            params: Optional query parameters.

        Returns:
            Decoded JSON body, or None for empty responses.

        Raises:
            HttpResponseError: For any non-2xx response (subclassed per status).
            DecodeError: For a 2xx response whose body is not JSON.
            AzureError: For transport failures after retries.
        """
        request = HttpRequest(method, path, json=json, params=params)
        response = self._client.send_request(
            request,
            connection_timeout=CONNECTION_TIMEOUT_SECONDS,
            read_timeout=self._request_timeout,
        )

        if not 200 <= response.status_code < 300:
            logger.debug(
                "API request failed",
                extra={"method": method, "path": path, "status_code": response.status_code},
            )
            map_error(status_code=response.status_code, response=response, error_map=ERROR_MAP)
            raise HttpResponseError(response=response)

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise DecodeError(
                message=f"{method} {path} returned a body that is not JSON", response=response
            ) from e

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> MgcApiClient:
        self._client.__enter__()
        return self

    def __exit__(self, *exc_details: Any) -> None:
        self._client.__exit__(*exc_details)
