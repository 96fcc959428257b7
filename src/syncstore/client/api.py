"""HTTP client for the GraphQL backend.

This module provides:
- GraphQLClient: httpx-based transport executing GraphQL operations
- GraphQLOperation: A query/mutation document with its variables
- GraphQLTransport: The protocol the sync engine depends on
- APIError and subclasses raised on failed requests
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from syncstore.core.config import DataStoreConfig

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Authentication failed."""


class CredentialsError(APIError):
    """Auth material could not be obtained (token provider failed)."""


class GraphQLResponseError(APIError):
    """The backend answered with a GraphQL "errors" list.

    Attributes:
        errors: Raw error objects (message, errorType, data, ...).
        data: Partial data returned alongside the errors, if any.
    """

    def __init__(
        self,
        errors: list[dict[str, Any]],
        data: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        message = "; ".join(str(e.get("message", "")) for e in errors) or "GraphQL error"
        super().__init__(message, status_code)
        self.errors = errors
        self.data = data

    @property
    def first_error(self) -> dict[str, Any]:
        """The first error object (empty dict when none)."""
        return self.errors[0] if self.errors else {}


@dataclass
class GraphQLOperation:
    """A GraphQL document ready to be sent."""

    query: str
    variables: dict[str, Any] = field(default_factory=dict)
    operation_name: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Build the JSON request body."""
        payload: dict[str, Any] = {"query": self.query, "variables": self.variables}
        if self.operation_name:
            payload["operationName"] = self.operation_name
        return payload


class GraphQLTransport(Protocol):
    """Anything able to execute a GraphQL operation."""

    def graphql(self, operation: GraphQLOperation) -> dict[str, Any]:
        """Execute the operation and return its "data" object."""
        ...


TokenProvider = Callable[[], str]


class GraphQLClient:
    """HTTP client for a GraphQL endpoint."""

    def __init__(
        self,
        config: DataStoreConfig,
        get_tokens: TokenProvider | None = None,
    ) -> None:
        """Initialize the GraphQL client.

        Args:
            config: Endpoint and auth settings.
            get_tokens: Returns the token for token-based auth modes.
        """
        self._config = config
        self._get_tokens = get_tokens
        self._client = httpx.Client(
            timeout=config.timeout,
            verify=config.verify_ssl,
            headers={"Content-Type": "application/json"},
        )

    @property
    def auth_mode(self) -> str:
        """Auth mode requests are sent with."""
        return self._config.auth_mode

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> GraphQLClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def auth_headers(self) -> dict[str, str]:
        """Build the auth headers for the configured mode.

        Raises:
            CredentialsError: If no token can be obtained.
        """
        if self._config.auth_mode == "API_KEY":
            return {"x-api-key": self._config.api_key or ""}

        if self._get_tokens is None:
            raise CredentialsError(
                f"No token provider configured for {self._config.auth_mode}"
            )
        try:
            token = self._get_tokens()
        except CredentialsError:
            raise
        except Exception as e:
            raise CredentialsError(f"Failed to get tokens: {e}") from e
        if not token:
            raise CredentialsError("No current user")
        return {"Authorization": token}

    def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code == 401:
            raise AuthenticationError(
                "Request failed with status code 401", 401
            )

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            if isinstance(body, dict) and body.get("errors"):
                raise GraphQLResponseError(
                    body["errors"], body.get("data"), response.status_code
                )
            raise APIError(
                f"Request failed with status code {response.status_code}",
                response.status_code,
            )

        if not isinstance(body, dict):
            raise APIError("Invalid GraphQL response", response.status_code)

        if body.get("errors"):
            raise GraphQLResponseError(body["errors"], body.get("data"))

        data: dict[str, Any] = body.get("data") or {}
        return data

    def graphql(self, operation: GraphQLOperation) -> dict[str, Any]:
        """Execute a query or mutation.

        Args:
            operation: The document and variables.

        Returns:
            The "data" object of the response.

        Raises:
            AuthenticationError: On 401.
            CredentialsError: If auth material is unavailable.
            GraphQLResponseError: If the response carries errors.
            APIError: On other HTTP errors.
            httpx.TransportError: On connection failures and timeouts.
        """
        headers = self.auth_headers()
        logger.debug("GraphQL %s", operation.operation_name or "operation")
        response = self._client.post(
            self._config.endpoint,
            json=operation.to_payload(),
            headers=headers,
        )
        return self._handle_response(response)

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the backend is reachable.

        Any HTTP answer counts as reachable; only transport failures
        mean the network is down.

        Returns:
            True if the endpoint answered.
        """
        try:
            headers = self.auth_headers()
        except CredentialsError:
            headers = {}
        try:
            self._client.post(
                self._config.endpoint,
                json={"query": "query { __typename }"},
                headers=headers,
            )
            return True
        except httpx.RequestError:
            return False
