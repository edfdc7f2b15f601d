"""Traffic provider clients.

The controller only needs endpoint CRUD under a named profile. Provider
errors are classified into TransientError, PermanentError and NotFoundError
so the reconciler can decide between backoff and a terminal condition.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import requests

from tm_controller.errors import NotFoundError, PermanentError, TransientError
from tm_controller.models import Endpoint

logger = logging.getLogger(__name__)

EXTERNAL_ENDPOINT_TYPE = "Microsoft.Network/trafficManagerProfiles/externalEndpoints"

# =============================================================================
# Provider Interface
# =============================================================================


class TrafficProvider(ABC):
    """Abstract base class for traffic-distribution providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection to the provider."""
        pass

    @abstractmethod
    def list_endpoints(self, profile_name: str, timeout: Optional[float] = None) -> List[Endpoint]:
        """List all endpoints under a profile.

        Raises NotFoundError if the profile does not exist upstream.
        """
        pass

    @abstractmethod
    def upsert_endpoint(
        self, profile_name: str, endpoint: Endpoint, timeout: Optional[float] = None
    ) -> None:
        """Create or replace an endpoint."""
        pass

    @abstractmethod
    def delete_endpoint(
        self, profile_name: str, endpoint_name: str, timeout: Optional[float] = None
    ) -> None:
        """Delete an endpoint. An endpoint that is already gone is not an error."""
        pass


# =============================================================================
# Azure Traffic Manager
# =============================================================================


def classify_http_error(exc: requests.exceptions.RequestException, what: str) -> Exception:
    """Map a requests exception onto the controller error taxonomy."""
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return TransientError(f"{what}: {exc}")

    response = getattr(exc, "response", None)
    status = response.status_code if response is not None else None
    if status is None:
        return TransientError(f"{what}: {exc}")
    if status == 404:
        return NotFoundError(f"{what}: not found")
    if status in (408, 429) or status >= 500:
        return TransientError(f"{what}: HTTP {status}")
    if status in (401, 403):
        # Tokens expire and rotate independently of the request being made.
        return TransientError(f"{what}: HTTP {status}: {_error_message(response)}")
    return PermanentError(f"{what}: HTTP {status}: {_error_message(response)}")


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or ""
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return ""


def file_token_provider(path: str) -> Callable[[], str]:
    """Return a callable that reads a bearer token from `path` on every call.

    Meant for tokens rotated on disk by a sidecar or a projected volume.
    """

    def read_token() -> str:
        try:
            token = Path(path).read_text().strip()
        except OSError as e:
            raise TransientError(f"Failed to read access token from {path}: {e}") from e
        if not token:
            raise TransientError(f"Access token file {path} is empty")
        return token

    return read_token


class AzureTrafficManagerProvider(TrafficProvider):
    """Azure Traffic Manager via the ARM REST API.

    Authenticates with either a fixed `access_token` or a `token_provider`
    called before every request, so rotated tokens are picked up.
    """

    def __init__(
        self,
        subscription_id: str,
        resource_group: str,
        access_token: str = "",
        arm_endpoint: str = "https://management.azure.com",
        api_version: str = "2022-04-01",
        timeout_seconds: float = 10.0,
        verify_tls: bool = True,
        token_provider: Optional[Callable[[], str]] = None,
    ):
        self._base = (
            f"{arm_endpoint.rstrip('/')}/subscriptions/{subscription_id}"
            f"/resourceGroups/{resource_group}/providers/Microsoft.Network"
        )
        self._resource_group = resource_group
        self._api_version = api_version
        self._timeout = timeout_seconds
        self._token_provider = token_provider
        self._session = requests.Session()
        self._session.verify = verify_tls
        if access_token:
            self._session.headers["Authorization"] = f"Bearer {access_token}"

    @property
    def name(self) -> str:
        return "Azure Traffic Manager"

    def _authorize(self) -> None:
        if self._token_provider is not None:
            self._session.headers["Authorization"] = f"Bearer {self._token_provider()}"

    def _profile_url(self, profile_name: str) -> str:
        return f"{self._base}/trafficmanagerprofiles/{quote(profile_name, safe='')}"

    def _endpoint_url(self, profile_name: str, endpoint_name: str) -> str:
        return f"{self._profile_url(profile_name)}/externalEndpoints/{quote(endpoint_name, safe='')}"

    def _params(self) -> Dict[str, str]:
        return {"api-version": self._api_version}

    def test_connection(self) -> bool:
        try:
            self._authorize()
            response = self._session.get(
                f"{self._base}/trafficmanagerprofiles", params=self._params(), timeout=5
            )
            response.raise_for_status()
            logger.info(f"{self.name} connection successful (resource group {self._resource_group})")
            return True
        except (requests.exceptions.RequestException, TransientError) as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def list_endpoints(self, profile_name: str, timeout: Optional[float] = None) -> List[Endpoint]:
        self._authorize()
        try:
            response = self._session.get(
                self._profile_url(profile_name),
                params=self._params(),
                timeout=timeout or self._timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise classify_http_error(e, f"list endpoints of profile {profile_name}") from e
        try:
            data = response.json()
        except ValueError as e:
            raise TransientError(f"list endpoints of profile {profile_name}: bad response: {e}") from e

        properties = data.get("properties") if isinstance(data, dict) else None
        raw_endpoints = (properties or {}).get("endpoints") or []

        endpoints: List[Endpoint] = []
        for raw in raw_endpoints:
            endpoint = self._parse_endpoint(raw)
            if endpoint is None:
                logger.warning(f"Skipping malformed endpoint in profile {profile_name}: {raw}")
                continue
            endpoints.append(endpoint)
        return endpoints

    def _parse_endpoint(self, raw: Any) -> Optional[Endpoint]:
        if not isinstance(raw, dict):
            return None
        if raw.get("type") and str(raw["type"]).lower() != EXTERNAL_ENDPOINT_TYPE.lower():
            return None
        name = raw.get("name")
        props = raw.get("properties") or {}
        target = props.get("target")
        if not isinstance(name, str) or not isinstance(target, str):
            return None
        try:
            weight = int(props.get("weight") or 1)
        except (TypeError, ValueError):
            return None
        enabled = str(props.get("endpointStatus") or "Enabled").lower() == "enabled"
        return Endpoint(name=name, target=target, weight=weight, enabled=enabled)

    def upsert_endpoint(
        self, profile_name: str, endpoint: Endpoint, timeout: Optional[float] = None
    ) -> None:
        self._authorize()
        body = {
            "properties": {
                "target": endpoint.target,
                "weight": endpoint.weight,
                "endpointStatus": "Enabled" if endpoint.enabled else "Disabled",
            }
        }
        try:
            response = self._session.put(
                self._endpoint_url(profile_name, endpoint.name),
                params=self._params(),
                json=body,
                timeout=timeout or self._timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            err = classify_http_error(e, f"upsert endpoint {endpoint.name}")
            if isinstance(err, NotFoundError):
                # The profile itself is gone; nothing can be registered under it.
                err = PermanentError(f"upsert endpoint {endpoint.name}: profile {profile_name} not found")
            raise err from e
        logger.info(
            f"Upserted endpoint {endpoint.name} -> {endpoint.target} "
            f"(weight {endpoint.weight}) in profile {profile_name}"
        )

    def delete_endpoint(
        self, profile_name: str, endpoint_name: str, timeout: Optional[float] = None
    ) -> None:
        self._authorize()
        try:
            response = self._session.delete(
                self._endpoint_url(profile_name, endpoint_name),
                params=self._params(),
                timeout=timeout or self._timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            err = classify_http_error(e, f"delete endpoint {endpoint_name}")
            if isinstance(err, NotFoundError):
                logger.debug(f"Endpoint {endpoint_name} already absent from profile {profile_name}")
                return
            raise err from e
        logger.info(f"Deleted endpoint {endpoint_name} from profile {profile_name}")
