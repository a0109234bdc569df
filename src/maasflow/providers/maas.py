"""MAAS REST API client implementing the node-management contract.

The reconciliation engine depends only on :class:`NodeClient`; this module
provides the concrete implementation for the MAAS 1.0 API. Requests are
signed with the OAuth 1.0 ``PLAINTEXT`` scheme using an API key of the form
``consumer_key:token_key:token_secret``.
"""
from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Mapping
from typing import Any, Protocol
from urllib.parse import quote

import requests
from requests.exceptions import RequestException

from ..models import Machine, MachineDataError

LOGGER = logging.getLogger(__name__)

UPDATE_OPERATION = "update"


class MaasError(RuntimeError):
    """Raised when a MAAS API request fails."""


class MaasAuthError(MaasError):
    """Raised when the API key is malformed or rejected."""


class NodeClient(Protocol):
    """Narrow contract consumed by the reconciliation engine."""

    def list_machines(self) -> list[Machine]:
        """Return a snapshot of every machine known to the service."""
        ...

    def invoke(
        self,
        system_id: str | None,
        operation: str,
        params: Mapping[str, str] | None = None,
    ) -> object:
        """Invoke *operation* on a machine (or on the collection when ``None``)."""
        ...


def parse_api_key(api_key: str) -> tuple[str, str, str]:
    """Split a MAAS API key into consumer key, token key and token secret."""
    parts = api_key.strip().split(":")
    if len(parts) != 3 or not all(parts[:2]):
        raise MaasAuthError(
            "Invalid MAAS API key; expected '<consumer>:<token>:<secret>'."
        )
    return parts[0], parts[1], parts[2]


class MaasClient:
    """Thin wrapper over ``requests`` for the MAAS nodes API."""

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        api_version: str = "1.0",
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        """Initialise the client and validate the API key format."""
        self.base_url = f"{url.rstrip('/')}/api/{api_version}"
        self.timeout = timeout
        self._consumer_key, self._token_key, self._token_secret = parse_api_key(api_key)
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def check_connection(self) -> dict[str, Any]:
        """Fetch the server version, verifying credentials in the process."""
        payload = self._request("GET", "version/")
        return payload if isinstance(payload, dict) else {}

    def list_machines(self) -> list[Machine]:
        """Return every node reported by the ``nodes`` listing."""
        payload = self._request("GET", "nodes/", params={"op": "list"})
        if not isinstance(payload, list):
            raise MaasError("Unexpected response for node listing; expected a list.")
        machines: list[Machine] = []
        for entry in payload:
            if not isinstance(entry, Mapping):
                raise MaasError("Unexpected node entry in listing; expected an object.")
            try:
                machines.append(Machine.from_api(entry))
            except MachineDataError as exc:
                raise MaasError(f"Unable to decode node entry: {exc}") from exc
        LOGGER.debug("Got list of %d nodes", len(machines))
        return machines

    def invoke(
        self,
        system_id: str | None,
        operation: str,
        params: Mapping[str, str] | None = None,
    ) -> object:
        """POST *operation* to a node, or to the nodes collection when ``system_id`` is None.

        ``update`` is not a named operation in the MAAS API; it maps to a
        ``PUT`` on the node resource.
        """
        path = "nodes/" if system_id is None else f"nodes/{quote(system_id, safe='')}/"
        if operation == UPDATE_OPERATION:
            if system_id is None:
                raise MaasError("The update operation requires a node system_id.")
            return self._request("PUT", path, data=dict(params or {}))
        return self._request("POST", path, params={"op": operation}, data=dict(params or {}))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _authorization_header(self) -> str:
        fields = {
            "oauth_version": "1.0",
            "oauth_signature_method": "PLAINTEXT",
            "oauth_consumer_key": self._consumer_key,
            "oauth_token": self._token_key,
            "oauth_signature": f"&{self._token_secret}",
            "oauth_nonce": secrets.token_hex(16),
            "oauth_timestamp": str(int(time.time())),
        }
        joined = ", ".join(f'{key}="{quote(value, safe="")}"' for key, value in fields.items())
        return f'OAuth realm="", {joined}'

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        data: Mapping[str, str] | None = None,
    ) -> object:
        url = f"{self.base_url}/{path}"
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                data=data,
                headers={"Authorization": self._authorization_header()},
                timeout=self.timeout,
            )
        except RequestException as exc:
            raise MaasError(f"{method} {url} failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise MaasAuthError(
                f"MAAS rejected credentials for {method} {url} (HTTP {response.status_code})."
            )
        if response.status_code >= 400:
            excerpt = (response.text or "").strip()[:200] or "no body"
            raise MaasError(
                f"{method} {url} failed (HTTP {response.status_code}): {excerpt}"
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text


__all__ = ["MaasAuthError", "MaasClient", "MaasError", "NodeClient", "parse_api_key"]
