"""HTTP client for the Mimir ruler configuration API.

Only the three calls the controller needs are implemented: create (upsert)
a rule group, delete a rule group, and read one back. Groups are sent as
YAML, which is what the ruler's config API accepts.
"""

from __future__ import annotations

import logging
import ssl
from typing import Any, Protocol
from urllib.parse import quote

import httpx
import yaml

from rules_controller.src.config import MimirClientConfig
from rules_controller.src.rules import RemoteRuleGroup

LOGGER = logging.getLogger(__name__)


class RuleGroupClient(Protocol):
    def create_rule_group(self, namespace: str, group: RemoteRuleGroup) -> None: ...

    def delete_rule_group(self, namespace: str, group_name: str) -> None: ...


class MimirClientError(RuntimeError):
    """Raised when the ruler rejects a request or cannot be reached."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MimirClient:
    """Synchronous ruler client backed by a shared ``httpx.Client``.

    Example:
        client = MimirClient.from_config(MimirClientConfig(address="http://mimir:8080"))
        client.create_rule_group("prod:monitoring:node-rules", group)
    """

    def __init__(self, http: httpx.Client, use_legacy_routes: bool = False) -> None:
        self.http = http
        self.use_legacy_routes = use_legacy_routes

    @classmethod
    def from_config(cls, config: MimirClientConfig) -> MimirClient:
        headers: dict[str, str] = {}
        if config.tenant_id:
            headers["X-Scope-OrgID"] = config.tenant_id
        if config.auth_token:
            headers["Authorization"] = f"Bearer {config.auth_token}"

        auth: httpx.BasicAuth | None = None
        if config.user and not config.auth_token:
            auth = httpx.BasicAuth(config.user, config.key)

        verify: bool | ssl.SSLContext = True
        if config.insecure_skip_verify:
            verify = False
        elif config.tls_ca_path or config.tls_cert_path:
            verify = ssl.create_default_context(cafile=config.tls_ca_path or None)
            if config.tls_cert_path and config.tls_key_path:
                verify.load_cert_chain(config.tls_cert_path, config.tls_key_path)

        http = httpx.Client(
            base_url=config.address.rstrip("/"),
            headers=headers,
            auth=auth,
            verify=verify,
            timeout=config.timeout_seconds,
        )
        return cls(http=http, use_legacy_routes=config.use_legacy_routes)

    def close(self) -> None:
        self.http.close()

    def _rules_path(self, namespace: str, group_name: str | None = None) -> str:
        prefix = "/api/v1/rules" if self.use_legacy_routes else "/prometheus/config/v1/rules"
        path = f"{prefix}/{quote(namespace, safe='')}"
        if group_name is not None:
            path = f"{path}/{quote(group_name, safe='')}"
        return path

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self.http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise MimirClientError(f"{method} {path} failed: {exc}") from exc
        return response

    @staticmethod
    def _raise_for_status(method: str, path: str, response: httpx.Response) -> None:
        if response.is_success:
            return
        body = response.text.strip()
        raise MimirClientError(
            f"{method} {path} returned {response.status_code}: {body[:512]}",
            status_code=response.status_code,
        )

    def create_rule_group(self, namespace: str, group: RemoteRuleGroup) -> None:
        """Create or replace *group* in *namespace*."""
        path = self._rules_path(namespace)
        payload = yaml.safe_dump(group.to_dict(), sort_keys=False)
        response = self._request(
            "POST",
            path,
            content=payload.encode("utf-8"),
            headers={"Content-Type": "application/yaml"},
        )
        self._raise_for_status("POST", path, response)
        LOGGER.info("Applied rule group %s in namespace %s", group.name, namespace)

    def delete_rule_group(self, namespace: str, group_name: str) -> None:
        """Delete *group_name*; a group that is already gone counts as deleted."""
        path = self._rules_path(namespace, group_name)
        response = self._request("DELETE", path)
        if response.status_code == 404:
            LOGGER.info(
                "Rule group %s in namespace %s was already absent", group_name, namespace
            )
            return
        self._raise_for_status("DELETE", path, response)
        LOGGER.info("Deleted rule group %s in namespace %s", group_name, namespace)

    def get_rule_group(self, namespace: str, group_name: str) -> dict[str, Any] | None:
        """Return the stored group as a dict, or None when it does not exist."""
        path = self._rules_path(namespace, group_name)
        response = self._request("GET", path)
        if response.status_code == 404:
            return None
        self._raise_for_status("GET", path, response)
        loaded = yaml.safe_load(response.text)
        return loaded if isinstance(loaded, dict) else None
