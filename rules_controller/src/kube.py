from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from kubernetes import client, config
from kubernetes.client import CoordinationV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from rules_controller.src.models import API_GROUP, API_VERSION, PLURAL, MimirRule

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CustomObjectsApi, CoordinationV1Api]:
    """Return the custom-objects and coordination API clients for the loaded kube config."""
    return client.CustomObjectsApi(), client.CoordinationV1Api()


class RuleClient:
    """Typed access to ``MimirRule`` objects through the custom-objects API.

    With an empty ``namespace`` the client lists and watches cluster-wide;
    ``get`` and ``update`` always address the object's own namespace.
    """

    def __init__(self, custom_objects_api: CustomObjectsApi, namespace: str = "") -> None:
        self.api = custom_objects_api
        self.namespace = namespace

    def list_function(self) -> Callable[..., Any]:
        """Return the list call a ``kubernetes.watch.Watch`` should stream from."""
        if self.namespace:
            return self.api.list_namespaced_custom_object
        return self.api.list_cluster_custom_object

    def list_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"group": API_GROUP, "version": API_VERSION, "plural": PLURAL}
        if self.namespace:
            kwargs["namespace"] = self.namespace
        return kwargs

    def list_rules(self) -> tuple[list[MimirRule], str | None]:
        """List every rule in scope. Returns ``(rules, resource_version)``."""
        response = self.list_function()(**self.list_kwargs())
        if not isinstance(response, dict):
            return [], None
        items = response.get("items") or []
        metadata = response.get("metadata") or {}
        return [MimirRule.from_dict(item) for item in items], metadata.get("resourceVersion")

    def get(self, namespace: str, name: str) -> MimirRule:
        obj = self.api.get_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=PLURAL,
            name=name,
        )
        return MimirRule.from_dict(obj)

    def update(self, rule: MimirRule) -> MimirRule:
        """Replace the whole object. Fails with ``409`` when ``resourceVersion`` is stale."""
        obj = self.api.replace_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION,
            namespace=rule.namespace,
            plural=PLURAL,
            name=rule.name,
            body=rule.to_dict(),
        )
        return MimirRule.from_dict(obj)
