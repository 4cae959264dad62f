"""Kubernetes client manager for tmctl."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from kubernetes import client, config
from kubernetes.client import CustomObjectsApi
from kubernetes.client.rest import ApiException

from tmctl.core.kinds import ResourceKind
from tmctl.core.objects import RemoteObject, object_type

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_NAMESPACE = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")
DEFAULT_NAMESPACE = "default"


def is_already_exists(exc: ApiException) -> bool:
    """Tell whether a create call failed because the object already exists.

    The API server answers 409 both for "AlreadyExists" on create and for
    "Conflict" on a stale update, so the status reason is checked when the
    response body carries one.
    """
    if exc.status != 409:
        return False
    return _status_reason(exc) in (None, "AlreadyExists")


def is_not_found(exc: ApiException) -> bool:
    return exc.status == 404


def _status_reason(exc: ApiException) -> Optional[str]:
    if not exc.body:
        return None
    try:
        body = json.loads(exc.body)
    except (TypeError, ValueError):
        return None
    if isinstance(body, dict):
        return body.get("reason")
    return None


class ResourceClient:
    """Create/get/update access to one resource kind in one namespace.

    Request bodies and responses are typed objects; the conversion to and
    from the plain dictionaries ``CustomObjectsApi`` works with happens here.
    """

    def __init__(self, api: CustomObjectsApi, kind: ResourceKind, namespace: str) -> None:
        self._api = api
        self.kind = kind
        self.namespace = namespace

    def _decode(self, data: Dict[str, Any]) -> RemoteObject:
        return object_type(self.kind).model_validate(data)

    def create(self, obj: RemoteObject) -> RemoteObject:
        """Create the object.

        Raises:
            ApiException: If the API server rejects the request
        """
        created = self._api.create_namespaced_custom_object(
            group=self.kind.group,
            version=self.kind.version,
            namespace=self.namespace,
            plural=self.kind.plural,
            body=obj.to_body(),
        )
        return self._decode(created)

    def get(self, name: str) -> RemoteObject:
        """Read the object by name.

        Raises:
            ApiException: 404 if the object does not exist
        """
        current = self._api.get_namespaced_custom_object(
            group=self.kind.group,
            version=self.kind.version,
            namespace=self.namespace,
            plural=self.kind.plural,
            name=name,
        )
        return self._decode(current)

    def update(self, obj: RemoteObject) -> RemoteObject:
        """Replace the object; ``metadata.resourceVersion`` must be current.

        Raises:
            ApiException: 409 if the resource version is stale
        """
        updated = self._api.replace_namespaced_custom_object(
            group=self.kind.group,
            version=self.kind.version,
            namespace=self.namespace,
            plural=self.kind.plural,
            name=obj.metadata.name,
            body=obj.to_body(),
        )
        return self._decode(updated)


class K8sClientManager:
    """Manages Kubernetes client connections.

    Supports both local (kubeconfig) and in-cluster authentication.
    """

    def __init__(
        self,
        kubeconfig_path: Optional[str] = None,
        in_cluster: bool = False
    ) -> None:
        """Initialize the Kubernetes client manager.

        Args:
            kubeconfig_path: Path to kubeconfig file
            in_cluster: Use in-cluster service account config
        """
        self._kubeconfig_path = kubeconfig_path
        self._in_cluster = in_cluster or os.getenv("TMCTL_IN_CLUSTER", "").lower() == "true"
        self._load_config()
        self._custom_objects_api = client.CustomObjectsApi()

    def _load_config(self) -> None:
        """Load Kubernetes configuration."""
        if self._in_cluster:
            try:
                config.load_incluster_config()
            except config.ConfigException as e:
                raise RuntimeError(f"Failed to load in-cluster config: {e}")
        elif self._kubeconfig_path:
            try:
                config.load_kube_config(config_file=self._kubeconfig_path)
            except config.ConfigException as e:
                raise RuntimeError(f"Failed to load kubeconfig from {self._kubeconfig_path}: {e}")
        else:
            try:
                config.load_kube_config()
            except config.ConfigException as e:
                raise RuntimeError(f"Failed to load default kubeconfig: {e}")

    def get_custom_objects_api(self) -> CustomObjectsApi:
        """Get CustomObjectsApi client for Knative and Tekton resources.

        Returns:
            CustomObjectsApi client instance
        """
        return self._custom_objects_api

    def resources(self, kind: ResourceKind, namespace: str) -> ResourceClient:
        """Get a client bound to one resource kind and namespace.

        Args:
            kind: Resource kind
            namespace: Target namespace

        Returns:
            ResourceClient instance
        """
        return ResourceClient(self._custom_objects_api, kind, namespace)

    def current_namespace(self) -> str:
        """Namespace of the active kubeconfig context.

        Falls back to the service account namespace when running in-cluster
        and to ``default`` when neither is set.
        """
        if self._in_cluster:
            if SERVICE_ACCOUNT_NAMESPACE.exists():
                return SERVICE_ACCOUNT_NAMESPACE.read_text().strip() or DEFAULT_NAMESPACE
            return DEFAULT_NAMESPACE
        try:
            _, active = config.list_kube_config_contexts(config_file=self._kubeconfig_path)
        except config.ConfigException:
            return DEFAULT_NAMESPACE
        namespace = (active or {}).get("context", {}).get("namespace")
        logger.debug(f"current kubeconfig namespace: {namespace or DEFAULT_NAMESPACE}")
        return namespace or DEFAULT_NAMESPACE
