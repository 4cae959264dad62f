"""Shared fixtures: an in-memory stand-in for the custom objects API."""

import copy
import json
from pathlib import Path
from typing import Any, Dict, List, Tuple

import pytest
from kubernetes.client.rest import ApiException

from tmctl.config import Settings
from tmctl.core.deployment_manager import DeploymentManager
from tmctl.core.k8s_client import ResourceClient
from tmctl.core.kinds import ResourceKind

TASK_YAML = """\
apiVersion: tekton.dev/v1alpha1
kind: Task
metadata:
  name: kaniko
spec:
  inputs:
    params:
      - name: IMAGE
        description: Image to build
      - name: DOCKERFILE
        type: string
        default: Dockerfile
    resources:
      - name: sources
        type: git
  steps:
    - name: build-and-push
      image: gcr.io/kaniko-project/executor
      args: ["--dockerfile=$(inputs.params.DOCKERFILE)", "--destination=$(inputs.params.IMAGE)"]
"""

BUILDTEMPLATE_YAML = """\
apiVersion: build.knative.dev/v1alpha1
kind: BuildTemplate
metadata:
  name: kaniko
spec:
  parameters:
    - name: IMAGE
  steps:
    - name: build-and-push
      image: gcr.io/kaniko-project/executor
"""


def _error(status: int, reason: str) -> ApiException:
    e = ApiException(status=status, reason=reason)
    e.body = json.dumps({"kind": "Status", "reason": reason})
    return e


class FakeCustomObjectsApi:
    """Keeps objects in a dict and records every call made to it."""

    def __init__(self) -> None:
        self.objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, str]] = []
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def create_namespaced_custom_object(self, group, version, namespace, plural, body):
        body = copy.deepcopy(body)
        meta = body.setdefault("metadata", {})
        self.calls.append(("create", plural, meta.get("name") or meta.get("generateName")))
        seq = self._next()
        if not meta.get("name"):
            meta["name"] = f"{meta['generateName']}{seq:05d}"
        key = (plural, namespace, meta["name"])
        if key in self.objects:
            raise _error(409, "AlreadyExists")
        meta["namespace"] = namespace
        meta["uid"] = f"uid-{seq}"
        meta["resourceVersion"] = "1"
        self.objects[key] = body
        return copy.deepcopy(body)

    def get_namespaced_custom_object(self, group, version, namespace, plural, name):
        self.calls.append(("get", plural, name))
        key = (plural, namespace, name)
        if key not in self.objects:
            raise _error(404, "NotFound")
        return copy.deepcopy(self.objects[key])

    def replace_namespaced_custom_object(self, group, version, namespace, plural, name, body):
        self.calls.append(("update", plural, name))
        key = (plural, namespace, name)
        if key not in self.objects:
            raise _error(404, "NotFound")
        current = self.objects[key]
        if body["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise _error(409, "Conflict")
        updated = copy.deepcopy(body)
        updated["metadata"]["uid"] = current["metadata"]["uid"]
        updated["metadata"]["resourceVersion"] = str(int(current["metadata"]["resourceVersion"]) + 1)
        self.objects[key] = updated
        return copy.deepcopy(updated)

    def stored(self, kind: ResourceKind, name: str, namespace: str = "default") -> Dict[str, Any]:
        return self.objects[(kind.plural, namespace, name)]

    def names(self, kind: ResourceKind, namespace: str = "default") -> List[str]:
        return [n for (p, ns, n) in self.objects if p == kind.plural and ns == namespace]


class FakeK8sClient:
    """Stands in for K8sClientManager."""

    def __init__(self, api: FakeCustomObjectsApi, namespace: str = "default") -> None:
        self.api = api
        self.namespace = namespace

    def resources(self, kind: ResourceKind, namespace: str) -> ResourceClient:
        return ResourceClient(self.api, kind, namespace)

    def current_namespace(self) -> str:
        return self.namespace


@pytest.fixture
def api() -> FakeCustomObjectsApi:
    return FakeCustomObjectsApi()


@pytest.fixture
def settings() -> Settings:
    return Settings(registry="registry.local", wait_timeout=5, wait_interval=0)


@pytest.fixture
def manager(k8s: FakeK8sClient, settings: Settings) -> DeploymentManager:
    return DeploymentManager(k8s, settings, "default")


@pytest.fixture
def dry_run_manager(settings: Settings) -> DeploymentManager:
    return DeploymentManager(None, settings.model_copy(update={"dry_run": True}), "default")


@pytest.fixture
def task_file(tmp_path: Path) -> Path:
    path = tmp_path / "task.yaml"
    path.write_text(TASK_YAML)
    return path


@pytest.fixture
def buildtemplate_file(tmp_path: Path) -> Path:
    path = tmp_path / "buildtemplate.yaml"
    path.write_text(BUILDTEMPLATE_YAML)
    return path


@pytest.fixture
def k8s(api: FakeCustomObjectsApi) -> FakeK8sClient:
    return FakeK8sClient(api)
