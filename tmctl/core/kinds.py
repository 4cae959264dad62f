"""Resource kinds tmctl knows how to deploy."""

from enum import Enum


class ResourceKind(Enum):
    """Closed set of custom resource kinds.

    Each member carries the API group, version, plural and ``kind`` string
    the cluster expects for that resource.
    """

    SERVICE = ("serving.knative.dev", "v1alpha1", "services", "Service")
    ROUTE = ("serving.knative.dev", "v1alpha1", "routes", "Route")
    BUILD = ("build.knative.dev", "v1alpha1", "builds", "Build")
    BUILD_TEMPLATE = ("build.knative.dev", "v1alpha1", "buildtemplates", "BuildTemplate")
    CHANNEL = ("messaging.knative.dev", "v1alpha1", "inmemorychannels", "InMemoryChannel")
    TASK = ("tekton.dev", "v1alpha1", "tasks", "Task")
    TASK_RUN = ("tekton.dev", "v1alpha1", "taskruns", "TaskRun")
    PIPELINE_RESOURCE = ("tekton.dev", "v1alpha1", "pipelineresources", "PipelineResource")

    def __init__(self, group: str, version: str, plural: str, kind: str) -> None:
        self.group = group
        self.version = version
        self.plural = plural
        self.kind = kind

    @property
    def api_version(self) -> str:
        """Full apiVersion string, e.g. ``tekton.dev/v1alpha1``."""
        return f"{self.group}/{self.version}"

    def __str__(self) -> str:
        return self.kind
