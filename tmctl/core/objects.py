"""Pydantic models for Knative and Tekton objects.

Models only describe the fields tmctl reads or writes. Everything else in a
manifest is kept as an extra field so submitting a loaded object never drops
data. Python attribute names are snake_case; the wire format is camelCase.
"""

from typing import Any, ClassVar, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from tmctl.core.kinds import ResourceKind


class KubeModel(BaseModel):
    """Base model using camelCase aliases and keeping unknown fields."""

    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        alias_generator=to_camel,
    )


# Core (corev1) shapes

class EnvVar(KubeModel):
    """Container environment variable."""

    name: str
    value: Optional[str] = None


class VolumeMount(KubeModel):
    """Container volume mount."""

    name: str
    mount_path: str
    read_only: Optional[bool] = None


class SecretVolumeSource(KubeModel):
    """Secret-backed volume source."""

    secret_name: str


class Volume(KubeModel):
    """Pod volume declaration."""

    name: str
    secret: Optional[SecretVolumeSource] = None


class Step(KubeModel):
    """Container used as an execution step."""

    name: Optional[str] = None
    image: Optional[str] = None
    command: Optional[List[str]] = None
    args: Optional[List[str]] = None
    working_dir: Optional[str] = None
    env: Optional[List[EnvVar]] = None
    volume_mounts: Optional[List[VolumeMount]] = None


class OwnerReference(KubeModel):
    """Reference to the object owning another object."""

    api_version: str
    kind: str
    name: str
    uid: str
    controller: Optional[bool] = None
    block_owner_deletion: Optional[bool] = None


class ObjectMeta(KubeModel):
    """Object metadata."""

    name: Optional[str] = None
    generate_name: Optional[str] = None
    namespace: Optional[str] = None
    labels: Optional[Dict[str, str]] = None
    annotations: Optional[Dict[str, str]] = None
    resource_version: Optional[str] = None
    uid: Optional[str] = None
    owner_references: Optional[List[OwnerReference]] = None


class RemoteObject(KubeModel):
    """An object as understood by the cluster: type meta, metadata and spec."""

    KIND: ClassVar[ResourceKind]

    api_version: str
    kind: str
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    status: Optional[Dict[str, Any]] = None

    @model_validator(mode="before")
    @classmethod
    def _default_type_meta(cls, data: Any) -> Any:
        # Objects built in code get kind/apiVersion from their class; decoded
        # manifests keep whatever they declared.
        if isinstance(data, dict) and hasattr(cls, "KIND"):
            data = dict(data)
            if "kind" not in data:
                data["kind"] = cls.KIND.kind
            if "apiVersion" not in data and "api_version" not in data:
                data["apiVersion"] = cls.KIND.api_version
        return data

    @property
    def name(self) -> Optional[str]:
        return self.metadata.name

    def to_body(self) -> Dict[str, Any]:
        """Serialize to the dictionary sent to the API server."""
        return self.model_dump(by_alias=True, exclude_none=True)


# Tekton

class ParamSpec(KubeModel):
    """Declared input parameter of a Task or BuildTemplate."""

    name: str
    type: Optional[str] = None
    description: Optional[str] = None
    default: Optional[Any] = None


class TaskResource(KubeModel):
    """Declared resource of a Task."""

    name: str
    type: Optional[str] = None


class TaskInputs(KubeModel):
    params: Optional[List[ParamSpec]] = None
    resources: Optional[List[TaskResource]] = None


class TaskSpec(KubeModel):
    inputs: Optional[TaskInputs] = None
    outputs: Optional[Dict[str, Any]] = None
    steps: List[Step] = Field(default_factory=list)
    volumes: Optional[List[Volume]] = None


class Task(RemoteObject):
    KIND: ClassVar[ResourceKind] = ResourceKind.TASK

    spec: TaskSpec = Field(default_factory=TaskSpec)


class Param(KubeModel):
    """Name/value pair passed to a run or resource."""

    name: str
    value: str


class TaskRef(KubeModel):
    name: str
    kind: Optional[str] = None


class ResourceRef(KubeModel):
    name: str


class TaskResourceBinding(KubeModel):
    name: str
    resource_ref: ResourceRef


class TaskRunInputs(KubeModel):
    resources: Optional[List[TaskResourceBinding]] = None
    params: Optional[List[Param]] = None


class TaskRunSpec(KubeModel):
    task_ref: Optional[TaskRef] = None
    inputs: Optional[TaskRunInputs] = None
    outputs: Optional[Dict[str, Any]] = None
    service_account: Optional[str] = None
    timeout: Optional[str] = None


class TaskRun(RemoteObject):
    KIND: ClassVar[ResourceKind] = ResourceKind.TASK_RUN

    spec: TaskRunSpec = Field(default_factory=TaskRunSpec)

    def condition(self, condition_type: str = "Succeeded") -> Optional[Dict[str, Any]]:
        """Return the status condition of the given type, if reported."""
        for cond in (self.status or {}).get("conditions") or []:
            if cond.get("type") == condition_type:
                return cond
        return None


class PipelineResourceSpec(KubeModel):
    type: str = "git"
    params: List[Param] = Field(default_factory=list)


class PipelineResource(RemoteObject):
    KIND: ClassVar[ResourceKind] = ResourceKind.PIPELINE_RESOURCE

    spec: PipelineResourceSpec = Field(default_factory=PipelineResourceSpec)


# Knative build

class BuildTemplateSpec(KubeModel):
    parameters: Optional[List[ParamSpec]] = None
    steps: List[Step] = Field(default_factory=list)
    volumes: Optional[List[Volume]] = None


class BuildTemplate(RemoteObject):
    KIND: ClassVar[ResourceKind] = ResourceKind.BUILD_TEMPLATE

    spec: BuildTemplateSpec = Field(default_factory=BuildTemplateSpec)


class GitSource(KubeModel):
    url: str
    revision: str = "master"


class BuildSource(KubeModel):
    git: Optional[GitSource] = None
    custom: Optional[Step] = None


class ArgumentSpec(KubeModel):
    name: str
    value: str


class TemplateInstantiationSpec(KubeModel):
    name: str
    kind: Optional[str] = None
    arguments: Optional[List[ArgumentSpec]] = None


class BuildSpec(KubeModel):
    source: Optional[BuildSource] = None
    template: Optional[TemplateInstantiationSpec] = None
    steps: List[Step] = Field(default_factory=list)
    volumes: Optional[List[Volume]] = None
    timeout: Optional[str] = None
    service_account_name: Optional[str] = None


class Build(RemoteObject):
    KIND: ClassVar[ResourceKind] = ResourceKind.BUILD

    spec: BuildSpec = Field(default_factory=BuildSpec)


# Knative eventing

class InMemoryChannel(RemoteObject):
    KIND: ClassVar[ResourceKind] = ResourceKind.CHANNEL

    spec: Dict[str, Any] = Field(default_factory=dict)


# Knative serving

class SecretRef(KubeModel):
    name: str


class EnvFromSource(KubeModel):
    secret_ref: Optional[SecretRef] = None


class Container(KubeModel):
    """Serving container."""

    image: str
    image_pull_policy: Optional[str] = None
    env: Optional[List[EnvVar]] = None
    env_from: Optional[List[EnvFromSource]] = None


class RevisionSpec(KubeModel):
    container_concurrency: Optional[int] = None
    containers: List[Container] = Field(default_factory=list)
    timeout_seconds: Optional[int] = None


class RevisionTemplate(KubeModel):
    metadata: Optional[ObjectMeta] = None
    spec: RevisionSpec = Field(default_factory=RevisionSpec)


class ServiceSpec(KubeModel):
    template: RevisionTemplate = Field(default_factory=RevisionTemplate)


class Service(RemoteObject):
    KIND: ClassVar[ResourceKind] = ResourceKind.SERVICE

    spec: ServiceSpec = Field(default_factory=ServiceSpec)


class Route(RemoteObject):
    """Network route the serving controller creates for a Service."""

    KIND: ClassVar[ResourceKind] = ResourceKind.ROUTE

    spec: Dict[str, Any] = Field(default_factory=dict)

    @property
    def url(self) -> Optional[str]:
        """Address the route serves, once the controller has reported one."""
        status = self.status or {}
        if status.get("url"):
            return status["url"]
        if status.get("domain"):
            return f"http://{status['domain']}"
        return None


OBJECT_TYPES: Dict[ResourceKind, Type[RemoteObject]] = {
    ResourceKind.SERVICE: Service,
    ResourceKind.ROUTE: Route,
    ResourceKind.BUILD: Build,
    ResourceKind.BUILD_TEMPLATE: BuildTemplate,
    ResourceKind.CHANNEL: InMemoryChannel,
    ResourceKind.TASK: Task,
    ResourceKind.TASK_RUN: TaskRun,
    ResourceKind.PIPELINE_RESOURCE: PipelineResource,
}


def object_type(kind: ResourceKind) -> Type[RemoteObject]:
    """Model class for a resource kind."""
    return OBJECT_TYPES[kind]


def kind_for(kind: str, api_version: str) -> Optional[ResourceKind]:
    """Look up a resource kind by its ``kind`` and ``apiVersion`` strings."""
    for member in ResourceKind:
        if member.kind == kind and member.api_version == api_version:
            return member
    return None
