"""Pydantic models for tmctl deployments."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from tmctl.core.objects import RemoteObject


# Deployment Descriptors

class TaskDescriptor(BaseModel):
    """Parameters for deploying a Tekton Task."""

    name: Optional[str] = Field(default=None, description="Task name (overrides the manifest)")
    namespace: Optional[str] = Field(default=None, description="Target namespace")
    file: Optional[str] = Field(default=None, description="Local path or URL to the Task manifest")
    generate_name: Optional[str] = Field(default=None, description="Name prefix for generated names")
    registry_secret: Optional[str] = Field(default=None, description="Secret with registry auth json")
    from_local_source: bool = Field(default=False, description="Sources are uploaded from a local path")


class TaskRunDescriptor(BaseModel):
    """Parameters for running a Tekton Task."""

    name: Optional[str] = Field(default=None, description="TaskRun name (generated if empty)")
    namespace: Optional[str] = Field(default=None, description="Target namespace")
    task: str = Field(..., description="Name of the Task to run")
    pipeline_resource: Optional[str] = Field(default=None, description="PipelineResource passed as sources")
    registry: Optional[str] = Field(default=None, description="Registry host for the IMAGE param")
    registry_secret: Optional[str] = Field(default=None, description="Secret with registry auth json")
    from_local_source: bool = Field(default=False, description="Sources are uploaded from a local path")
    params: List[str] = Field(default_factory=list, description="Extra params as KEY=VALUE")
    service_account: Optional[str] = Field(default=None, description="Service account to run as")
    timeout: Optional[str] = Field(default=None, description="Run timeout, e.g. 10m")
    wait: bool = Field(default=False, description="Wait for the run to finish")


class PipelineResourceDescriptor(BaseModel):
    """Parameters for a git PipelineResource."""

    name: str = Field(..., description="PipelineResource name")
    namespace: Optional[str] = Field(default=None, description="Target namespace")
    url: str = Field(..., description="Git URL")
    revision: Optional[str] = Field(default=None, description="Git revision")


class BuildTemplateDescriptor(BaseModel):
    """Parameters for deploying a Knative BuildTemplate."""

    name: Optional[str] = Field(default=None, description="BuildTemplate name (overrides the manifest)")
    namespace: Optional[str] = Field(default=None, description="Target namespace")
    file: str = Field(..., description="Local path or URL to the BuildTemplate manifest")
    registry_secret: Optional[str] = Field(default=None, description="Secret with registry auth json")


class BuildDescriptor(BaseModel):
    """Parameters for deploying a Knative Build."""

    name: str = Field(..., description="Build name")
    namespace: Optional[str] = Field(default=None, description="Target namespace")
    source: str = Field(..., description="Git URL or local path")
    revision: str = Field(default="master", description="Git revision")
    buildtemplate: Optional[str] = Field(default=None, description="BuildTemplate to instantiate")
    args: List[str] = Field(default_factory=list, description="Template arguments as KEY=VALUE")
    timeout: Optional[str] = Field(default=None, description="Build timeout, e.g. 10m")


class ChannelDescriptor(BaseModel):
    """Parameters for an in-memory channel."""

    name: str = Field(..., description="Channel name")
    namespace: Optional[str] = Field(default=None, description="Target namespace")


class ServiceDescriptor(BaseModel):
    """Parameters for deploying a Knative Service."""

    name: str = Field(..., description="Service name")
    namespace: Optional[str] = Field(default=None, description="Target namespace")
    source: str = Field(..., description="Image, git URL or local path")
    revision: str = Field(default="master", description="Git revision")
    runtime: Optional[str] = Field(default=None, description="BuildTemplate name, path or URL")
    registry: Optional[str] = Field(default=None, description="Registry to push built images to")
    registry_secret: Optional[str] = Field(default=None, description="Secret with registry auth json")
    build_timeout: str = Field(default="10m", description="Image build timeout")
    build_args: List[str] = Field(default_factory=list, description="BuildTemplate arguments as KEY=VALUE")
    concurrency: int = Field(default=0, description="Container concurrency, 0 for unlimited")
    env: List[str] = Field(default_factory=list, description="Environment variables as KEY=VALUE")
    env_secrets: List[str] = Field(default_factory=list, description="Secrets populating the environment")
    labels: List[str] = Field(default_factory=list, description="Service labels as KEY=VALUE")
    annotations: Dict[str, str] = Field(default_factory=dict, description="Revision template annotations")
    pull_policy: Optional[str] = Field(default=None, description="Container image pull policy, e.g. Always")
    image_tag: Optional[str] = Field(default=None, description="Tag of the image built from sources")
    wait: bool = Field(default=False, description="Wait for the service address")


# Results

class Outcome(str, Enum):
    """What a deployment did to the cluster."""

    CREATED = "created"
    UPDATED = "updated"
    DRY_RUN = "dry-run"


class ReconcileResult(BaseModel):
    """Object returned by the cluster and how it got there."""

    outcome: Outcome = Field(..., description="Created, updated or not submitted")
    resource: RemoteObject = Field(..., description="Resulting object")
    url: Optional[str] = Field(default=None, description="Address the object serves, when waited for")

    @property
    def name(self) -> Optional[str]:
        return self.resource.metadata.name


class DeployReport(BaseModel):
    """Result of one unit in a batch deployment."""

    name: str = Field(..., description="Unit name")
    kind: str = Field(..., description="Resource kind")
    outcome: Optional[Outcome] = Field(default=None, description="Outcome if the unit succeeded")
    error: Optional[str] = Field(default=None, description="Error message if the unit failed")

    @property
    def ok(self) -> bool:
        return self.error is None
