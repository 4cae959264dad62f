"""Deployment manager for Knative and Tekton resources."""

import logging
import time
from typing import Dict, List, Optional

import httpx
from kubernetes.client.rest import ApiException

from tmctl.config import Settings
from tmctl.core.errors import InvalidDescriptor, TaskRunFailed, TmctlError, WaitTimeout
from tmctl.core.k8s_client import K8sClientManager, ResourceClient, is_not_found
from tmctl.core.kinds import ResourceKind
from tmctl.core.manifest import is_git_url, is_local, is_url, load_manifest
from tmctl.core.models import (
    BuildDescriptor,
    BuildTemplateDescriptor,
    ChannelDescriptor,
    Outcome,
    PipelineResourceDescriptor,
    ReconcileResult,
    ServiceDescriptor,
    TaskDescriptor,
    TaskRunDescriptor,
)
from tmctl.core.mutator import (
    add_source_upload_step,
    default_param_types,
    inject_registry_secret,
    set_identity,
    source_upload_step,
)
from tmctl.core.objects import (
    ArgumentSpec,
    Build,
    BuildSource,
    BuildSpec,
    Container,
    EnvFromSource,
    EnvVar,
    GitSource,
    InMemoryChannel,
    ObjectMeta,
    OwnerReference,
    Param,
    PipelineResource,
    PipelineResourceSpec,
    RemoteObject,
    ResourceRef,
    RevisionSpec,
    RevisionTemplate,
    SecretRef,
    Service,
    ServiceSpec,
    Task,
    TaskRef,
    TaskResourceBinding,
    TaskRun,
    TaskRunInputs,
    TaskRunSpec,
    TemplateInstantiationSpec,
)
from tmctl.core.ownership import owner_reference, set_owner
from tmctl.core.reconciler import Reconciler

logger = logging.getLogger(__name__)

# Input resource name the TaskRun binds its PipelineResource to
SOURCES_RESOURCE = "sources"

# Metadata the API server populates; dropped from clones
SERVER_METADATA = ("creationTimestamp", "generation", "selfLink", "managedFields")


def parse_pairs(items: List[str], what: str = "value") -> Dict[str, str]:
    """Split ``KEY=VALUE`` strings into a dictionary.

    Raises:
        InvalidDescriptor: If an item has no ``=`` or an empty key
    """
    pairs: Dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise InvalidDescriptor(f"{what} {item!r} is not in KEY=VALUE form")
        pairs[key] = value
    return pairs


class DeploymentManager:
    """Deploys resources of every supported kind.

    One manager serves one command invocation. It holds no state that
    changes after construction, so batch deployments share it across
    worker threads.
    """

    def __init__(
        self,
        k8s_client: Optional[K8sClientManager],
        settings: Settings,
        namespace: str,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        """Initialize the deployment manager.

        Args:
            k8s_client: Kubernetes client manager (may be None for dry runs)
            settings: Settings for this invocation
            namespace: Namespace used when a descriptor names none
            http_client: Client used to download remote manifests
        """
        self._k8s = k8s_client
        self._settings = settings
        self._namespace = namespace
        self._http = http_client

    @property
    def dry_run(self) -> bool:
        return self._settings.dry_run

    @property
    def http_client(self) -> Optional[httpx.Client]:
        return self._http

    def _ns(self, namespace: Optional[str]) -> str:
        return namespace or self._namespace

    def resources(self, kind: ResourceKind, namespace: Optional[str] = None) -> ResourceClient:
        """Get a client for one kind in a namespace.

        Raises:
            TmctlError: If no cluster client is configured
        """
        if self._k8s is None:
            raise TmctlError("no cluster connection configured")
        return self._k8s.resources(kind, self._ns(namespace))

    def _submit(self, obj: RemoteObject) -> ReconcileResult:
        """Create or update an object, or return it untouched on dry runs."""
        reconciler_kind = type(obj).KIND
        if self.dry_run:
            logger.debug(f"dry run, not submitting {reconciler_kind} {obj.metadata.name!r}")
            return ReconcileResult(outcome=Outcome.DRY_RUN, resource=obj)
        reconciler = Reconciler(self.resources(reconciler_kind, obj.metadata.namespace))
        return reconciler.create_or_update(obj)

    def set_owner(
        self,
        kind: ResourceKind,
        name: str,
        owner: OwnerReference,
        namespace: Optional[str] = None,
    ) -> RemoteObject:
        """Bind the lifecycle of an existing object to an owner.

        Args:
            kind: Kind of the dependent object
            name: Name of the dependent object
            owner: Owner reference to set
            namespace: Namespace of the dependent object

        Returns:
            The updated dependent object
        """
        return set_owner(self.resources(kind, namespace), name, owner)

    def apply(self, obj: RemoteObject, namespace: Optional[str] = None) -> ReconcileResult:
        """Create or update an already decoded object of any kind."""
        set_identity(obj, self._ns(namespace or obj.metadata.namespace))
        if isinstance(obj, Task):
            default_param_types(obj)
        return self._submit(obj)

    # Tekton

    def deploy_task(self, descriptor: TaskDescriptor) -> ReconcileResult:
        """Install a Task from a local or remote manifest.

        Args:
            descriptor: Task parameters; ``file`` is required

        Returns:
            ReconcileResult with the created or updated Task

        Raises:
            InvalidDescriptor: If no manifest is given
        """
        if not descriptor.file:
            raise InvalidDescriptor("task manifest path or URL is required")
        task = load_manifest(descriptor.file, ResourceKind.TASK, self._http)

        default_param_types(task)
        set_identity(
            task,
            self._ns(descriptor.namespace),
            name=descriptor.name,
            generate_name=descriptor.generate_name,
        )
        inject_registry_secret(task, descriptor.registry_secret)
        if descriptor.from_local_source:
            add_source_upload_step(task)
        return self._submit(task)

    def clone_task(self, descriptor: TaskDescriptor, task: Optional[Task] = None) -> ReconcileResult:
        """Install a copy of a Task under a generated name.

        The template is not modified. When it is not passed in, the Task
        named by the descriptor is read from the cluster.

        Args:
            descriptor: Clone parameters (registry secret, local source)
            task: Template Task

        Returns:
            ReconcileResult with the new Task
        """
        namespace = self._ns(descriptor.namespace)
        if task is None:
            if not descriptor.name:
                raise InvalidDescriptor("name of the task to clone is required")
            task = self.resources(ResourceKind.TASK, namespace).get(descriptor.name)

        clone = task.model_copy(deep=True)
        clone.kind = ResourceKind.TASK.kind
        clone.api_version = ResourceKind.TASK.api_version
        clone.metadata.resource_version = None
        clone.metadata.uid = None
        clone.metadata.owner_references = None
        for field in SERVER_METADATA:
            (clone.metadata.model_extra or {}).pop(field, None)
        clone.status = None

        default_param_types(clone)
        set_identity(clone, namespace, generate_name=f"{task.metadata.name or descriptor.name}-")
        inject_registry_secret(clone, descriptor.registry_secret)
        if descriptor.from_local_source:
            add_source_upload_step(clone)
        return self._submit(clone)

    def deploy_taskrun(self, descriptor: TaskRunDescriptor) -> ReconcileResult:
        """Run a Task.

        A Task needing registry credentials or local sources is cloned
        first; the clone is run instead of the original and is owned by the
        TaskRun so it goes away with it. Dry runs do not read the Task, so
        the rendered run references the original.

        Args:
            descriptor: TaskRun parameters

        Returns:
            ReconcileResult with the TaskRun (its final state when waiting)
        """
        namespace = self._ns(descriptor.namespace)
        if not descriptor.task:
            raise InvalidDescriptor("name of the task to run is required")

        clone: Optional[Task] = None
        task_name = descriptor.task
        if self.dry_run and (descriptor.registry_secret or descriptor.from_local_source):
            logger.debug(f"dry run, task {descriptor.task!r} is not cloned")
        elif descriptor.registry_secret or descriptor.from_local_source:
            clone = self.clone_task(TaskDescriptor(
                name=descriptor.task,
                namespace=namespace,
                registry_secret=descriptor.registry_secret,
                from_local_source=descriptor.from_local_source,
            )).resource
            task_name = clone.metadata.name or clone.metadata.generate_name

        params = {}
        if descriptor.registry:
            params["IMAGE"] = f"{descriptor.registry}/{namespace}/{descriptor.task}"
        params.update(parse_pairs(descriptor.params, "param"))

        inputs = TaskRunInputs(params=[Param(name=k, value=v) for k, v in params.items()] or None)
        if descriptor.pipeline_resource and not descriptor.from_local_source:
            inputs.resources = [TaskResourceBinding(
                name=SOURCES_RESOURCE,
                resource_ref=ResourceRef(name=descriptor.pipeline_resource),
            )]

        taskrun = TaskRun(spec=TaskRunSpec(
            task_ref=TaskRef(name=task_name),
            inputs=inputs,
            service_account=descriptor.service_account,
            timeout=descriptor.timeout,
        ))
        set_identity(
            taskrun,
            namespace,
            name=descriptor.name,
            generate_name=None if descriptor.name else f"{descriptor.task}-",
        )
        result = self._submit(taskrun)
        if result.outcome is Outcome.DRY_RUN:
            return result

        if clone is not None:
            self.set_owner(ResourceKind.TASK, clone.metadata.name, owner_reference(result.resource), namespace)
        if descriptor.wait:
            finished = self.wait_for_taskrun(result.resource.metadata.name, namespace)
            return ReconcileResult(outcome=result.outcome, resource=finished)
        return result

    def wait_for_taskrun(self, name: str, namespace: Optional[str] = None) -> TaskRun:
        """Poll a TaskRun until its ``Succeeded`` condition is decided.

        Raises:
            TaskRunFailed: If the run failed
            WaitTimeout: If the run is still going after the configured timeout
        """
        resources = self.resources(ResourceKind.TASK_RUN, namespace)
        deadline = time.monotonic() + self._settings.wait_timeout
        while True:
            taskrun = resources.get(name)
            condition = taskrun.condition("Succeeded") or {}
            status = condition.get("status")
            if status == "True":
                logger.debug(f"taskrun {name!r} succeeded")
                return taskrun
            if status == "False":
                raise TaskRunFailed(name, condition.get("message") or condition.get("reason") or "unknown reason")
            if time.monotonic() >= deadline:
                raise WaitTimeout(f"taskrun {name!r} did not finish in {self._settings.wait_timeout}s")
            time.sleep(self._settings.wait_interval)

    def deploy_pipeline_resource(self, descriptor: PipelineResourceDescriptor) -> ReconcileResult:
        """Create or update a git PipelineResource."""
        params = [Param(name="url", value=descriptor.url)]
        if descriptor.revision:
            params.append(Param(name="revision", value=descriptor.revision))
        resource = PipelineResource(spec=PipelineResourceSpec(type="git", params=params))
        set_identity(resource, self._ns(descriptor.namespace), name=descriptor.name)
        return self._submit(resource)

    # Knative build

    def deploy_buildtemplate(self, descriptor: BuildTemplateDescriptor) -> ReconcileResult:
        """Install a BuildTemplate from a local or remote manifest."""
        template = load_manifest(descriptor.file, ResourceKind.BUILD_TEMPLATE, self._http)
        set_identity(template, self._ns(descriptor.namespace), name=descriptor.name)
        inject_registry_secret(template, descriptor.registry_secret)
        return self._submit(template)

    def deploy_build(self, descriptor: BuildDescriptor) -> ReconcileResult:
        """Create or update a Build instantiating a BuildTemplate.

        Git sources are cloned by the build itself; a local source is
        received by the upload step, which runs as the build's custom
        source.
        """
        if not descriptor.buildtemplate:
            raise InvalidDescriptor(f"build {descriptor.name!r}: buildtemplate is required")
        arguments = parse_pairs(descriptor.args, "build argument")

        build = Build(spec=BuildSpec(
            template=TemplateInstantiationSpec(
                name=descriptor.buildtemplate,
                kind=ResourceKind.BUILD_TEMPLATE.kind,
                arguments=[ArgumentSpec(name=k, value=v) for k, v in arguments.items()] or None,
            ),
            timeout=descriptor.timeout,
        ))
        if is_local(descriptor.source):
            build.spec.source = BuildSource(custom=source_upload_step())
        else:
            build.spec.source = BuildSource(git=GitSource(url=descriptor.source, revision=descriptor.revision))
        set_identity(build, self._ns(descriptor.namespace), name=descriptor.name)
        return self._submit(build)

    # Knative eventing

    def deploy_channel(self, descriptor: ChannelDescriptor) -> ReconcileResult:
        """Create or update an in-memory channel."""
        channel = InMemoryChannel()
        set_identity(channel, self._ns(descriptor.namespace), name=descriptor.name)
        return self._submit(channel)

    # Knative serving

    def _resolve_runtime(self, descriptor: ServiceDescriptor, namespace: str) -> str:
        """Name of the BuildTemplate building a service.

        A runtime given as a path or URL is deployed first; anything else is
        taken as the name of a template already in the cluster.
        """
        runtime = descriptor.runtime
        if is_local(runtime) or is_url(runtime):
            result = self.deploy_buildtemplate(BuildTemplateDescriptor(
                namespace=namespace,
                file=runtime,
                registry_secret=descriptor.registry_secret,
            ))
            return result.resource.metadata.name
        if descriptor.registry_secret:
            logger.warning(
                f"runtime {runtime!r} is an existing buildtemplate, "
                f"registry secret {descriptor.registry_secret!r} is not applied to it"
            )
        return runtime

    def deploy_service(self, descriptor: ServiceDescriptor) -> ReconcileResult:
        """Deploy a Knative Service from an image or from sources.

        Sources (git URL or local path) are built into
        ``<registry>/<namespace>/<name>`` by a Build named after the service.
        Once the service exists the Build is made dependent on it.

        Args:
            descriptor: Service parameters

        Returns:
            ReconcileResult with the created or updated Service, and its
            address when waiting

        Raises:
            InvalidDescriptor: If sources are given without a runtime
        """
        namespace = self._ns(descriptor.namespace)
        image = descriptor.source
        build_name = None

        if is_local(descriptor.source) or is_git_url(descriptor.source):
            if not descriptor.runtime:
                raise InvalidDescriptor(
                    f"service {descriptor.name!r}: runtime is required to build {descriptor.source!r}"
                )
            template = self._resolve_runtime(descriptor, namespace)
            registry = descriptor.registry or self._settings.registry
            image = f"{registry}/{namespace}/{descriptor.name}"
            if descriptor.image_tag:
                image = f"{image}:{descriptor.image_tag}"
            build = self.deploy_build(BuildDescriptor(
                name=descriptor.name,
                namespace=namespace,
                source=descriptor.source,
                revision=descriptor.revision,
                buildtemplate=template,
                args=[f"IMAGE={image}"] + list(descriptor.build_args),
                timeout=descriptor.build_timeout,
            ))
            build_name = build.resource.metadata.name

        env = parse_pairs(descriptor.env, "env")
        labels = parse_pairs(descriptor.labels, "label")
        container = Container(
            image=image,
            image_pull_policy=descriptor.pull_policy,
            env=[EnvVar(name=k, value=v) for k, v in env.items()] or None,
            env_from=[EnvFromSource(secret_ref=SecretRef(name=s)) for s in descriptor.env_secrets] or None,
        )
        service = Service(
            metadata=ObjectMeta(labels=labels or None),
            spec=ServiceSpec(template=RevisionTemplate(
                metadata=ObjectMeta(annotations=dict(descriptor.annotations)) if descriptor.annotations else None,
                spec=RevisionSpec(
                    container_concurrency=descriptor.concurrency,
                    containers=[container],
                ),
            )),
        )
        set_identity(service, namespace, name=descriptor.name)
        result = self._submit(service)

        if result.outcome is Outcome.DRY_RUN:
            return result
        if build_name:
            self.set_owner(ResourceKind.BUILD, build_name, owner_reference(result.resource), namespace)
        if descriptor.wait:
            url = self.wait_for_route(descriptor.name, namespace)
            return ReconcileResult(outcome=result.outcome, resource=result.resource, url=url)
        return result

    def wait_for_route(self, name: str, namespace: Optional[str] = None) -> str:
        """Poll the Route of a Service until it reports an address.

        The Route is created by the serving controller, so it may not exist
        yet when polling starts.

        Returns:
            The service URL

        Raises:
            WaitTimeout: If no address is reported within the configured timeout
        """
        routes = self.resources(ResourceKind.ROUTE, namespace)
        deadline = time.monotonic() + self._settings.wait_timeout
        while True:
            try:
                url = routes.get(name).url
            except ApiException as e:
                if not is_not_found(e):
                    raise
                url = None
            if url:
                logger.debug(f"service {name!r} is served at {url}")
                return url
            if time.monotonic() >= deadline:
                raise WaitTimeout(f"service {name!r} got no address in {self._settings.wait_timeout}s")
            time.sleep(self._settings.wait_interval)
