"""Tests for per-kind deployments."""

import logging
from pathlib import Path

import pytest
from kubernetes.client.rest import ApiException

from tmctl.config import Settings
from tmctl.core.deployment_manager import DeploymentManager, parse_pairs
from tmctl.core.errors import InvalidDescriptor, TaskRunFailed, TmctlError, WaitTimeout
from tmctl.core.kinds import ResourceKind
from tmctl.core.manifest import load_manifest
from tmctl.core.models import (
    BuildDescriptor,
    ChannelDescriptor,
    Outcome,
    PipelineResourceDescriptor,
    ServiceDescriptor,
    TaskDescriptor,
    TaskRunDescriptor,
)
from tmctl.core.mutator import UPLOAD_STEP_NAME


def _set_status(api, name: str, status: str, message: str = "") -> None:
    api.objects[("taskruns", "default", name)]["status"] = {
        "conditions": [{"type": "Succeeded", "status": status, "message": message}],
    }


def _set_route(api, name: str, status: dict) -> None:
    api.objects[("routes", "default", name)] = {
        "apiVersion": "serving.knative.dev/v1alpha1",
        "kind": "Route",
        "metadata": {"name": name, "namespace": "default"},
        "status": status,
    }


class TestTask:
    """Task and clone deployments."""

    def test_deploy_task(self, manager: DeploymentManager, api, task_file: Path) -> None:
        """Test that a Task is installed with typed params and credentials."""
        result = manager.deploy_task(TaskDescriptor(file=str(task_file), registry_secret="docker"))

        assert result.outcome is Outcome.CREATED
        assert result.name == "kaniko"
        stored = api.stored(ResourceKind.TASK, "kaniko")
        assert [p["type"] for p in stored["spec"]["inputs"]["params"]] == ["string", "string"]
        assert stored["spec"]["volumes"] == [{"name": "docker", "secret": {"secretName": "docker"}}]
        assert stored["spec"]["steps"][0]["env"] == [{"name": "DOCKER_CONFIG", "value": "/docker"}]

    def test_deploy_task_twice_updates(self, manager: DeploymentManager, api, task_file: Path) -> None:
        """Test that redeploying a Task updates it in place."""
        manager.deploy_task(TaskDescriptor(name="foo", file=str(task_file)))
        result = manager.deploy_task(TaskDescriptor(name="foo", file=str(task_file)))

        assert result.outcome is Outcome.UPDATED
        assert api.names(ResourceKind.TASK) == ["foo"]
        assert api.stored(ResourceKind.TASK, "foo")["metadata"]["resourceVersion"] == "2"

    def test_deploy_task_generate_name(self, manager: DeploymentManager, api, task_file: Path) -> None:
        """Test that a name prefix yields a new Task on every deployment."""
        descriptor = TaskDescriptor(file=str(task_file), generate_name="kaniko-")
        manager.deploy_task(descriptor)
        manager.deploy_task(descriptor)

        names = api.names(ResourceKind.TASK)
        assert len(names) == 2
        assert all(name.startswith("kaniko-") for name in names)

    def test_deploy_task_local_source(self, manager: DeploymentManager, api, task_file: Path) -> None:
        """Test that a Task receiving local sources gets the upload step."""
        manager.deploy_task(TaskDescriptor(file=str(task_file), from_local_source=True))

        stored = api.stored(ResourceKind.TASK, "kaniko")
        assert stored["spec"]["steps"][0]["name"] == UPLOAD_STEP_NAME
        assert stored["spec"]["inputs"]["resources"] == []

    def test_deploy_task_requires_file(self, manager: DeploymentManager, api) -> None:
        """Test that a Task cannot be deployed without a manifest."""
        with pytest.raises(InvalidDescriptor):
            manager.deploy_task(TaskDescriptor(name="foo"))
        assert api.calls == []

    def test_clone_task(self, manager: DeploymentManager, api, task_file: Path) -> None:
        """Test that a clone gets a generated name and leaves the template alone."""
        manager.deploy_task(TaskDescriptor(file=str(task_file)))
        api.objects[("tasks", "default", "kaniko")]["metadata"]["creationTimestamp"] = "2019-05-01T00:00:00Z"
        template_before = dict(api.stored(ResourceKind.TASK, "kaniko"))

        result = manager.clone_task(TaskDescriptor(name="kaniko", registry_secret="docker", from_local_source=True))

        clone = result.resource
        assert result.outcome is Outcome.CREATED
        assert clone.metadata.name.startswith("kaniko-")
        assert clone.metadata.uid != "uid-1"
        assert [s.name for s in clone.spec.steps] == [UPLOAD_STEP_NAME, "build-and-push"]
        stored = api.stored(ResourceKind.TASK, clone.metadata.name)
        assert "creationTimestamp" not in stored["metadata"]
        assert stored["spec"]["volumes"][0]["name"] == "docker"
        assert api.stored(ResourceKind.TASK, "kaniko") == template_before

    def test_clone_prefix_follows_template_name(self, manager: DeploymentManager, api, task_file: Path) -> None:
        """Test that cloning 'builder' yields a name prefixed 'builder-'."""
        manager.deploy_task(TaskDescriptor(name="builder", file=str(task_file)))

        result = manager.clone_task(TaskDescriptor(name="builder"))

        assert result.resource.metadata.generate_name == "builder-"
        assert result.resource.metadata.name.startswith("builder-")
        assert len(api.names(ResourceKind.TASK)) == 2

    def test_clone_missing_task(self, manager: DeploymentManager) -> None:
        """Test that cloning a Task that does not exist fails."""
        with pytest.raises(ApiException) as exc_info:
            manager.clone_task(TaskDescriptor(name="ghost"))
        assert exc_info.value.status == 404


class TestTaskRun:
    """TaskRun deployments and waiting."""

    def test_taskrun_runs_clone(self, manager: DeploymentManager, api, task_file: Path) -> None:
        """Test that credentials make the run use an owned clone of the Task."""
        manager.deploy_task(TaskDescriptor(file=str(task_file)))

        result = manager.deploy_taskrun(TaskRunDescriptor(
            task="kaniko",
            pipeline_resource="src",
            registry="registry.local",
            registry_secret="docker",
            params=["DOCKERFILE=Dockerfile.prod"],
        ))

        run = result.resource
        assert result.outcome is Outcome.CREATED
        assert run.metadata.name.startswith("kaniko-")

        clone_name = run.spec.task_ref.name
        assert clone_name != "kaniko"
        assert clone_name in api.names(ResourceKind.TASK)

        params = {p.name: p.value for p in run.spec.inputs.params}
        assert params == {"IMAGE": "registry.local/default/kaniko", "DOCKERFILE": "Dockerfile.prod"}
        assert [(r.name, r.resource_ref.name) for r in run.spec.inputs.resources] == [("sources", "src")]

        owners = api.stored(ResourceKind.TASK, clone_name)["metadata"]["ownerReferences"]
        assert owners == [{
            "apiVersion": "tekton.dev/v1alpha1",
            "kind": "TaskRun",
            "name": run.metadata.name,
            "uid": run.metadata.uid,
        }]
        assert "ownerReferences" not in api.stored(ResourceKind.TASK, "kaniko")["metadata"]

    def test_taskrun_without_clone(self, manager: DeploymentManager, api) -> None:
        """Test that a plain run references the Task directly."""
        result = manager.deploy_taskrun(TaskRunDescriptor(name="run-1", task="kaniko", service_account="builder"))

        assert result.name == "run-1"
        body = api.stored(ResourceKind.TASK_RUN, "run-1")
        assert body["spec"]["taskRef"] == {"name": "kaniko"}
        assert body["spec"]["serviceAccount"] == "builder"
        assert api.names(ResourceKind.TASK) == []

    def test_taskrun_wait(self, manager: DeploymentManager, api) -> None:
        """Test that waiting returns the finished run."""
        original_get = api.get_namespaced_custom_object

        def get(**kwargs):
            if kwargs["plural"] == "taskruns":
                _set_status(api, kwargs["name"], "True")
            return original_get(**kwargs)

        api.get_namespaced_custom_object = get

        result = manager.deploy_taskrun(TaskRunDescriptor(name="run-1", task="kaniko", wait=True))
        assert result.resource.condition("Succeeded")["status"] == "True"

    def test_wait_failed(self, manager: DeploymentManager, api) -> None:
        """Test that a failed run raises with its condition message."""
        manager.deploy_taskrun(TaskRunDescriptor(name="run-1", task="kaniko"))
        _set_status(api, "run-1", "False", "step build exited with 1")

        with pytest.raises(TaskRunFailed) as exc_info:
            manager.wait_for_taskrun("run-1")
        assert "step build exited with 1" in str(exc_info.value)

    def test_wait_timeout(self, k8s, api) -> None:
        """Test that a run that never finishes times out."""
        manager = DeploymentManager(k8s, Settings(wait_timeout=0, wait_interval=0), "default")
        manager.deploy_taskrun(TaskRunDescriptor(name="run-1", task="kaniko"))

        with pytest.raises(WaitTimeout):
            manager.wait_for_taskrun("run-1")

    def test_pipeline_resource(self, manager: DeploymentManager, api) -> None:
        """Test that a git PipelineResource carries url and revision."""
        manager.deploy_pipeline_resource(PipelineResourceDescriptor(
            name="src",
            url="https://github.com/demo/app",
            revision="v1",
        ))

        spec = api.stored(ResourceKind.PIPELINE_RESOURCE, "src")["spec"]
        assert spec == {
            "type": "git",
            "params": [
                {"name": "url", "value": "https://github.com/demo/app"},
                {"name": "revision", "value": "v1"},
            ],
        }


class TestBuild:
    """Build deployments."""

    def test_build_from_git(self, manager: DeploymentManager, api) -> None:
        """Test that a git build instantiates its template with arguments."""
        manager.deploy_build(BuildDescriptor(
            name="app",
            source="https://github.com/demo/app.git",
            revision="main",
            buildtemplate="kaniko",
            args=["IMAGE=registry.local/default/app"],
            timeout="10m",
        ))

        spec = api.stored(ResourceKind.BUILD, "app")["spec"]
        assert spec["source"] == {"git": {"url": "https://github.com/demo/app.git", "revision": "main"}}
        assert spec["template"] == {
            "name": "kaniko",
            "kind": "BuildTemplate",
            "arguments": [{"name": "IMAGE", "value": "registry.local/default/app"}],
        }
        assert spec["timeout"] == "10m"

    def test_build_from_local_source(self, manager: DeploymentManager, api, tmp_path: Path) -> None:
        """Test that a local source is received by the upload step."""
        manager.deploy_build(BuildDescriptor(name="app", source=str(tmp_path), buildtemplate="kaniko"))

        source = api.stored(ResourceKind.BUILD, "app")["spec"]["source"]
        assert "git" not in source
        assert source["custom"]["name"] == UPLOAD_STEP_NAME

    def test_build_requires_template(self, manager: DeploymentManager, api) -> None:
        """Test that a build without a template is rejected."""
        with pytest.raises(InvalidDescriptor):
            manager.deploy_build(BuildDescriptor(name="app", source="https://github.com/demo/app.git"))
        assert api.calls == []


class TestService:
    """Service deployments."""

    def test_service_from_image(self, manager: DeploymentManager, api) -> None:
        """Test that an image source is deployed as is."""
        result = manager.deploy_service(ServiceDescriptor(
            name="web",
            source="gcr.io/demo/web:1",
            concurrency=2,
            env=["MODE=prod"],
            env_secrets=["creds"],
            labels=["app=web"],
            annotations={"autoscaling.knative.dev/maxScale": "3"},
        ))

        assert result.outcome is Outcome.CREATED
        body = api.stored(ResourceKind.SERVICE, "web")
        assert body["metadata"]["labels"] == {"app": "web"}
        template = body["spec"]["template"]
        assert template["metadata"]["annotations"] == {"autoscaling.knative.dev/maxScale": "3"}
        assert template["spec"]["containerConcurrency"] == 2
        assert template["spec"]["containers"] == [{
            "image": "gcr.io/demo/web:1",
            "env": [{"name": "MODE", "value": "prod"}],
            "envFrom": [{"secretRef": {"name": "creds"}}],
        }]
        assert api.names(ResourceKind.BUILD) == []

    def test_service_from_git_with_runtime_file(
        self, manager: DeploymentManager, api, buildtemplate_file: Path
    ) -> None:
        """Test that sources are built by a Build owned by the Service."""
        result = manager.deploy_service(ServiceDescriptor(
            name="web",
            source="https://github.com/demo/web.git",
            runtime=str(buildtemplate_file),
            registry_secret="docker",
            build_args=["DOCKERFILE=Dockerfile"],
        ))

        image = "registry.local/default/web"
        assert result.resource.spec.template.spec.containers[0].image == image

        template = api.stored(ResourceKind.BUILD_TEMPLATE, "kaniko")
        assert template["spec"]["volumes"][0]["secret"] == {"secretName": "docker"}

        build = api.stored(ResourceKind.BUILD, "web")
        assert build["spec"]["template"]["name"] == "kaniko"
        assert build["spec"]["template"]["arguments"] == [
            {"name": "IMAGE", "value": image},
            {"name": "DOCKERFILE", "value": "Dockerfile"},
        ]
        assert build["spec"]["timeout"] == "10m"
        assert build["metadata"]["ownerReferences"] == [{
            "apiVersion": "serving.knative.dev/v1alpha1",
            "kind": "Service",
            "name": "web",
            "uid": result.resource.metadata.uid,
        }]

    def test_service_redeploy_keeps_build_owner(self, manager: DeploymentManager, api) -> None:
        """Test that redeploying updates both objects and relinks the Build."""
        descriptor = ServiceDescriptor(name="web", source="https://github.com/demo/web.git", runtime="kaniko")
        first = manager.deploy_service(descriptor)
        second = manager.deploy_service(descriptor)

        assert second.outcome is Outcome.UPDATED
        assert second.resource.metadata.uid == first.resource.metadata.uid
        assert api.names(ResourceKind.BUILD_TEMPLATE) == []
        owners = api.stored(ResourceKind.BUILD, "web")["metadata"]["ownerReferences"]
        assert [o["uid"] for o in owners] == [first.resource.metadata.uid]

    def test_service_source_requires_runtime(self, manager: DeploymentManager, api) -> None:
        """Test that building sources without a runtime is rejected."""
        with pytest.raises(InvalidDescriptor):
            manager.deploy_service(ServiceDescriptor(name="web", source="https://github.com/demo/web.git"))
        assert api.calls == []

    def test_service_tag_and_pull_policy(self, manager: DeploymentManager, api) -> None:
        """Test that the built image carries its tag and the container its pull policy."""
        result = manager.deploy_service(ServiceDescriptor(
            name="web",
            source="https://github.com/demo/web.git",
            runtime="kaniko",
            image_tag="v2",
            pull_policy="IfNotPresent",
        ))

        container = api.stored(ResourceKind.SERVICE, "web")["spec"]["template"]["spec"]["containers"][0]
        assert container["image"] == "registry.local/default/web:v2"
        assert container["imagePullPolicy"] == "IfNotPresent"
        build = api.stored(ResourceKind.BUILD, "web")
        assert build["spec"]["template"]["arguments"][0] == {"name": "IMAGE", "value": "registry.local/default/web:v2"}
        assert result.url is None

    def test_registry_secret_ignored_for_named_runtime(self, manager: DeploymentManager, api, caplog) -> None:
        """Test that a secret that cannot reach an existing template is reported."""
        with caplog.at_level(logging.WARNING, logger="tmctl.core.deployment_manager"):
            manager.deploy_service(ServiceDescriptor(
                name="web",
                source="https://github.com/demo/web.git",
                runtime="kaniko",
                registry_secret="docker",
            ))

        assert "registry secret 'docker' is not applied" in caplog.text
        assert api.names(ResourceKind.BUILD_TEMPLATE) == []

    def test_service_wait_returns_url(self, manager: DeploymentManager, api) -> None:
        """Test that waiting polls the Route until it has an address."""
        original_get = api.get_namespaced_custom_object
        polls = []

        def get(**kwargs):
            if kwargs["plural"] == "routes":
                polls.append(kwargs["name"])
                if len(polls) == 2:
                    _set_route(api, kwargs["name"], {})
                elif len(polls) == 3:
                    _set_route(api, kwargs["name"], {"url": "http://web.default.example.com"})
            return original_get(**kwargs)

        api.get_namespaced_custom_object = get

        result = manager.deploy_service(ServiceDescriptor(name="web", source="gcr.io/demo/web:1", wait=True))

        assert result.outcome is Outcome.CREATED
        assert result.url == "http://web.default.example.com"
        assert polls == ["web", "web", "web"]

    def test_service_wait_domain(self, manager: DeploymentManager, api) -> None:
        """Test that a Route reporting only a domain is served over http."""
        _set_route(api, "web", {"domain": "web.default.example.com"})

        result = manager.deploy_service(ServiceDescriptor(name="web", source="gcr.io/demo/web:1", wait=True))
        assert result.url == "http://web.default.example.com"

    def test_service_wait_timeout(self, k8s, api) -> None:
        """Test that a Route that never gets an address times out."""
        manager = DeploymentManager(k8s, Settings(wait_timeout=0, wait_interval=0), "default")

        with pytest.raises(WaitTimeout):
            manager.deploy_service(ServiceDescriptor(name="web", source="gcr.io/demo/web:1", wait=True))
        assert api.names(ResourceKind.SERVICE) == ["web"]

    def test_channel(self, manager: DeploymentManager, api) -> None:
        """Test that a channel is created by name."""
        manager.deploy_channel(ChannelDescriptor(name="events", namespace="ci"))
        assert api.names(ResourceKind.CHANNEL, "ci") == ["events"]


class TestDryRun:
    """Dry runs never touch the cluster."""

    def test_service_dry_run(self, dry_run_manager: DeploymentManager, buildtemplate_file: Path) -> None:
        """Test that a source service renders without a cluster."""
        result = dry_run_manager.deploy_service(ServiceDescriptor(
            name="web",
            source="https://github.com/demo/web.git",
            runtime=str(buildtemplate_file),
        ))

        assert result.outcome is Outcome.DRY_RUN
        assert result.resource.spec.template.spec.containers[0].image == "registry.local/default/web"
        assert result.resource.metadata.namespace == "default"

    def test_task_dry_run(self, dry_run_manager: DeploymentManager, task_file: Path) -> None:
        """Test that a Task renders with its mutations applied."""
        result = dry_run_manager.deploy_task(TaskDescriptor(name="foo", file=str(task_file), registry_secret="docker"))

        assert result.outcome is Outcome.DRY_RUN
        assert result.resource.metadata.name == "foo"
        assert result.resource.spec.volumes[0].name == "docker"

    def test_taskrun_dry_run_skips_clone(self, dry_run_manager: DeploymentManager) -> None:
        """Test that a run needing a clone renders against the original Task."""
        result = dry_run_manager.deploy_taskrun(TaskRunDescriptor(task="kaniko", registry_secret="docker"))

        assert result.outcome is Outcome.DRY_RUN
        assert result.resource.spec.task_ref.name == "kaniko"
        assert result.resource.metadata.generate_name == "kaniko-"

    def test_service_wait_dry_run(self, dry_run_manager: DeploymentManager) -> None:
        """Test that a dry run does not wait for an address."""
        result = dry_run_manager.deploy_service(ServiceDescriptor(name="web", source="gcr.io/demo/web:1", wait=True))

        assert result.outcome is Outcome.DRY_RUN
        assert result.url is None

    def test_resources_need_cluster(self, dry_run_manager: DeploymentManager) -> None:
        """Test that cluster access without a client is an error."""
        with pytest.raises(TmctlError):
            dry_run_manager.resources(ResourceKind.TASK)


def test_apply_decoded_object(manager: DeploymentManager, api, task_file: Path) -> None:
    """Test that a decoded object is submitted into the default namespace."""
    task = load_manifest(str(task_file), ResourceKind.TASK)
    result = manager.apply(task)
    assert result.resource.metadata.namespace == "default"
    assert api.names(ResourceKind.TASK) == ["kaniko"]


def test_parse_pairs() -> None:
    """Test that KEY=VALUE pairs split on the first equals sign."""
    assert parse_pairs(["A=1", "B=x=y", "C="]) == {"A": "1", "B": "x=y", "C": ""}
    with pytest.raises(InvalidDescriptor):
        parse_pairs(["novalue"])
    with pytest.raises(InvalidDescriptor):
        parse_pairs(["=1"])
