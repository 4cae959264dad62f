"""CLI interface for tmctl."""

import logging
from typing import Callable, Optional

import click
import yaml
from kubernetes.client.rest import ApiException
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from tmctl import __version__
from tmctl.config import Settings
from tmctl.core.deployment_manager import DeploymentManager, parse_pairs
from tmctl.core.errors import TmctlError
from tmctl.core.k8s_client import DEFAULT_NAMESPACE, K8sClientManager
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
from tmctl.deploy import DEFAULT_DEFINITION, deploy_definition

console = Console()
err_console = Console(stderr=True)


def configure_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _manager(settings: Settings) -> DeploymentManager:
    """Build the deployment manager for this invocation.

    Dry runs never talk to the cluster, so they do not need a kubeconfig.
    """
    k8s = None
    if not settings.dry_run:
        k8s = K8sClientManager(
            kubeconfig_path=settings.kubeconfig_path,
            in_cluster=settings.in_cluster,
        )
    namespace = settings.namespace or (k8s.current_namespace() if k8s else DEFAULT_NAMESPACE)
    return DeploymentManager(k8s, settings, namespace)


def _error_message(e: Exception) -> str:
    if isinstance(e, ApiException):
        return f"{e.status} {e.reason}"
    return str(e)


def _run(action: str, deploy: Callable[[DeploymentManager], ReconcileResult], settings: Settings) -> None:
    """Run one deployment and print its result, aborting on failure."""
    try:
        result = deploy(_manager(settings))
    except (TmctlError, ApiException, RuntimeError) as e:
        console.print(f"[bold red]✗[/bold red] {action} failed: {_error_message(e)}")
        raise click.Abort()
    _print_result(result)


def _print_result(result: ReconcileResult) -> None:
    if result.outcome is Outcome.DRY_RUN:
        click.echo(yaml.safe_dump(result.resource.to_body(), sort_keys=False), nl=False)
        return
    resource = result.resource
    console.print(
        f"[bold green]✓[/bold green] {resource.kind} "
        f"[cyan]{resource.metadata.namespace}/{resource.metadata.name}[/cyan] {result.outcome.value}"
    )
    if result.url:
        console.print(f"  [bold]URL:[/bold] {result.url}")


@click.group()
@click.version_option(version=__version__)
@click.option("--namespace", "-n", default=None, help="Namespace to use (kubeconfig context namespace if not set)")
@click.option("--registry", default=None, help="Docker registry host address")
@click.option(
    "--kubeconfig",
    "-k",
    default=None,
    help="Path to kubeconfig file (uses default if not specified)",
)
@click.option("--dry-run", is_flag=True, help="Print objects instead of submitting them")
@click.option("--wait", is_flag=True, help="Wait for the operation to complete")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(
    ctx: click.Context,
    namespace: Optional[str],
    registry: Optional[str],
    kubeconfig: Optional[str],
    dry_run: bool,
    wait: bool,
    debug: bool,
) -> None:
    """tmctl - deploy Knative and Tekton resources."""
    overrides = {
        "namespace": namespace,
        "registry": registry,
        "kubeconfig_path": kubeconfig,
        "dry_run": True if dry_run else None,
        "wait": True if wait else None,
    }
    if debug:
        overrides["log_level"] = "DEBUG"
    settings = Settings(**{k: v for k, v in overrides.items() if v is not None})
    configure_logging(settings.log_level)
    ctx.obj = settings


@main.group(invoke_without_command=True)
@click.option(
    "--from",
    "-f",
    "location",
    default=DEFAULT_DEFINITION,
    help="Definition or manifest file to deploy",
    show_default=True,
)
@click.option("--concurrency", "-c", type=int, default=None, help="Number of concurrent deployments")
@click.option("--function", "functions", multiple=True, help="Only deploy this function (repeatable)")
@click.pass_context
def deploy(ctx: click.Context, location: str, concurrency: Optional[int], functions: tuple) -> None:
    """Deploy Knative and Tekton resources.

    Without a subcommand, deploys every function of a definition file or
    every object of a multi-document manifest.
    """
    if ctx.invoked_subcommand is not None:
        return
    settings: Settings = ctx.obj
    try:
        reports = deploy_definition(
            _manager(settings),
            location,
            functions=list(functions),
            concurrency=concurrency or settings.concurrency,
        )
    except (TmctlError, ApiException, RuntimeError) as e:
        console.print(f"[bold red]✗[/bold red] Deployment failed: {_error_message(e)}")
        raise click.Abort()

    table = Table(title=f"Deployment of {location}")
    table.add_column("Name", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("Result")
    for report in reports:
        result = f"[green]{report.outcome.value}[/green]" if report.ok else f"[red]{report.error}[/red]"
        table.add_row(report.name, report.kind, result)
    console.print(table)

    failed = [r for r in reports if not r.ok]
    if failed:
        console.print(f"[bold red]✗[/bold red] {len(failed)} of {len(reports)} deployments failed")
        raise click.Abort()


@deploy.command("service")
@click.argument("name")
@click.option("--from", "-f", "source", required=True, help="Image, git repository or local folder with sources")
@click.option("--revision", default="master", help="Git revision (branch, tag, commit SHA or ref)", show_default=True)
@click.option("--runtime", default=None, help="Existing buildtemplate name, local path or URL to buildtemplate yaml")
@click.option(
    "--registry-secret",
    default=None,
    help="Secret with registry auth json, applied when the runtime is a path or URL",
)
@click.option("--build-timeout", default=None, help="Service image build timeout")
@click.option("--tag", "image_tag", default=None, help="Tag of the image built from sources")
@click.option("--image-pull-policy", "pull_policy", default=None, help="Image pull policy, e.g. Always or IfNotPresent")
@click.option("--concurrency", type=int, default=0, help="Concurrent requests per container, 0 for unlimited")
@click.option("--build-argument", "build_args", multiple=True, help="Buildtemplate argument KEY=VALUE")
@click.option("--env-secret", "env_secrets", multiple=True, help="Secret populating environment variables")
@click.option("--label", "-l", "labels", multiple=True, help="Service label KEY=VALUE")
@click.option("--annotation", "-a", "annotations", multiple=True, help="Revision template annotation KEY=VALUE")
@click.option("--env", "-e", "env", multiple=True, help="Environment variable KEY=VALUE")
@click.pass_obj
def deploy_service(
    settings: Settings,
    name: str,
    source: str,
    revision: str,
    runtime: Optional[str],
    registry_secret: Optional[str],
    build_timeout: Optional[str],
    image_tag: Optional[str],
    pull_policy: Optional[str],
    concurrency: int,
    build_args: tuple,
    env_secrets: tuple,
    labels: tuple,
    annotations: tuple,
    env: tuple,
) -> None:
    """Deploy a Knative Service."""
    def run(manager: DeploymentManager) -> ReconcileResult:
        return manager.deploy_service(ServiceDescriptor(
            name=name,
            source=source,
            revision=revision,
            runtime=runtime,
            registry=settings.registry,
            registry_secret=registry_secret or settings.registry_secret,
            build_timeout=build_timeout or settings.build_timeout,
            image_tag=image_tag,
            pull_policy=pull_policy,
            build_args=list(build_args),
            concurrency=concurrency,
            env=list(env),
            env_secrets=list(env_secrets),
            labels=list(labels),
            annotations=parse_pairs(list(annotations), "annotation"),
            wait=settings.wait,
        ))

    _run("Service deployment", run, settings)


@deploy.command("build")
@click.argument("name")
@click.option("--source", required=True, help="Git URL or local path to get sources from")
@click.option("--revision", default="master", help="Git source revision", show_default=True)
@click.option("--buildtemplate", required=True, help="Buildtemplate name to use with build")
@click.option("--args", "args", multiple=True, help="Build argument KEY=VALUE")
@click.option("--timeout", default=None, help="Build timeout, e.g. 10m")
@click.pass_obj
def deploy_build(
    settings: Settings,
    name: str,
    source: str,
    revision: str,
    buildtemplate: str,
    args: tuple,
    timeout: Optional[str],
) -> None:
    """Deploy a Knative Build."""
    descriptor = BuildDescriptor(
        name=name,
        source=source,
        revision=revision,
        buildtemplate=buildtemplate,
        args=list(args),
        timeout=timeout,
    )
    _run("Build deployment", lambda manager: manager.deploy_build(descriptor), settings)


@deploy.command("buildtemplate")
@click.argument("name", required=False)
@click.option("--from", "-f", "file", required=True, help="Local path or URL to buildtemplate yaml file")
@click.option("--credentials", default=None, help="Secret with registry auth json")
@click.pass_obj
def deploy_buildtemplate(settings: Settings, name: Optional[str], file: str, credentials: Optional[str]) -> None:
    """Deploy a Knative BuildTemplate."""
    descriptor = BuildTemplateDescriptor(
        name=name,
        file=file,
        registry_secret=credentials or settings.registry_secret,
    )
    _run("BuildTemplate deployment", lambda manager: manager.deploy_buildtemplate(descriptor), settings)


@deploy.command("channel")
@click.argument("name")
@click.pass_obj
def deploy_channel(settings: Settings, name: str) -> None:
    """Deploy a Knative in-memory channel."""
    descriptor = ChannelDescriptor(name=name)
    _run("Channel deployment", lambda manager: manager.deploy_channel(descriptor), settings)


@deploy.command("task")
@click.argument("name", required=False)
@click.option("--file", "-f", "file", required=True, help="Task yaml manifest path or URL")
@click.option("--registry-secret", default=None, help="Secret with registry auth json")
@click.option("--from-local-source", is_flag=True, help="Receive sources through an upload step")
@click.pass_obj
def deploy_task(
    settings: Settings,
    name: Optional[str],
    file: str,
    registry_secret: Optional[str],
    from_local_source: bool,
) -> None:
    """Deploy a Tekton Task."""
    descriptor = TaskDescriptor(
        name=name,
        file=file,
        registry_secret=registry_secret or settings.registry_secret,
        from_local_source=from_local_source,
    )
    _run("Task deployment", lambda manager: manager.deploy_task(descriptor), settings)


@deploy.command("taskrun")
@click.argument("name", required=False)
@click.option("--task", "-t", required=True, help="Name of task to run")
@click.option("--resources", "-r", "pipeline_resource", default=None, help="PipelineResource to pass into the task")
@click.option("--secret", "-s", "registry_secret", default=None, help="Secret with registry credentials")
@click.option("--param", "params", multiple=True, help="Task param KEY=VALUE")
@click.option("--timeout", default=None, help="Run timeout, e.g. 10m")
@click.pass_obj
def deploy_taskrun(
    settings: Settings,
    name: Optional[str],
    task: str,
    pipeline_resource: Optional[str],
    registry_secret: Optional[str],
    params: tuple,
    timeout: Optional[str],
) -> None:
    """Deploy a Tekton TaskRun."""
    descriptor = TaskRunDescriptor(
        name=name,
        task=task,
        pipeline_resource=pipeline_resource,
        registry=settings.registry,
        registry_secret=registry_secret or settings.registry_secret,
        params=list(params),
        timeout=timeout,
        wait=settings.wait,
    )
    _run("TaskRun deployment", lambda manager: manager.deploy_taskrun(descriptor), settings)


@deploy.command("pipelineresource")
@click.argument("name")
@click.option("--url", required=True, help="Git URL to get sources from")
@click.option("--rev", "revision", default=None, help="Git revision")
@click.pass_obj
def deploy_pipelineresource(settings: Settings, name: str, url: str, revision: Optional[str]) -> None:
    """Deploy a Tekton PipelineResource."""
    descriptor = PipelineResourceDescriptor(name=name, url=url, revision=revision)
    _run("PipelineResource deployment", lambda manager: manager.deploy_pipeline_resource(descriptor), settings)


@main.command("clone-task")
@click.argument("name")
@click.option("--registry-secret", default=None, help="Secret with registry auth json")
@click.option("--from-local-source", is_flag=True, help="Receive sources through an upload step")
@click.pass_obj
def clone_task(settings: Settings, name: str, registry_secret: Optional[str], from_local_source: bool) -> None:
    """Install a copy of an existing Task under a generated name."""
    descriptor = TaskDescriptor(
        name=name,
        registry_secret=registry_secret or settings.registry_secret,
        from_local_source=from_local_source,
    )
    _run("Task clone", lambda manager: manager.clone_task(descriptor), settings)


if __name__ == "__main__":
    main()
