"""Batch deployment of definition files for tmctl."""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tmctl.core.deployment_manager import DeploymentManager
from tmctl.core.errors import ManifestParseError, SchemaMismatch, TmctlError
from tmctl.core.manifest import decode, is_git_url, is_local, is_url, load_documents
from tmctl.core.models import DeployReport, ReconcileResult, ServiceDescriptor
from tmctl.core.objects import kind_for

logger = logging.getLogger(__name__)

DEFAULT_DEFINITION = "serverless.yaml"

# A named unit of work and the kind it deploys
Unit = Tuple[str, str, Callable[[], ReconcileResult]]


# Definition file models

class FunctionDefinition(BaseModel):
    """One function of a definition file, deployed as a Knative Service."""

    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(..., description="Image, git URL or local path")
    runtime: Optional[str] = Field(default=None, description="BuildTemplate name, path or URL")
    revision: str = Field(default="master", description="Git revision")
    buildargs: List[str] = Field(default_factory=list, description="Build arguments as KEY=VALUE")
    environment: Dict[str, str] = Field(default_factory=dict, description="Environment variables")
    env_secrets: List[str] = Field(default_factory=list, alias="env-secrets", description="Environment secrets")
    labels: List[str] = Field(default_factory=list, description="Labels as KEY=VALUE")
    annotations: Dict[str, str] = Field(default_factory=dict, description="Revision annotations")
    concurrency: int = Field(default=0, description="Container concurrency")


class ProviderDefinition(BaseModel):
    """Defaults applied to every function."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(default=None, description="Provider name")
    namespace: Optional[str] = Field(default=None, description="Target namespace")
    registry: Optional[str] = Field(default=None, description="Image registry")
    registry_secret: Optional[str] = Field(default=None, alias="registry-secret", description="Registry secret")
    runtime: Optional[str] = Field(default=None, description="Default runtime")


class Definition(BaseModel):
    """A definition file describing several functions."""

    service: Optional[str] = Field(default=None, description="Definition name")
    description: Optional[str] = Field(default=None, description="Free-form description")
    provider: ProviderDefinition = Field(default_factory=ProviderDefinition)
    functions: Dict[str, FunctionDefinition] = Field(default_factory=dict)


def _resolve_source(source: str, base_dir: Optional[Path]) -> str:
    """Make a relative local source relative to the definition file."""
    if base_dir is None or is_url(source) or is_git_url(source):
        return source
    candidate = base_dir / source
    if not Path(source).is_absolute() and candidate.exists():
        return str(candidate)
    return source


def function_descriptors(
    definition: Definition,
    base_dir: Optional[Path] = None,
    only: Sequence[str] = (),
) -> List[ServiceDescriptor]:
    """Turn the functions of a definition into service descriptors.

    Args:
        definition: Parsed definition
        base_dir: Directory relative local sources are resolved against
        only: Function names to keep (all when empty)

    Raises:
        TmctlError: If ``only`` names a function the definition lacks
    """
    unknown = [name for name in only if name not in definition.functions]
    if unknown:
        raise TmctlError(f"functions not found in definition: {', '.join(unknown)}")

    provider = definition.provider
    descriptors = []
    for name, function in definition.functions.items():
        if only and name not in only:
            continue
        descriptors.append(ServiceDescriptor(
            name=name,
            namespace=provider.namespace,
            source=_resolve_source(function.source, base_dir),
            revision=function.revision,
            runtime=function.runtime or provider.runtime,
            registry=provider.registry,
            registry_secret=provider.registry_secret,
            build_args=function.buildargs,
            concurrency=function.concurrency,
            env=[f"{k}={v}" for k, v in function.environment.items()],
            env_secrets=function.env_secrets,
            labels=function.labels,
            annotations=function.annotations,
        ))
    return descriptors


def run_units(units: Sequence[Unit], concurrency: int = 3) -> List[DeployReport]:
    """Run deployment units on a bounded worker pool.

    Every unit reports on its own: a failing unit never stops the others.
    Reports come back in the order the units were given.
    """
    reports: Dict[int, DeployReport] = {}
    with ThreadPoolExecutor(max_workers=max(1, concurrency)) as executor:
        futures = {
            executor.submit(deploy): (index, name, kind)
            for index, (name, kind, deploy) in enumerate(units)
        }
        for future in as_completed(futures):
            index, name, kind = futures[future]
            try:
                result = future.result()
            except Exception as e:
                logger.error(f"{kind} {name!r} failed: {e}")
                reports[index] = DeployReport(name=name, kind=kind, error=str(e))
            else:
                reports[index] = DeployReport(name=name, kind=kind, outcome=result.outcome)
    return [reports[i] for i in range(len(units))]


def _manifest_units(manager: DeploymentManager, documents: List[dict], location: str) -> List[Unit]:
    units: List[Unit] = []
    for index, doc in enumerate(documents):
        kind = kind_for(str(doc.get("kind")), str(doc.get("apiVersion")))
        if kind is None:
            raise SchemaMismatch("kind", "a supported kind", f"{doc.get('apiVersion')}/{doc.get('kind')}")
        obj = decode(doc, kind, f"{location}[{index}]")
        name = obj.metadata.name or obj.metadata.generate_name or f"#{index}"
        units.append((name, kind.kind, lambda obj=obj: manager.apply(obj)))
    return units


def deploy_definition(
    manager: DeploymentManager,
    location: str = DEFAULT_DEFINITION,
    functions: Sequence[str] = (),
    concurrency: int = 3,
) -> List[DeployReport]:
    """Deploy everything described by a definition or manifest file.

    A document with a ``functions`` section is a definition: each function
    becomes a Knative Service. Otherwise every YAML document is taken as a
    resource manifest and created or updated as is.

    Args:
        manager: Deployment manager for this invocation
        location: Local path or URL of the file
        functions: Only deploy these functions of a definition
        concurrency: Number of deployments running at the same time

    Returns:
        One report per deployed unit

    Raises:
        ManifestNotFound: If the file cannot be found
        ManifestParseError: If the file cannot be parsed
    """
    documents = load_documents(location, manager.http_client)

    if len(documents) == 1 and isinstance(documents[0], dict) and "functions" in documents[0]:
        try:
            definition = Definition.model_validate(documents[0])
        except ValidationError as e:
            raise ManifestParseError(f"{location}: {e}")
        base_dir = Path(location).parent if is_local(location) else None
        units: List[Unit] = [
            (d.name, "Service", lambda d=d: manager.deploy_service(d))
            for d in function_descriptors(definition, base_dir, functions)
        ]
    else:
        if functions:
            raise TmctlError(f"{location} is not a definition file, cannot select functions")
        units = _manifest_units(manager, documents, location)

    logger.debug(f"deploying {len(units)} units from {location} with concurrency {concurrency}")
    return run_units(units, concurrency)
