"""Deploy-time transformations applied to objects before submission.

Nothing in this module talks to the cluster; every function mutates the
object it is given in place and returns it for chaining.
"""

import logging
from typing import Optional, Union

from tmctl.core.objects import (
    BuildTemplate,
    EnvVar,
    RemoteObject,
    SecretVolumeSource,
    Step,
    Task,
    Volume,
    VolumeMount,
)

logger = logging.getLogger(__name__)

UPLOAD_DONE_MARKER = ".uploadIsDone"
UPLOAD_STAGING_DIR = "/home"
WORKSPACE_DIR = "/workspace/workspace"
UPLOAD_STEP_NAME = "sources-receiver"
UPLOAD_STEP_IMAGE = "busybox"

# Objects whose spec carries a list of execution steps and volumes
StepsObject = Union[Task, BuildTemplate]


def default_param_types(task: Task) -> Task:
    """Set ``type: string`` on Task input params declaring no type.

    An unset type is otherwise rejected when a string value is passed in.
    """
    inputs = task.spec.inputs
    if inputs is None or not inputs.params:
        return task
    for param in inputs.params:
        if not param.type:
            param.type = "string"
    return task


def set_identity(
    obj: RemoteObject,
    namespace: str,
    name: Optional[str] = None,
    generate_name: Optional[str] = None,
) -> RemoteObject:
    """Set namespace and either a fixed name or a generated-name prefix.

    A generated-name prefix wins over a fixed name and clears it, so each
    submission produces a new object.
    """
    obj.metadata.namespace = namespace
    if generate_name:
        obj.metadata.name = None
        obj.metadata.generate_name = generate_name
    elif name:
        obj.metadata.name = name
    return obj


def inject_registry_secret(obj: StepsObject, secret: Optional[str]) -> StepsObject:
    """Give every step access to registry credentials stored in a secret.

    Adds ``DOCKER_CONFIG=/<secret>`` and a read-only mount of the secret at
    ``/<secret>`` to each step, and declares the secret volume once on the
    object. Existing volume declarations are replaced.
    """
    if not secret:
        return obj
    logger.debug(
        f"setting registry secret {secret!r} for {obj.kind} "
        f"\"{obj.metadata.namespace}/{obj.metadata.name or obj.metadata.generate_name}\""
    )
    mount_path = "/" + secret
    for step in obj.spec.steps:
        step.env = (step.env or []) + [EnvVar(name="DOCKER_CONFIG", value=mount_path)]
        step.volume_mounts = (step.volume_mounts or []) + [
            VolumeMount(name=secret, mount_path=mount_path, read_only=True)
        ]
    obj.spec.volumes = [Volume(name=secret, secret=SecretVolumeSource(secret_name=secret))]
    return obj


def source_upload_step() -> Step:
    """Build the step that waits for uploaded sources and moves them in place.

    The step polls for the upload marker every second, then moves the
    uploaded files from the staging directory into the workspace. When the
    nested move pattern fails the flat one is tried instead.
    """
    script = f"""
while [ ! -f {UPLOAD_DONE_MARKER} ]; do
    sleep 1;
done;
sync;
mkdir -p {WORKSPACE_DIR};
mv {UPLOAD_STAGING_DIR}/*/* {WORKSPACE_DIR}/;
if [[ $? != 0 ]]; then
    mv {UPLOAD_STAGING_DIR}/* {WORKSPACE_DIR}/;
fi
ls -lah {WORKSPACE_DIR};
sync;"""
    return Step(
        name=UPLOAD_STEP_NAME,
        image=UPLOAD_STEP_IMAGE,
        command=["sh"],
        args=["-c", script],
    )


def add_source_upload_step(obj: StepsObject) -> StepsObject:
    """Prepend the source upload step and drop declared input resources.

    Input resources are superseded by the uploaded sources, so a Task's
    ``inputs.resources`` list is emptied.
    """
    logger.debug(
        f"adding source uploading step to {obj.kind} "
        f"\"{obj.metadata.namespace}/{obj.metadata.name or obj.metadata.generate_name}\""
    )
    obj.spec.steps = [source_upload_step()] + list(obj.spec.steps)
    if isinstance(obj, Task) and obj.spec.inputs is not None:
        obj.spec.inputs.resources = []
    return obj
