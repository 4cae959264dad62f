"""Owner references between deployed objects."""

import logging

from tmctl.core.k8s_client import ResourceClient
from tmctl.core.objects import OwnerReference, RemoteObject

logger = logging.getLogger(__name__)


def owner_reference(owner: RemoteObject) -> OwnerReference:
    """Build an owner reference pointing at a reconciled object.

    Raises:
        ValueError: If the object has no name or uid yet
    """
    if not owner.metadata.name or not owner.metadata.uid:
        raise ValueError(f"{owner.kind} has no name or uid, was it submitted?")
    return OwnerReference(
        api_version=owner.api_version,
        kind=owner.kind,
        name=owner.metadata.name,
        uid=owner.metadata.uid,
    )


def set_owner(resources: ResourceClient, name: str, owner: OwnerReference) -> RemoteObject:
    """Make ``owner`` the only owner of an existing object.

    Any owner references already on the object are discarded.

    Args:
        resources: Client bound to the dependent object's kind and namespace
        name: Name of the dependent object
        owner: Reference to the owning object

    Returns:
        The updated object

    Raises:
        ApiException: If fetching or updating the object fails
    """
    obj = resources.get(name)
    logger.debug(
        f"setting {obj.kind} \"{resources.namespace}/{name}\" owner to {owner.kind}/{owner.name}"
    )
    obj.metadata.owner_references = [owner]
    return resources.update(obj)
