"""Idempotent create-or-update of cluster objects."""

import logging
from enum import Enum

from kubernetes.client.rest import ApiException

from tmctl.core.errors import InvalidDescriptor, SchemaMismatch
from tmctl.core.k8s_client import ResourceClient, is_already_exists
from tmctl.core.models import Outcome, ReconcileResult
from tmctl.core.objects import RemoteObject

logger = logging.getLogger(__name__)


class ReconcileState(str, Enum):
    """Steps of a create-or-update."""

    CREATING = "creating"
    CONFLICT_DETECTED = "conflict-detected"
    FETCHING = "fetching"
    UPDATING = "updating"
    DONE = "done"


class Reconciler:
    """Creates objects, falling back to an update when they already exist.

    Updates need the current resource version while creates do not, so a
    create is always tried first. An "already exists" answer moves on to
    fetching the live object, copying its resource version and replacing
    it. Any other API error is raised unchanged; there are no retries.
    """

    def __init__(self, resources: ResourceClient) -> None:
        """Initialize the reconciler.

        Args:
            resources: Client bound to the kind and namespace to reconcile
        """
        self._resources = resources

    def validate(self, obj: RemoteObject) -> None:
        """Check type meta and naming before anything is sent.

        Raises:
            SchemaMismatch: If kind or apiVersion differ from the bound kind
            InvalidDescriptor: If the object has neither a name nor a prefix
        """
        expected = self._resources.kind
        if obj.kind != expected.kind:
            raise SchemaMismatch("kind", expected.kind, obj.kind)
        if obj.api_version != expected.api_version:
            raise SchemaMismatch("apiVersion", expected.api_version, obj.api_version)
        if not obj.metadata.name and not obj.metadata.generate_name:
            raise InvalidDescriptor(f"{expected.kind} name is required")

    def create_or_update(self, obj: RemoteObject) -> ReconcileResult:
        """Create the object or update the existing one with the same name.

        Objects requesting a generated name are always created, never updated.

        Args:
            obj: Object to submit; its namespace is set to the bound one

        Returns:
            ReconcileResult with the object returned by the API server

        Raises:
            SchemaMismatch: If kind or apiVersion are wrong (nothing is sent)
            ApiException: For any API failure other than "already exists"
        """
        self.validate(obj)
        obj.metadata.namespace = self._resources.namespace

        if obj.metadata.generate_name and not obj.metadata.name:
            created = self._resources.create(obj)
            logger.debug(f"{obj.kind} {created.metadata.name!r} created from prefix {obj.metadata.generate_name!r}")
            return ReconcileResult(outcome=Outcome.CREATED, resource=created)

        state = ReconcileState.CREATING
        outcome = Outcome.CREATED
        result = None
        while state is not ReconcileState.DONE:
            logger.debug(f"{obj.kind} {obj.metadata.name!r}: {state.value}")
            if state is ReconcileState.CREATING:
                try:
                    result = self._resources.create(obj)
                    state = ReconcileState.DONE
                except ApiException as e:
                    if not is_already_exists(e):
                        raise
                    state = ReconcileState.CONFLICT_DETECTED
            elif state is ReconcileState.CONFLICT_DETECTED:
                logger.debug(f"{obj.kind} {obj.metadata.name!r} already exists, updating")
                outcome = Outcome.UPDATED
                state = ReconcileState.FETCHING
            elif state is ReconcileState.FETCHING:
                current = self._resources.get(obj.metadata.name)
                obj.metadata.resource_version = current.metadata.resource_version
                state = ReconcileState.UPDATING
            elif state is ReconcileState.UPDATING:
                result = self._resources.update(obj)
                state = ReconcileState.DONE

        return ReconcileResult(outcome=outcome, resource=result)
