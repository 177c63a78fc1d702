"""
Removal of derived resources.

Runs when a Service stops being exposed or is being deleted. The
HTTPRoute lives outside the Service's namespace, so nothing but this
procedure ever deletes it; the ReferenceGrant is deleted here too
rather than waiting for the garbage collector.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from httproute_controller.builders import grant_name, route_labels, route_name
from httproute_controller.constants import (
    EVENT_TYPE_NORMAL,
    HTTP_ROUTE,
    REASON_HTTPROUTE_DELETED,
    REASON_REFERENCEGRANT_DELETED,
    REFERENCE_GRANT,
    ResourceKind,
)
from httproute_controller.deadline import Deadline
from httproute_controller.events import EventRecorder, report_event
from httproute_controller.intent import GatewayDefaults, resolve_gateway_namespace
from httproute_controller.store import ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class CleanupOutcome:
    route_deleted: bool = False
    grant_deleted: bool = False

    @property
    def anything_deleted(self) -> bool:
        return self.route_deleted or self.grant_deleted


def _delete_if_present(
    store: ObjectStore,
    kind: ResourceKind,
    namespace: str,
    name: str,
    deadline: Deadline,
) -> bool:
    if store.get(kind, namespace, name, timeout=deadline.remaining()) is None:
        return False
    # Vanishing between get and delete still counts as clean
    deleted = store.delete(kind, namespace, name, timeout=deadline.remaining())
    if deleted:
        logger.info(f"Deleted {kind.kind} {namespace}/{name}")
    return deleted


def delete_stale_routes(
    store: ObjectStore,
    recorder: EventRecorder,
    service: Dict[str, Any],
    keep_namespace: str,
    deadline: Optional[Deadline] = None,
) -> bool:
    """
    Delete routes of this Service left in a namespace other than keep_namespace.

    Such routes remain after the gateway-namespace annotation changed. They
    are found by the Service labels stamped on every route, and must also
    carry the derived route name.

    Returns:
        True if any route was deleted
    """
    deadline = deadline or Deadline.unbounded()
    metadata = service["metadata"]
    namespace, name = metadata["namespace"], metadata["name"]
    route = route_name(namespace, name)

    deleted_any = False
    for stale in store.find(HTTP_ROUTE, route_labels(namespace, name), timeout=deadline.remaining()):
        stale_namespace = stale["metadata"].get("namespace")
        if stale_namespace == keep_namespace or stale["metadata"].get("name") != route:
            continue
        if store.delete(HTTP_ROUTE, stale_namespace, route, timeout=deadline.remaining()):
            logger.info(f"Deleted stale HTTPRoute {stale_namespace}/{route}")
            report_event(
                recorder, service, EVENT_TYPE_NORMAL, REASON_HTTPROUTE_DELETED,
                f"HTTPRoute {stale_namespace}/{route} deleted",
            )
            deleted_any = True
    return deleted_any


def cleanup_derived_resources(
    store: ObjectStore,
    recorder: EventRecorder,
    service: Dict[str, Any],
    defaults: GatewayDefaults,
    deadline: Optional[Deadline] = None,
) -> CleanupOutcome:
    """
    Delete the HTTPRoute and ReferenceGrant derived from a Service.

    The HTTPRoute is looked up in the currently annotated gateway
    namespace, falling back to the default exactly as creation did.
    Routes left behind in earlier gateway namespaces go as well.
    Missing objects count as already clean.

    Raises:
        RetryableError: an existing object could not be deleted
    """
    deadline = deadline or Deadline.unbounded()
    metadata = service["metadata"]
    namespace, name = metadata["namespace"], metadata["name"]
    outcome = CleanupOutcome()

    gateway_namespace = resolve_gateway_namespace(service, defaults)
    route = route_name(namespace, name)
    outcome.route_deleted = _delete_if_present(store, HTTP_ROUTE, gateway_namespace, route, deadline)
    if outcome.route_deleted:
        report_event(
            recorder, service, EVENT_TYPE_NORMAL, REASON_HTTPROUTE_DELETED,
            f"HTTPRoute {gateway_namespace}/{route} deleted",
        )
    if delete_stale_routes(store, recorder, service, gateway_namespace, deadline):
        outcome.route_deleted = True

    grant = grant_name(name)
    outcome.grant_deleted = _delete_if_present(store, REFERENCE_GRANT, namespace, grant, deadline)
    if outcome.grant_deleted:
        report_event(
            recorder, service, EVENT_TYPE_NORMAL, REASON_REFERENCEGRANT_DELETED,
            f"ReferenceGrant {namespace}/{grant} deleted",
        )

    return outcome
