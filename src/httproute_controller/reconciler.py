"""
Reconciliation of a Service's derived resources.

One call to ServiceReconciler.reconcile() brings a single Service to its
declared state. The state is recomputed from scratch every time, in this
fixed priority order:

1. DELETING        deletionTimestamp set and our finalizer present:
                   clean up, then release the finalizer.
2. INACTIVE        expose annotation not "true": clean up, release the
                   finalizer if held.
3. INVALID_CONFIG  exposed but no hostname/port: report, change nothing.
4. ACTIVE          upsert HTTPRoute, drop routes left in an earlier
                   gateway namespace, upsert ReferenceGrant (unless
                   skipped), then add the finalizer.

The finalizer write is always last, so an interrupted invocation is
completed by the next one: every upsert before it is idempotent.

The caller must not run two reconciliations of the same Service at the
same time. Retryable failures propagate; nothing here retries.

Example:
    reconciler = ServiceReconciler(
        store=KubernetesObjectStore(),
        defaults=GatewayDefaults("homelab-gateway", "envoy-gateway-system", "https"),
        recorder=KubernetesEventRecorder(core_api),
    )
    result = reconciler.reconcile("default", "myapp", timeout=30)
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from httproute_controller.builders import build_http_route, build_reference_grant, grant_name
from httproute_controller.cleanup import CleanupOutcome, cleanup_derived_resources, delete_stale_routes
from httproute_controller.constants import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    FINALIZER,
    GATEWAY_API_GROUP,
    HTTP_ROUTE,
    REASON_HTTPROUTE_FAILED,
    REASON_HTTPROUTE_RECONCILED,
    REASON_REFERENCEGRANT_FAILED,
    REASON_REFERENCEGRANT_RECONCILED,
    REASON_REFERENCEGRANT_SKIPPED,
    REFERENCE_GRANT,
    ResourceKind,
)
from httproute_controller.deadline import Deadline
from httproute_controller.errors import ConfigurationError, IntentValidationError, RetryableError
from httproute_controller.events import EventRecorder, NullEventRecorder, report_event
from httproute_controller.intent import GatewayDefaults, IntentRecord, extract_intent
from httproute_controller.logger import ReconcileLogger
from httproute_controller.store import ObjectStore

logger = logging.getLogger(__name__)


class SourceState(str, Enum):
    """State of a Service as seen by the reconciler."""
    GONE = "gone"                      # Service no longer exists
    DELETING = "deleting"
    INACTIVE = "inactive"
    INVALID_CONFIG = "invalid_config"
    ACTIVE = "active"


class ResourceAction(str, Enum):
    """What happened to a derived resource during one invocation."""
    NONE = "none"
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    SKIPPED = "skipped"


@dataclass
class ReconcileResult:
    """Outcome of a successful invocation. Failures raise instead."""
    state: SourceState
    route: ResourceAction = ResourceAction.NONE
    grant: ResourceAction = ResourceAction.NONE
    message: str = ""


def _finalizers(service: Dict[str, Any]) -> List[str]:
    return list(service.get("metadata", {}).get("finalizers") or [])


def _deleted_action(deleted: bool) -> ResourceAction:
    return ResourceAction.DELETED if deleted else ResourceAction.NONE


# Values the API server fills into an HTTPRoute spec when they are unset
_PARENT_REF_DEFAULTS = {"group": GATEWAY_API_GROUP, "kind": "Gateway"}
_BACKEND_REF_DEFAULTS = {"group": "", "kind": "Service", "weight": 1}
_DEFAULT_MATCHES = [{"path": {"type": "PathPrefix", "value": "/"}}]


def _drop_defaults(ref: Any, defaults: Dict[str, Any]) -> Any:
    if not isinstance(ref, dict):
        return ref
    return {k: v for k, v in ref.items() if k not in defaults or defaults[k] != v}


def _without_server_defaults(spec: Any) -> Any:
    """
    Copy of a live spec with API server defaults removed.

    Only the exact default values are removed; any other field stays, so
    it still makes the spec differ from the desired one.
    """
    if not isinstance(spec, dict):
        return spec
    spec = copy.deepcopy(spec)
    if isinstance(spec.get("parentRefs"), list):
        spec["parentRefs"] = [_drop_defaults(r, _PARENT_REF_DEFAULTS) for r in spec["parentRefs"]]
    for rule in spec.get("rules") or []:
        if not isinstance(rule, dict):
            continue
        if rule.get("matches") == _DEFAULT_MATCHES:
            del rule["matches"]
        if isinstance(rule.get("backendRefs"), list):
            rule["backendRefs"] = [_drop_defaults(r, _BACKEND_REF_DEFAULTS) for r in rule["backendRefs"]]
    return spec


class ServiceReconciler:
    """
    Keeps the HTTPRoute and ReferenceGrant of a Service in line with its
    annotations.

    Args:
        store: Object store (cluster API or in-memory)
        defaults: Gateway fallbacks; mandatory
        recorder: Event sink; events are dropped when not given
        reconcile_logger: Structured logger for state changes
    """

    def __init__(
        self,
        store: ObjectStore,
        defaults: GatewayDefaults,
        recorder: Optional[EventRecorder] = None,
        reconcile_logger: Optional[ReconcileLogger] = None,
    ):
        if not isinstance(defaults, GatewayDefaults):
            raise ConfigurationError("ServiceReconciler requires GatewayDefaults")
        self.store = store
        self.defaults = defaults
        self.recorder = recorder if recorder is not None else NullEventRecorder()
        self.log = reconcile_logger or ReconcileLogger()

    def reconcile(self, namespace: str, name: str, timeout: Optional[float] = None) -> ReconcileResult:
        """
        Reconcile one Service.

        Args:
            namespace: Service namespace
            name: Service name
            timeout: Time budget in seconds for the whole invocation

        Returns:
            ReconcileResult

        Raises:
            RetryableError: store failure, write conflict or deadline expiry
        """
        deadline = Deadline(timeout)
        try:
            return self._reconcile(namespace, name, deadline)
        except RetryableError as e:
            self.log.log_failed(namespace, name, error=str(e), stage=type(e).__name__)
            raise

    def _reconcile(self, namespace: str, name: str, deadline: Deadline) -> ReconcileResult:
        service = self.store.get_service(namespace, name, timeout=deadline.remaining())
        if service is None:
            logger.debug(f"Service {namespace}/{name} not found, nothing to do")
            return ReconcileResult(SourceState.GONE)

        if service["metadata"].get("deletionTimestamp"):
            return self._handle_deleting(service, deadline)

        try:
            intent = extract_intent(service, self.defaults)
        except IntentValidationError as e:
            return self._handle_invalid(service, e)

        if not intent.exposed:
            return self._handle_inactive(service, deadline)

        return self._handle_active(service, intent, deadline)

    # State handlers

    def _handle_deleting(self, service: Dict[str, Any], deadline: Deadline) -> ReconcileResult:
        namespace, name = service["metadata"]["namespace"], service["metadata"]["name"]
        if FINALIZER not in _finalizers(service):
            return ReconcileResult(SourceState.DELETING, message="finalizer not held")

        outcome = self._cleanup(service, deadline)
        self._remove_finalizer(namespace, name, deadline)
        self.log.log_deleting(namespace, name, outcome.route_deleted, outcome.grant_deleted)
        return ReconcileResult(
            SourceState.DELETING,
            route=_deleted_action(outcome.route_deleted),
            grant=_deleted_action(outcome.grant_deleted),
            message="cleaned up before deletion",
        )

    def _handle_inactive(self, service: Dict[str, Any], deadline: Deadline) -> ReconcileResult:
        namespace, name = service["metadata"]["namespace"], service["metadata"]["name"]
        outcome = self._cleanup(service, deadline)
        released = False
        if FINALIZER in _finalizers(service):
            released = self._remove_finalizer(namespace, name, deadline)
        if outcome.anything_deleted or released:
            self.log.log_inactive(namespace, name, outcome.route_deleted, outcome.grant_deleted)
        return ReconcileResult(
            SourceState.INACTIVE,
            route=_deleted_action(outcome.route_deleted),
            grant=_deleted_action(outcome.grant_deleted),
        )

    def _handle_invalid(self, service: Dict[str, Any], error: IntentValidationError) -> ReconcileResult:
        namespace, name = service["metadata"]["namespace"], service["metadata"]["name"]
        self._report(
            service, EVENT_TYPE_WARNING, REASON_HTTPROUTE_FAILED,
            f"Invalid annotations: {error.reason}",
        )
        self.log.log_invalid(namespace, name, error.reason)
        return ReconcileResult(SourceState.INVALID_CONFIG, message=error.reason)

    def _handle_active(
        self, service: Dict[str, Any], intent: IntentRecord, deadline: Deadline
    ) -> ReconcileResult:
        namespace, name = service["metadata"]["namespace"], service["metadata"]["name"]

        route = build_http_route(service, intent)
        try:
            route_action = self._upsert(HTTP_ROUTE, route, deadline)
        except RetryableError as e:
            self._report(service, EVENT_TYPE_WARNING, REASON_HTTPROUTE_FAILED, str(e))
            raise
        if route_action != ResourceAction.UNCHANGED:
            self._report(
                service, EVENT_TYPE_NORMAL, REASON_HTTPROUTE_RECONCILED,
                f"HTTPRoute {intent.gateway_namespace}/{route['metadata']['name']} {route_action.value}",
            )
        # Routes left behind in a previous gateway namespace
        delete_stale_routes(self.store, self.recorder, service, intent.gateway_namespace, deadline)

        if intent.skip_reference_grant:
            grant_action = ResourceAction.SKIPPED
            if route_action != ResourceAction.UNCHANGED:
                self._report(
                    service, EVENT_TYPE_NORMAL, REASON_REFERENCEGRANT_SKIPPED,
                    f"ReferenceGrant {namespace}/{grant_name(name)} not managed (skip-reference-grant)",
                )
        else:
            grant = build_reference_grant(service, intent)
            try:
                grant_action = self._upsert(REFERENCE_GRANT, grant, deadline)
            except RetryableError as e:
                self._report(service, EVENT_TYPE_WARNING, REASON_REFERENCEGRANT_FAILED, str(e))
                raise
            if grant_action != ResourceAction.UNCHANGED:
                self._report(
                    service, EVENT_TYPE_NORMAL, REASON_REFERENCEGRANT_RECONCILED,
                    f"ReferenceGrant {namespace}/{grant['metadata']['name']} {grant_action.value}",
                )

        self._ensure_finalizer(service, deadline)

        if route_action != ResourceAction.UNCHANGED or grant_action not in (
            ResourceAction.UNCHANGED, ResourceAction.SKIPPED
        ):
            self.log.log_active(
                namespace, name,
                hostname=intent.hostname,
                gateway_namespace=intent.gateway_namespace,
                route=route_action.value,
                grant=grant_action.value,
            )
        return ReconcileResult(SourceState.ACTIVE, route=route_action, grant=grant_action)

    # Building blocks

    def _report(self, service: Dict[str, Any], event_type: str, reason: str, message: str) -> None:
        report_event(self.recorder, service, event_type, reason, message)

    def _cleanup(self, service: Dict[str, Any], deadline: Deadline) -> CleanupOutcome:
        return cleanup_derived_resources(self.store, self.recorder, service, self.defaults, deadline)

    def _upsert(self, kind: ResourceKind, desired: Dict[str, Any], deadline: Deadline) -> ResourceAction:
        """
        Create the object, or overwrite its spec in place.

        The whole spec is replaced, never merged, so fields dropped from
        the desired state disappear from the live object. Labels,
        annotations and other metadata of an existing object are kept;
        for owner-linkable kinds the ownerReferences are set as well.
        """
        namespace = desired["metadata"]["namespace"]
        name = desired["metadata"]["name"]

        existing = self.store.get(kind, namespace, name, timeout=deadline.remaining())
        if existing is None:
            self.store.create(kind, namespace, desired, timeout=deadline.remaining())
            logger.info(f"Created {kind.kind} {namespace}/{name}")
            return ResourceAction.CREATED

        owners = desired["metadata"].get("ownerReferences")
        spec_matches = _without_server_defaults(existing.get("spec")) == desired["spec"]
        owners_match = not kind.owner_linkable or existing["metadata"].get("ownerReferences") == owners
        if spec_matches and owners_match:
            return ResourceAction.UNCHANGED

        updated = copy.deepcopy(existing)
        updated["spec"] = copy.deepcopy(desired["spec"])
        if kind.owner_linkable:
            updated["metadata"]["ownerReferences"] = copy.deepcopy(owners)
        self.store.replace(kind, namespace, name, updated, timeout=deadline.remaining())
        logger.info(f"Updated {kind.kind} {namespace}/{name}")
        return ResourceAction.UPDATED

    def _ensure_finalizer(self, service: Dict[str, Any], deadline: Deadline) -> bool:
        """Add our finalizer to a fresh copy of the Service. Returns True if written."""
        namespace, name = service["metadata"]["namespace"], service["metadata"]["name"]
        fresh = self.store.get_service(namespace, name, timeout=deadline.remaining())

        if fresh is None or fresh["metadata"].get("deletionTimestamp"):
            # A Service on its way out cannot take new finalizers; if it does
            # not hold ours, nothing would ever remove the HTTPRoute.
            if fresh is None or FINALIZER not in _finalizers(fresh):
                logger.info(f"Service {namespace}/{name} went away during reconcile, cleaning up")
                self._cleanup(fresh or service, deadline)
            return False

        finalizers = _finalizers(fresh)
        if FINALIZER in finalizers:
            return False

        self.store.patch_service_finalizers(
            namespace, name,
            finalizers + [FINALIZER],
            fresh["metadata"].get("resourceVersion", ""),
            timeout=deadline.remaining(),
        )
        self.log.log_finalizer_added(namespace, name)
        return True

    def _remove_finalizer(self, namespace: str, name: str, deadline: Deadline) -> bool:
        """Drop our finalizer from a fresh copy of the Service. Returns True if written."""
        fresh = self.store.get_service(namespace, name, timeout=deadline.remaining())
        if fresh is None:
            return False
        finalizers = _finalizers(fresh)
        if FINALIZER not in finalizers:
            return False

        self.store.patch_service_finalizers(
            namespace, name,
            [f for f in finalizers if f != FINALIZER],
            fresh["metadata"].get("resourceVersion", ""),
            timeout=deadline.remaining(),
        )
        self.log.log_finalizer_removed(namespace, name)
        return True
