"""
Fixed identifiers for the HTTPRoute controller.

The annotation prefix is not configurable at runtime. Everything the
controller reads from or writes to a Service is keyed off it.
"""

from __future__ import annotations

from dataclasses import dataclass

# =============================================================================
# Annotations
# =============================================================================

ANNOTATION_PREFIX = "httproute.controller"

ANNOTATION_EXPOSE = f"{ANNOTATION_PREFIX}/expose"
ANNOTATION_HOSTNAME = f"{ANNOTATION_PREFIX}/hostname"
ANNOTATION_GATEWAY = f"{ANNOTATION_PREFIX}/gateway"
ANNOTATION_GATEWAY_NAMESPACE = f"{ANNOTATION_PREFIX}/gateway-namespace"
ANNOTATION_SECTION_NAME = f"{ANNOTATION_PREFIX}/section-name"
ANNOTATION_PORT = f"{ANNOTATION_PREFIX}/port"
ANNOTATION_SKIP_REFERENCE_GRANT = f"{ANNOTATION_PREFIX}/skip-reference-grant"

# The only value that turns a boolean annotation on
TRUE_LITERAL = "true"

# Presence means derived resources may exist and must be cleaned up first
FINALIZER = f"{ANNOTATION_PREFIX}/httproute-finalizer"

# =============================================================================
# Labels stamped on created HTTPRoutes
# =============================================================================

CONTROLLER_NAME = "httproute-controller"

LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_SERVICE_NAME = f"{ANNOTATION_PREFIX}/service-name"
LABEL_SERVICE_NAMESPACE = f"{ANNOTATION_PREFIX}/service-namespace"

# =============================================================================
# Event reasons
# =============================================================================

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

REASON_HTTPROUTE_RECONCILED = "HTTPRouteReconciled"
REASON_HTTPROUTE_FAILED = "HTTPRouteFailed"
REASON_HTTPROUTE_DELETED = "HTTPRouteDeleted"
REASON_REFERENCEGRANT_RECONCILED = "ReferenceGrantReconciled"
REASON_REFERENCEGRANT_FAILED = "ReferenceGrantFailed"
REASON_REFERENCEGRANT_DELETED = "ReferenceGrantDeleted"
REASON_REFERENCEGRANT_SKIPPED = "ReferenceGrantSkipped"

# =============================================================================
# Resource kinds
# =============================================================================

GATEWAY_API_GROUP = "gateway.networking.k8s.io"


@dataclass(frozen=True)
class ResourceKind:
    """
    Descriptor for a namespaced custom resource kind.

    owner_linkable records whether objects of this kind can be placed
    under a same-namespace ownerReference to the Service, i.e. whether
    the platform garbage collector cleans them up on its own. It is a
    property of the kind, never of an individual object.
    """
    group: str
    version: str
    plural: str
    kind: str
    owner_linkable: bool

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


# Lives in the gateway namespace, so no ownerReference to the Service
HTTP_ROUTE = ResourceKind(
    group=GATEWAY_API_GROUP,
    version="v1",
    plural="httproutes",
    kind="HTTPRoute",
    owner_linkable=False,
)

# Lives next to the Service
REFERENCE_GRANT = ResourceKind(
    group=GATEWAY_API_GROUP,
    version="v1beta1",
    plural="referencegrants",
    kind="ReferenceGrant",
    owner_linkable=True,
)
