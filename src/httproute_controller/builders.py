"""
Desired-state builders for the derived resources.

Pure functions: the same Service identity and IntentRecord always give
the same manifest. Every reference is fully qualified with its namespace,
including when it equals the namespace of the object holding it.
"""

from __future__ import annotations

from typing import Any, Dict, List

from httproute_controller.constants import (
    CONTROLLER_NAME,
    GATEWAY_API_GROUP,
    HTTP_ROUTE,
    LABEL_MANAGED_BY,
    LABEL_SERVICE_NAME,
    LABEL_SERVICE_NAMESPACE,
    REFERENCE_GRANT,
)
from httproute_controller.intent import IntentRecord


def _identity(service: Dict[str, Any]) -> tuple:
    metadata = service.get("metadata", {})
    return metadata["namespace"], metadata["name"]


def route_name(service_namespace: str, service_name: str) -> str:
    """HTTPRoute name. Namespaced by the Service's namespace so names never collide."""
    return f"{service_namespace}-{service_name}"


def grant_name(service_name: str) -> str:
    """ReferenceGrant name, unique within the Service's namespace."""
    return f"{service_name}-backend"


def route_labels(service_namespace: str, service_name: str) -> Dict[str, str]:
    """Labels that find a Service's routes in whatever namespace they live."""
    return {
        LABEL_MANAGED_BY: CONTROLLER_NAME,
        LABEL_SERVICE_NAME: service_name,
        LABEL_SERVICE_NAMESPACE: service_namespace,
    }


def controller_reference(service: Dict[str, Any]) -> Dict[str, Any]:
    """ownerReference making the Service the controller of a same-namespace object."""
    metadata = service.get("metadata", {})
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "name": metadata["name"],
        "uid": metadata.get("uid", ""),
        "controller": True,
        "blockOwnerDeletion": True,
    }


def build_http_route_spec(service: Dict[str, Any], intent: IntentRecord) -> Dict[str, Any]:
    namespace, name = _identity(service)
    return {
        "parentRefs": [
            {
                "name": intent.gateway,
                "namespace": intent.gateway_namespace,
                "sectionName": intent.section_name,
            }
        ],
        "hostnames": [intent.hostname],
        "rules": [
            {
                "backendRefs": [
                    {
                        "name": name,
                        "namespace": namespace,
                        "port": intent.port,
                    }
                ]
            }
        ],
    }


def build_http_route(service: Dict[str, Any], intent: IntentRecord) -> Dict[str, Any]:
    """
    Desired HTTPRoute for an exposed Service.

    The route lives in the gateway namespace and carries no ownerReference;
    its lifetime is bound to the Service by the finalizer instead.
    """
    namespace, name = _identity(service)
    return {
        "apiVersion": HTTP_ROUTE.api_version,
        "kind": HTTP_ROUTE.kind,
        "metadata": {
            "name": route_name(namespace, name),
            "namespace": intent.gateway_namespace,
            "labels": route_labels(namespace, name),
        },
        "spec": build_http_route_spec(service, intent),
    }


def build_reference_grant_spec(service: Dict[str, Any], intent: IntentRecord) -> Dict[str, Any]:
    _, name = _identity(service)
    return {
        "from": [
            {
                "group": GATEWAY_API_GROUP,
                "kind": HTTP_ROUTE.kind,
                "namespace": intent.gateway_namespace,
            }
        ],
        "to": [
            {
                "group": "",
                "kind": "Service",
                "name": name,
            }
        ],
    }


def build_reference_grant(service: Dict[str, Any], intent: IntentRecord) -> Dict[str, Any]:
    """
    Desired ReferenceGrant allowing the HTTPRoute to reach the Service.

    Lives in the Service's namespace under a controller ownerReference,
    so the garbage collector removes it together with the Service.
    """
    namespace, name = _identity(service)
    metadata: Dict[str, Any] = {
        "name": grant_name(name),
        "namespace": namespace,
    }
    if REFERENCE_GRANT.owner_linkable:
        metadata["ownerReferences"] = [controller_reference(service)]
    return {
        "apiVersion": REFERENCE_GRANT.api_version,
        "kind": REFERENCE_GRANT.kind,
        "metadata": metadata,
        "spec": build_reference_grant_spec(service, intent),
    }


def render_manifests(service: Dict[str, Any], intent: IntentRecord) -> List[Dict[str, Any]]:
    """Desired manifests in apply order (route first, grant unless skipped)."""
    if not intent.exposed:
        return []
    manifests = [build_http_route(service, intent)]
    if not intent.skip_reference_grant:
        manifests.append(build_reference_grant(service, intent))
    return manifests
