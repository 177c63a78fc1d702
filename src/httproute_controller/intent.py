"""
Annotation extraction.

Turns the annotations of a Service into an IntentRecord: what the
derived HTTPRoute and ReferenceGrant should look like, or that nothing
should exist at all.

Example:
    defaults = GatewayDefaults(
        gateway="homelab-gateway",
        gateway_namespace="envoy-gateway-system",
        section_name="https",
    )
    intent = extract_intent(service, defaults)
    if intent.exposed:
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from httproute_controller.constants import (
    ANNOTATION_EXPOSE,
    ANNOTATION_GATEWAY,
    ANNOTATION_GATEWAY_NAMESPACE,
    ANNOTATION_HOSTNAME,
    ANNOTATION_PORT,
    ANNOTATION_SECTION_NAME,
    ANNOTATION_SKIP_REFERENCE_GRANT,
    TRUE_LITERAL,
)
from httproute_controller.errors import ConfigurationError, IntentValidationError

MAX_PORT = 65535


@dataclass(frozen=True)
class GatewayDefaults:
    """Fallbacks for the optional gateway annotations. All are required."""
    gateway: str
    gateway_namespace: str
    section_name: str

    def __post_init__(self):
        missing = [
            field_name
            for field_name in ("gateway", "gateway_namespace", "section_name")
            if not getattr(self, field_name)
        ]
        if missing:
            raise ConfigurationError(
                f"Missing mandatory gateway defaults: {', '.join(missing)}"
            )


@dataclass(frozen=True)
class IntentRecord:
    """
    Desired state derived from a Service's annotations.

    Recomputed on every reconciliation and never persisted. When
    exposed is False the remaining fields are informational only.
    """
    exposed: bool
    hostname: str = ""
    gateway: str = ""
    gateway_namespace: str = ""
    section_name: str = ""
    port: int = 0
    skip_reference_grant: bool = False


def get_annotations(service: Dict[str, Any]) -> Dict[str, str]:
    return service.get("metadata", {}).get("annotations") or {}


def _is_true(value: Optional[str]) -> bool:
    return value == TRUE_LITERAL


def _with_default(annotations: Dict[str, str], key: str, default: str) -> str:
    return annotations.get(key) or default


def resolve_gateway_namespace(service: Dict[str, Any], defaults: GatewayDefaults) -> str:
    """
    Namespace the HTTPRoute of this Service lives in.

    Shared by the upsert and cleanup paths so a route is always looked
    up under the same fallback rule it was created with.
    """
    return _with_default(
        get_annotations(service), ANNOTATION_GATEWAY_NAMESPACE, defaults.gateway_namespace
    )


def parse_port(value: Optional[str]) -> int:
    """Parse a base-10 port annotation. Returns 0 when unusable."""
    if value is None:
        return 0
    try:
        port = int(value.strip(), 10)
    except ValueError:
        return 0
    if port < 0 or port > MAX_PORT:
        return 0
    return port


def first_declared_port(service: Dict[str, Any]) -> int:
    ports = service.get("spec", {}).get("ports") or []
    if not ports:
        return 0
    return int(ports[0].get("port") or 0)


def extract_intent(service: Dict[str, Any], defaults: GatewayDefaults) -> IntentRecord:
    """
    Build the IntentRecord for a Service.

    Args:
        service: Service object as a JSON-shaped dict
        defaults: Engine-level fallbacks for the optional annotations

    Returns:
        IntentRecord; exposed is False when the Service is not opted in

    Raises:
        IntentValidationError: exposed but no hostname or no usable port
    """
    annotations = get_annotations(service)
    metadata = service.get("metadata", {})
    namespace = metadata.get("namespace", "")
    name = metadata.get("name", "")

    if not _is_true(annotations.get(ANNOTATION_EXPOSE)):
        return IntentRecord(exposed=False)

    hostname = annotations.get(ANNOTATION_HOSTNAME, "")
    if not hostname:
        raise IntentValidationError("hostname missing", namespace=namespace, name=name)

    port = parse_port(annotations.get(ANNOTATION_PORT))
    if port == 0:
        port = first_declared_port(service)
    if port == 0:
        raise IntentValidationError("no port resolvable", namespace=namespace, name=name)

    return IntentRecord(
        exposed=True,
        hostname=hostname,
        gateway=_with_default(annotations, ANNOTATION_GATEWAY, defaults.gateway),
        gateway_namespace=resolve_gateway_namespace(service, defaults),
        section_name=_with_default(annotations, ANNOTATION_SECTION_NAME, defaults.section_name),
        port=port,
        skip_reference_grant=_is_true(annotations.get(ANNOTATION_SKIP_REFERENCE_GRANT)),
    )
