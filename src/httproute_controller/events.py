"""
Event reporting for reconciliation outcomes.

Outcomes are attached to the Service as core/v1 Events so they show up
in `kubectl describe service`. Reporting is best-effort: a failure to
post an event is logged and never changes the reconciliation result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from httproute_controller.constants import CONTROLLER_NAME

logger = logging.getLogger(__name__)


@runtime_checkable
class EventRecorder(Protocol):
    """Sink for human-readable outcome records attached to a Service."""

    def record(self, service: Dict[str, Any], event_type: str, reason: str, message: str) -> None:
        ...


@dataclass
class RecordedEvent:
    namespace: str
    name: str
    event_type: str
    reason: str
    message: str


def _involved_object(service: Dict[str, Any]) -> Dict[str, Any]:
    metadata = service.get("metadata", {})
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "namespace": metadata.get("namespace"),
        "name": metadata.get("name"),
        "uid": metadata.get("uid"),
        "resourceVersion": metadata.get("resourceVersion"),
    }


class KubernetesEventRecorder:
    """
    Posts core/v1 Events through CoreV1Api.

    Example:
        recorder = KubernetesEventRecorder(store.core_api)
        recorder.record(service, "Normal", "HTTPRouteReconciled", "HTTPRoute default-myapp created")
    """

    def __init__(self, core_api: Any, component: str = CONTROLLER_NAME):
        self.core_api = core_api
        self.component = component

    def build_event(
        self, service: Dict[str, Any], event_type: str, reason: str, message: str
    ) -> Dict[str, Any]:
        metadata = service.get("metadata", {})
        now = datetime.now(timezone.utc).isoformat()
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "generateName": f"{metadata.get('name')}.",
                "namespace": metadata.get("namespace"),
            },
            "involvedObject": _involved_object(service),
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": self.component},
            "reportingComponent": self.component,
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }

    def record(self, service: Dict[str, Any], event_type: str, reason: str, message: str) -> None:
        metadata = service.get("metadata", {})
        namespace = metadata.get("namespace")
        try:
            self.core_api.create_namespaced_event(
                namespace=namespace,
                body=self.build_event(service, event_type, reason, message),
            )
        except Exception as e:
            logger.warning(
                f"Failed to record event {reason} for Service {namespace}/{metadata.get('name')}: {e}"
            )


def report_event(
    recorder: EventRecorder, service: Dict[str, Any], event_type: str, reason: str, message: str
) -> None:
    """Record through any recorder; a failing recorder is logged, never raised."""
    try:
        recorder.record(service, event_type, reason, message)
    except Exception as e:
        metadata = service.get("metadata", {})
        logger.warning(
            f"Event recorder failed on {reason} for Service "
            f"{metadata.get('namespace')}/{metadata.get('name')}: {e}"
        )


class MemoryEventRecorder:
    """Keeps recorded events in a list (for testing)."""

    def __init__(self):
        self.events: List[RecordedEvent] = []

    def record(self, service: Dict[str, Any], event_type: str, reason: str, message: str) -> None:
        metadata = service.get("metadata", {})
        self.events.append(RecordedEvent(
            namespace=metadata.get("namespace", ""),
            name=metadata.get("name", ""),
            event_type=event_type,
            reason=reason,
            message=message,
        ))

    def reasons(self, name: Optional[str] = None) -> List[str]:
        return [e.reason for e in self.events if name is None or e.name == name]

    def clear(self) -> None:
        self.events.clear()


class NullEventRecorder:
    """Drops every event. Used when no recorder is wired in."""

    def record(self, service: Dict[str, Any], event_type: str, reason: str, message: str) -> None:
        pass
