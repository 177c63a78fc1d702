"""
Pytest configuration and fixtures for httproute-controller tests.
"""

from __future__ import annotations

import os
from typing import Any, Callable, Dict, Generator, List, Optional, Sequence

import pytest

from httproute_controller.config import reset_config
from httproute_controller.constants import ANNOTATION_EXPOSE, ANNOTATION_HOSTNAME
from httproute_controller.events import MemoryEventRecorder
from httproute_controller.intent import GatewayDefaults
from httproute_controller.reconciler import ServiceReconciler
from httproute_controller.store import MemoryObjectStore

DEFAULT_GATEWAY = "test-gateway"
DEFAULT_GATEWAY_NAMESPACE = "envoy-gateway-system"
DEFAULT_SECTION_NAME = "https"


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def clean_controller_env() -> Generator[None, None, None]:
    """Strip HTTPROUTE_CONTROLLER_* variables and reset the config singleton."""
    original = {k: v for k, v in os.environ.items() if k.startswith("HTTPROUTE_CONTROLLER_")}
    for key in original:
        del os.environ[key]
    reset_config()

    yield

    reset_config()
    for key in [k for k in os.environ if k.startswith("HTTPROUTE_CONTROLLER_")]:
        del os.environ[key]
    os.environ.update(original)


@pytest.fixture
def controller_env(monkeypatch) -> Dict[str, str]:
    """Mandatory gateway defaults set through the environment."""
    env = {
        "HTTPROUTE_CONTROLLER_DEFAULT_GATEWAY": DEFAULT_GATEWAY,
        "HTTPROUTE_CONTROLLER_DEFAULT_GATEWAY_NAMESPACE": DEFAULT_GATEWAY_NAMESPACE,
        "HTTPROUTE_CONTROLLER_DEFAULT_SECTION_NAME": DEFAULT_SECTION_NAME,
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


# ============================================================================
# Model Fixtures
# ============================================================================


@pytest.fixture
def defaults() -> GatewayDefaults:
    return GatewayDefaults(
        gateway=DEFAULT_GATEWAY,
        gateway_namespace=DEFAULT_GATEWAY_NAMESPACE,
        section_name=DEFAULT_SECTION_NAME,
    )


@pytest.fixture
def make_service() -> Callable[..., Dict[str, Any]]:
    """Factory for Service dicts shaped like the API server returns them."""

    def _make(
        name: str = "myapp",
        namespace: str = "default",
        annotations: Optional[Dict[str, str]] = None,
        ports: Sequence[int] = (80,),
        finalizers: Optional[List[str]] = None,
        uid: Optional[str] = None,
    ) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "name": name,
            "namespace": namespace,
            "annotations": dict(annotations or {}),
        }
        if finalizers:
            metadata["finalizers"] = list(finalizers)
        if uid:
            metadata["uid"] = uid
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": metadata,
            "spec": {
                "ports": [{"port": p, "protocol": "TCP", "targetPort": 8080} for p in ports],
            },
        }

    return _make


@pytest.fixture
def exposed_annotations() -> Dict[str, str]:
    return {
        ANNOTATION_EXPOSE: "true",
        ANNOTATION_HOSTNAME: "myapp.example.org",
    }


# ============================================================================
# Controller Fixtures
# ============================================================================


@pytest.fixture
def store() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def recorder() -> MemoryEventRecorder:
    return MemoryEventRecorder()


@pytest.fixture
def reconciler(store, defaults, recorder) -> ServiceReconciler:
    return ServiceReconciler(store=store, defaults=defaults, recorder=recorder)
