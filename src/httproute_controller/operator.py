"""
kopf handlers wiring the reconciler to Service events.

kopf owns the watch, the per-object serialization and the retry
backoff; every handler just runs one reconciliation. A RetryableError
is turned into kopf.TemporaryError so the Service is retried later.

Only Services that carry the expose annotation or still hold our
finalizer are handled; the rest of the cluster is ignored.

Run with:
    kopf run -m httproute_controller.operator --standalone
or:
    httproute-controller run
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import kopf

from httproute_controller.config import get_config
from httproute_controller.constants import ANNOTATION_EXPOSE, FINALIZER
from httproute_controller.errors import RetryableError
from httproute_controller.events import KubernetesEventRecorder
from httproute_controller.logger import configure_logging
from httproute_controller.reconciler import ServiceReconciler
from httproute_controller.store import KubernetesObjectStore

logger = logging.getLogger(__name__)

_reconciler: Optional[ServiceReconciler] = None


def build_reconciler() -> ServiceReconciler:
    """Build the reconciler from the global configuration."""
    config = get_config()
    store = KubernetesObjectStore(kubeconfig=config.kubeconfig)
    return ServiceReconciler(
        store=store,
        defaults=config.gateway_defaults(),
        recorder=KubernetesEventRecorder(store.core_api),
    )


def get_reconciler() -> ServiceReconciler:
    global _reconciler
    if _reconciler is None:
        _reconciler = build_reconciler()
    return _reconciler


def set_reconciler(reconciler: Optional[ServiceReconciler]) -> None:
    """Install a reconciler (None resets; for testing)."""
    global _reconciler
    _reconciler = reconciler


def is_managed(meta: Dict[str, Any], **_: Any) -> bool:
    """Opted in, or still holding derived resources that need cleanup."""
    annotations = meta.get("annotations") or {}
    finalizers: List[str] = list(meta.get("finalizers") or [])
    return ANNOTATION_EXPOSE in annotations or FINALIZER in finalizers


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
    """Configure the operator and build the reconciler once."""
    config = get_config()
    configure_logging(config.log_level, config.log_format)

    settings.posting.level = logging.WARNING
    settings.execution.max_workers = config.workers
    settings.networking.request_timeout = config.reconcile_timeout_seconds

    get_reconciler()
    defaults = config.gateway_defaults()
    logger.info(
        f"httproute-controller started (gateway {defaults.gateway_namespace}/{defaults.gateway}, "
        f"section {defaults.section_name}, workers {config.workers})"
    )


def reconcile_or_retry(namespace: str, name: str) -> None:
    """Run one reconciliation, mapping retryable failures to kopf retries."""
    config = get_config()
    try:
        result = get_reconciler().reconcile(
            namespace, name, timeout=config.reconcile_timeout_seconds
        )
    except RetryableError as e:
        raise kopf.TemporaryError(str(e), delay=config.retry_delay_seconds) from e
    logger.debug(
        f"Reconciled Service {namespace}/{name}: state={result.state.value} "
        f"route={result.route.value} grant={result.grant.value}"
    )


@kopf.on.resume("", "v1", "services", when=is_managed)
@kopf.on.create("", "v1", "services", when=is_managed)
@kopf.on.update("", "v1", "services", when=is_managed)
def reconcile_service(name: str, namespace: str, **_: Any) -> None:
    reconcile_or_retry(namespace, name)


# optional=True: kopf adds no finalizer of its own; ours keeps the
# Service around until cleanup has run.
@kopf.on.delete("", "v1", "services", optional=True, when=is_managed)
def release_service(name: str, namespace: str, **_: Any) -> None:
    reconcile_or_retry(namespace, name)
