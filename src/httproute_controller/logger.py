"""
Structured logging for reconciliation events.

Outputs one JSON object per line so log collectors can filter on the
Service identity and outcome. Only state-changing events are logged;
no-op reconciliations stay at debug level on the module loggers.

Logged events:
- reconcile.active      (derived resources upserted)
- reconcile.inactive    (cleanup after expose was withdrawn)
- reconcile.deleting    (cleanup before the Service goes away)
- reconcile.invalid     (annotations rejected, nothing changed)
- reconcile.failed      (retryable failure, caller will requeue)
- finalizer.added
- finalizer.removed

Usage:
    from httproute_controller.logger import ReconcileLogger

    logger = ReconcileLogger()
    logger.log_active(namespace="default", name="myapp", hostname="myapp.example.org",
                      route="created", grant="unchanged")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

from httproute_controller.constants import CONTROLLER_NAME

_reconcile_logger = logging.getLogger("httproute_controller.reconcile")


class _JsonFormatter(logging.Formatter):
    """Wraps plain records as JSON; records that already are JSON pass through."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if message.startswith("{"):
            return message
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": message,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """
    Configure the root logger for the controller process.

    Args:
        level: debug, info, warning or error
        fmt: json for collectors, text for a console
    """
    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())


class ReconcileLogger:
    """
    Structured logger for reconciliation events.

    Each entry carries the Service namespace/name and the event type,
    plus event-specific fields.
    """

    def __init__(self, service_name: str = CONTROLLER_NAME):
        self.service_name = service_name
        self._logger = _reconcile_logger

    def _emit(
        self,
        event: str,
        namespace: str,
        name: str,
        level: str = "info",
        **extra_fields: Any,
    ) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "service": self.service_name,
            "namespace": namespace,
            "name": name,
        }
        entry.update({k: v for k, v in extra_fields.items() if v is not None})

        log_line = json.dumps(entry, default=str)

        if level == "error":
            self._logger.error(log_line)
        elif level == "warn":
            self._logger.warning(log_line)
        else:
            self._logger.info(log_line)

    def log_active(
        self,
        namespace: str,
        name: str,
        hostname: str,
        route: str,
        grant: str,
        gateway_namespace: Optional[str] = None,
    ) -> None:
        """Log a completed upsert; route/grant are the actions taken."""
        self._emit(
            event="reconcile.active",
            namespace=namespace,
            name=name,
            hostname=hostname,
            gateway_namespace=gateway_namespace,
            route=route,
            grant=grant,
        )

    def log_inactive(self, namespace: str, name: str, route_deleted: bool, grant_deleted: bool) -> None:
        self._emit(
            event="reconcile.inactive",
            namespace=namespace,
            name=name,
            route_deleted=route_deleted,
            grant_deleted=grant_deleted,
        )

    def log_deleting(self, namespace: str, name: str, route_deleted: bool, grant_deleted: bool) -> None:
        self._emit(
            event="reconcile.deleting",
            namespace=namespace,
            name=name,
            route_deleted=route_deleted,
            grant_deleted=grant_deleted,
        )

    def log_invalid(self, namespace: str, name: str, reason: str) -> None:
        self._emit(
            event="reconcile.invalid",
            namespace=namespace,
            name=name,
            level="warn",
            reason=reason,
        )

    def log_failed(self, namespace: str, name: str, error: str, stage: Optional[str] = None) -> None:
        self._emit(
            event="reconcile.failed",
            namespace=namespace,
            name=name,
            level="error",
            stage=stage,
            error=error,
        )

    def log_finalizer_added(self, namespace: str, name: str) -> None:
        self._emit(event="finalizer.added", namespace=namespace, name=name)

    def log_finalizer_removed(self, namespace: str, name: str) -> None:
        self._emit(event="finalizer.removed", namespace=namespace, name=name)
