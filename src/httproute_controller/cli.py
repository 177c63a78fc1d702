"""
httproute-controller CLI.

Commands:
    httproute-controller run        Run the controller (kopf operator)
    httproute-controller reconcile  Reconcile a single Service once
    httproute-controller render     Print the HTTPRoute/ReferenceGrant a Service would get

Gateway defaults come from flags or HTTPROUTE_CONTROLLER_DEFAULT_* variables.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional

import click
import kopf
import yaml

from httproute_controller.builders import render_manifests
from httproute_controller.config import ControllerConfig, get_config
from httproute_controller.errors import ConfigurationError, IntentValidationError, RetryableError
from httproute_controller.events import KubernetesEventRecorder
from httproute_controller.intent import extract_intent
from httproute_controller.logger import configure_logging
from httproute_controller.reconciler import ServiceReconciler
from httproute_controller.store import KubernetesObjectStore


def gateway_options(f: Callable) -> Callable:
    """Flags overriding the mandatory gateway defaults."""
    f = click.option("--section-name", help="Default listener section name")(f)
    f = click.option("--gateway-namespace", help="Default Gateway namespace")(f)
    f = click.option("--gateway", help="Default Gateway name")(f)
    f = click.option("--kubeconfig", type=click.Path(dir_okay=False), help="Path to kubeconfig")(f)
    return f


def _load_config(**overrides: Any) -> ControllerConfig:
    try:
        return get_config(**overrides)
    except ConfigurationError as e:
        raise click.ClickException(
            f"{e}\n"
            "Set --gateway/--gateway-namespace/--section-name or the "
            "HTTPROUTE_CONTROLLER_DEFAULT_* environment variables."
        )


def _config_from_flags(
    gateway: Optional[str],
    gateway_namespace: Optional[str],
    section_name: Optional[str],
    kubeconfig: Optional[str],
    **extra: Any,
) -> ControllerConfig:
    return _load_config(
        default_gateway=gateway,
        default_gateway_namespace=gateway_namespace,
        default_section_name=section_name,
        kubeconfig=kubeconfig,
        **extra,
    )


@click.group()
@click.version_option(package_name="httproute-controller")
def main():
    """httproute-controller - expose Services through Gateway API HTTPRoutes."""
    pass


@main.command()
@gateway_options
@click.option("--namespace", "-n", help="Watch a single namespace (default: all)")
@click.option("--workers", type=click.IntRange(min=1), help="Concurrent reconciliations")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    help="Logging level",
)
def run(
    gateway: Optional[str],
    gateway_namespace: Optional[str],
    section_name: Optional[str],
    kubeconfig: Optional[str],
    namespace: Optional[str],
    workers: Optional[int],
    log_level: Optional[str],
):
    """Run the controller until interrupted."""
    config = _config_from_flags(
        gateway, gateway_namespace, section_name, kubeconfig,
        namespace=namespace, workers=workers, log_level=log_level,
    )
    configure_logging(config.log_level, config.log_format)

    # Importing registers the handlers with kopf's default registry
    from httproute_controller import operator  # noqa: F401

    click.echo("Starting httproute-controller...", err=True)
    click.echo(f"  namespace: {config.namespace or 'all'}", err=True)
    click.echo(f"  workers: {config.workers}", err=True)

    kopf.run(
        standalone=True,
        clusterwide=config.namespace is None,
        namespaces=[config.namespace] if config.namespace else [],
    )


@main.command()
@click.argument("namespace")
@click.argument("name")
@gateway_options
@click.option("--timeout", type=float, help="Time budget in seconds (default from config)")
def reconcile(
    namespace: str,
    name: str,
    gateway: Optional[str],
    gateway_namespace: Optional[str],
    section_name: Optional[str],
    kubeconfig: Optional[str],
    timeout: Optional[float],
):
    """Reconcile the Service NAMESPACE/NAME once against the cluster."""
    config = _config_from_flags(gateway, gateway_namespace, section_name, kubeconfig)
    store = KubernetesObjectStore(kubeconfig=config.kubeconfig)
    reconciler = ServiceReconciler(
        store=store,
        defaults=config.gateway_defaults(),
        recorder=KubernetesEventRecorder(store.core_api),
    )

    try:
        result = reconciler.reconcile(
            namespace, name, timeout=timeout or config.reconcile_timeout_seconds
        )
    except RetryableError as e:
        raise click.ClickException(f"Reconcile of {namespace}/{name} failed (retryable): {e}")

    click.echo(f"Service {namespace}/{name}: {result.state.value}")
    click.echo(f"  HTTPRoute: {result.route.value}")
    click.echo(f"  ReferenceGrant: {result.grant.value}")
    if result.message:
        click.echo(f"  {result.message}")


@main.command()
@click.argument("namespace", required=False)
@click.argument("name", required=False)
@gateway_options
@click.option(
    "--file", "-f", "service_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Read the Service from a YAML file instead of the cluster",
)
def render(
    namespace: Optional[str],
    name: Optional[str],
    gateway: Optional[str],
    gateway_namespace: Optional[str],
    section_name: Optional[str],
    kubeconfig: Optional[str],
    service_file: Optional[str],
):
    """Print the derived resources for a Service without applying them."""
    config = _config_from_flags(gateway, gateway_namespace, section_name, kubeconfig)

    if service_file:
        with open(service_file) as f:
            service: Dict[str, Any] = yaml.safe_load(f) or {}
        metadata = service.setdefault("metadata", {})
        metadata.setdefault("namespace", namespace or "default")
        if "name" not in metadata:
            raise click.ClickException(f"{service_file}: Service has no metadata.name")
    else:
        if not namespace or not name:
            raise click.UsageError("NAMESPACE and NAME are required without --file")
        store = KubernetesObjectStore(kubeconfig=config.kubeconfig)
        try:
            found = store.get_service(namespace, name)
        except RetryableError as e:
            raise click.ClickException(f"Could not read Service {namespace}/{name}: {e}")
        if found is None:
            raise click.ClickException(f"Service {namespace}/{name} not found")
        service = found

    try:
        intent = extract_intent(service, config.gateway_defaults())
    except IntentValidationError as e:
        raise click.ClickException(f"Invalid annotations: {e.reason}")

    manifests = render_manifests(service, intent)
    if not manifests:
        click.echo("# Service is not exposed; no derived resources")
        return
    click.echo(yaml.safe_dump_all(manifests, sort_keys=False), nl=False)


if __name__ == "__main__":
    main()
