"""
httproute-controller - expose Kubernetes Services through Gateway API.

A Service opts in with annotations; the controller derives an HTTPRoute
in the gateway namespace and a ReferenceGrant next to the Service, keeps
both in line with the annotations, and removes them when the Service is
no longer exposed or is deleted.

Example usage:
    from httproute_controller import GatewayDefaults, ServiceReconciler
    from httproute_controller.store import KubernetesObjectStore

    reconciler = ServiceReconciler(
        store=KubernetesObjectStore(),
        defaults=GatewayDefaults(
            gateway="homelab-gateway",
            gateway_namespace="envoy-gateway-system",
            section_name="https",
        ),
    )
    result = reconciler.reconcile("default", "myapp")

Annotations on the Service:
    httproute.controller/expose: "true"
    httproute.controller/hostname: myapp.example.org
    httproute.controller/port: "8080"           (optional)
    httproute.controller/gateway: ...            (optional)
    httproute.controller/gateway-namespace: ...  (optional)
    httproute.controller/section-name: ...       (optional)
    httproute.controller/skip-reference-grant: "true"  (optional)
"""

__version__ = "0.1.0"
__all__ = [
    "GatewayDefaults",
    "IntentRecord",
    "ServiceReconciler",
    "ReconcileResult",
    "SourceState",
    "__version__",
]


# Lazy imports so `import httproute_controller` stays cheap
def __getattr__(name: str):
    if name in ("GatewayDefaults", "IntentRecord"):
        from httproute_controller import intent
        return getattr(intent, name)
    if name in ("ServiceReconciler", "ReconcileResult", "SourceState"):
        from httproute_controller import reconciler
        return getattr(reconciler, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
