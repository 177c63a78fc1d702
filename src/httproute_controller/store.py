"""
Object store access for the controller.

The reconciler only ever talks to the ObjectStore protocol:

- Services: read, and patch of the finalizer list under optimistic
  concurrency.
- Derived resources (HTTPRoute, ReferenceGrant): get/create/replace/delete
  by ResourceKind, namespace and name; find by labels across namespaces.

Backends:
- KubernetesObjectStore: the cluster API via the kubernetes client
- MemoryObjectStore: in-process store with resource versions, finalizer
  gated deletion and ownerReference garbage collection (tests, dry runs)

Every call takes an optional timeout in seconds. Failures other than
"not found" surface as StoreError/ConflictError, both retryable.

Example:
    store = KubernetesObjectStore(kubeconfig="~/.kube/config")
    service = store.get_service("default", "myapp")
    route = store.get(HTTP_ROUTE, "envoy-gateway-system", "default-myapp")
"""

from __future__ import annotations

import copy
import itertools
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, runtime_checkable

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from httproute_controller.constants import ResourceKind
from httproute_controller.errors import ConflictError, StoreError

logger = logging.getLogger(__name__)

SERVICES = "services"


@runtime_checkable
class ObjectStore(Protocol):
    """
    Protocol defining the object store interface.

    get methods return None for a missing object; delete returns False
    for one. Everything else that goes wrong raises StoreError.
    """

    def get_service(
        self, namespace: str, name: str, timeout: Optional[float] = None
    ) -> Optional[Dict[str, Any]]:
        """Get a Service by namespace and name."""
        ...

    def patch_service_finalizers(
        self,
        namespace: str,
        name: str,
        finalizers: List[str],
        resource_version: str,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Write only metadata.finalizers, failing if resource_version is stale."""
        ...

    def get(
        self, kind: ResourceKind, namespace: str, name: str, timeout: Optional[float] = None
    ) -> Optional[Dict[str, Any]]:
        """Get a derived resource."""
        ...

    def find(
        self, kind: ResourceKind, labels: Dict[str, str], timeout: Optional[float] = None
    ) -> List[Dict[str, Any]]:
        """List objects of a kind, in every namespace, carrying all given labels."""
        ...

    def create(
        self, kind: ResourceKind, namespace: str, body: Dict[str, Any], timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """Create a derived resource."""
        ...

    def replace(
        self,
        kind: ResourceKind,
        namespace: str,
        name: str,
        body: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Replace a derived resource; body carries the resourceVersion it was read at."""
        ...

    def delete(
        self, kind: ResourceKind, namespace: str, name: str, timeout: Optional[float] = None
    ) -> bool:
        """Delete a derived resource. Returns False if it did not exist."""
        ...


def _not_found_as_none(call: Callable[[], Any]) -> Any:
    try:
        return call()
    except StoreError as e:
        if e.status == 404:
            return None
        raise


class KubernetesObjectStore:
    """
    ObjectStore backed by the Kubernetes API.

    Services go through CoreV1Api, Gateway API objects through
    CustomObjectsApi. Clients can be injected; otherwise the in-cluster
    config is loaded, falling back to kubeconfig.
    """

    def __init__(
        self,
        kubeconfig: Optional[str] = None,
        api_client: Optional[Any] = None,
        core_api: Optional[Any] = None,
        custom_api: Optional[Any] = None,
    ):
        if api_client is None and (core_api is None or custom_api is None):
            if kubeconfig:
                config.load_kube_config(config_file=kubeconfig)
            else:
                try:
                    config.load_incluster_config()
                except config.ConfigException:
                    config.load_kube_config()
            api_client = client.ApiClient()

        self.api_client = api_client or client.ApiClient()
        self.core_api = core_api or client.CoreV1Api(self.api_client)
        self.custom_api = custom_api or client.CustomObjectsApi(self.api_client)
        logger.debug("KubernetesObjectStore initialized")

    def _call(self, description: str, fn: Callable[..., Any], timeout: Optional[float], **kwargs: Any) -> Any:
        if timeout is not None:
            kwargs["_request_timeout"] = timeout
        try:
            return fn(**kwargs)
        except ApiException as e:
            if e.status == 409:
                raise ConflictError(f"{description}: {e.reason}") from e
            raise StoreError(f"{description}: {e.status} {e.reason}", status=e.status) from e
        except urllib3.exceptions.HTTPError as e:
            raise StoreError(f"{description}: {e}") from e

    # Services

    def get_service(
        self, namespace: str, name: str, timeout: Optional[float] = None
    ) -> Optional[Dict[str, Any]]:
        service = _not_found_as_none(lambda: self._call(
            f"get Service {namespace}/{name}",
            self.core_api.read_namespaced_service,
            timeout,
            name=name,
            namespace=namespace,
        ))
        if service is None:
            return None
        return self.api_client.sanitize_for_serialization(service)

    def patch_service_finalizers(
        self,
        namespace: str,
        name: str,
        finalizers: List[str],
        resource_version: str,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        # JSON patch: the list replaces the finalizers wholesale, and the
        # resourceVersion makes the API server reject stale writes with 409.
        body = [
            {"op": "replace", "path": "/metadata/resourceVersion", "value": resource_version},
            {"op": "add", "path": "/metadata/finalizers", "value": finalizers},
        ]
        service = self._call(
            f"patch finalizers of Service {namespace}/{name}",
            self.core_api.patch_namespaced_service,
            timeout,
            name=name,
            namespace=namespace,
            body=body,
        )
        return self.api_client.sanitize_for_serialization(service)

    # Derived resources

    def get(
        self, kind: ResourceKind, namespace: str, name: str, timeout: Optional[float] = None
    ) -> Optional[Dict[str, Any]]:
        return _not_found_as_none(lambda: self._call(
            f"get {kind.kind} {namespace}/{name}",
            self.custom_api.get_namespaced_custom_object,
            timeout,
            group=kind.group,
            version=kind.version,
            namespace=namespace,
            plural=kind.plural,
            name=name,
        ))

    def find(
        self, kind: ResourceKind, labels: Dict[str, str], timeout: Optional[float] = None
    ) -> List[Dict[str, Any]]:
        selector = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        result = self._call(
            f"list {kind.kind} ({selector})",
            self.custom_api.list_cluster_custom_object,
            timeout,
            group=kind.group,
            version=kind.version,
            plural=kind.plural,
            label_selector=selector,
        )
        return list(result.get("items") or [])

    def create(
        self, kind: ResourceKind, namespace: str, body: Dict[str, Any], timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        return self._call(
            f"create {kind.kind} {namespace}/{body['metadata']['name']}",
            self.custom_api.create_namespaced_custom_object,
            timeout,
            group=kind.group,
            version=kind.version,
            namespace=namespace,
            plural=kind.plural,
            body=body,
        )

    def replace(
        self,
        kind: ResourceKind,
        namespace: str,
        name: str,
        body: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        return self._call(
            f"replace {kind.kind} {namespace}/{name}",
            self.custom_api.replace_namespaced_custom_object,
            timeout,
            group=kind.group,
            version=kind.version,
            namespace=namespace,
            plural=kind.plural,
            name=name,
            body=body,
        )

    def delete(
        self, kind: ResourceKind, namespace: str, name: str, timeout: Optional[float] = None
    ) -> bool:
        result = _not_found_as_none(lambda: self._call(
            f"delete {kind.kind} {namespace}/{name}",
            self.custom_api.delete_namespaced_custom_object,
            timeout,
            group=kind.group,
            version=kind.version,
            namespace=namespace,
            plural=kind.plural,
            name=name,
        ))
        return result is not None


Key = Tuple[str, str, str]


class MemoryObjectStore:
    """
    In-memory ObjectStore for testing and offline use.

    Mimics the API server semantics the reconciler relies on:
    - resourceVersion bumps on every write, stale replaces/patches fail
      with ConflictError
    - a Service with deletionTimestamp disappears once its finalizers
      are empty, and same-namespace objects it owns go with it

    Data is lost when the process exits.
    """

    def __init__(self):
        self._objects: Dict[Key, Dict[str, Any]] = {}
        self._versions = itertools.count(1)
        self._failures: Dict[Tuple[str, str], List[Exception]] = {}
        self.calls: List[Tuple[str, str, str, str]] = []

    # Test helpers

    def fail_next(self, operation: str, plural: str, error: Exception) -> None:
        """Make the next `operation` ("get", "create", ...) on `plural` raise error."""
        self._failures.setdefault((operation, plural), []).append(error)

    def writes(self) -> List[Tuple[str, str, str, str]]:
        return [c for c in self.calls if c[0] not in ("get", "list")]

    def add_service(self, service: Dict[str, Any]) -> Dict[str, Any]:
        """Create or overwrite a Service as an external actor would."""
        service = copy.deepcopy(service)
        metadata = service.setdefault("metadata", {})
        existing = self._objects.get((SERVICES, metadata["namespace"], metadata["name"]))
        if existing is not None:
            metadata.setdefault("uid", existing["metadata"]["uid"])
        metadata.setdefault("uid", str(uuid.uuid4()))
        self._store(SERVICES, service)
        return copy.deepcopy(service)

    def set_annotations(self, namespace: str, name: str, annotations: Dict[str, str]) -> None:
        """Replace the annotation map of a stored Service, keeping everything else."""
        service = self._objects[(SERVICES, namespace, name)]
        service["metadata"]["annotations"] = dict(annotations)
        self._bump(service)

    def request_deletion(self, namespace: str, name: str) -> None:
        """Set deletionTimestamp, or remove right away if nothing holds the Service."""
        service = self._objects.get((SERVICES, namespace, name))
        if service is None:
            return
        service["metadata"]["deletionTimestamp"] = datetime.now(timezone.utc).isoformat()
        self._bump(service)
        self._finish_deletion_if_released(service)

    def objects(self, kind: ResourceKind) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(obj)
            for (plural, _, _), obj in sorted(self._objects.items())
            if plural == kind.plural
        ]

    # Internals

    def _record(self, operation: str, plural: str, namespace: str, name: str) -> None:
        self.calls.append((operation, plural, namespace, name))
        pending = self._failures.get((operation, plural))
        if pending:
            raise pending.pop(0)

    def _bump(self, obj: Dict[str, Any]) -> None:
        obj["metadata"]["resourceVersion"] = str(next(self._versions))

    def _store(self, plural: str, obj: Dict[str, Any]) -> None:
        self._bump(obj)
        metadata = obj["metadata"]
        self._objects[(plural, metadata["namespace"], metadata["name"])] = obj

    def _check_version(self, live: Dict[str, Any], resource_version: Optional[str], what: str) -> None:
        if resource_version and resource_version != live["metadata"]["resourceVersion"]:
            raise ConflictError(
                f"{what}: the object has been modified; please apply your changes to the latest version"
            )

    def _finish_deletion_if_released(self, service: Dict[str, Any]) -> None:
        metadata = service["metadata"]
        if not metadata.get("deletionTimestamp") or metadata.get("finalizers"):
            return
        del self._objects[(SERVICES, metadata["namespace"], metadata["name"])]
        uid = metadata["uid"]
        for key, obj in list(self._objects.items()):
            if key[1] != metadata["namespace"]:
                continue
            owners = obj["metadata"].get("ownerReferences") or []
            if any(ref.get("uid") == uid for ref in owners):
                del self._objects[key]

    # ObjectStore

    def get_service(
        self, namespace: str, name: str, timeout: Optional[float] = None
    ) -> Optional[Dict[str, Any]]:
        self._record("get", SERVICES, namespace, name)
        service = self._objects.get((SERVICES, namespace, name))
        return copy.deepcopy(service) if service is not None else None

    def patch_service_finalizers(
        self,
        namespace: str,
        name: str,
        finalizers: List[str],
        resource_version: str,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        self._record("patch", SERVICES, namespace, name)
        service = self._objects.get((SERVICES, namespace, name))
        if service is None:
            raise StoreError(f"patch finalizers of Service {namespace}/{name}: 404 Not Found", status=404)
        self._check_version(service, resource_version, f"patch Service {namespace}/{name}")
        service["metadata"]["finalizers"] = list(finalizers)
        self._bump(service)
        result = copy.deepcopy(service)
        self._finish_deletion_if_released(service)
        return result

    def get(
        self, kind: ResourceKind, namespace: str, name: str, timeout: Optional[float] = None
    ) -> Optional[Dict[str, Any]]:
        self._record("get", kind.plural, namespace, name)
        obj = self._objects.get((kind.plural, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def find(
        self, kind: ResourceKind, labels: Dict[str, str], timeout: Optional[float] = None
    ) -> List[Dict[str, Any]]:
        self._record("list", kind.plural, "", "")
        found = []
        for (plural, _, _), obj in sorted(self._objects.items()):
            obj_labels = obj["metadata"].get("labels") or {}
            if plural == kind.plural and all(obj_labels.get(k) == v for k, v in labels.items()):
                found.append(copy.deepcopy(obj))
        return found

    def create(
        self, kind: ResourceKind, namespace: str, body: Dict[str, Any], timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        name = body["metadata"]["name"]
        self._record("create", kind.plural, namespace, name)
        if (kind.plural, namespace, name) in self._objects:
            raise ConflictError(f"create {kind.kind} {namespace}/{name}: already exists")
        obj = copy.deepcopy(body)
        obj["metadata"]["namespace"] = namespace
        obj["metadata"]["uid"] = str(uuid.uuid4())
        self._store(kind.plural, obj)
        return copy.deepcopy(obj)

    def replace(
        self,
        kind: ResourceKind,
        namespace: str,
        name: str,
        body: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        self._record("replace", kind.plural, namespace, name)
        live = self._objects.get((kind.plural, namespace, name))
        if live is None:
            raise StoreError(f"replace {kind.kind} {namespace}/{name}: 404 Not Found", status=404)
        self._check_version(live, body.get("metadata", {}).get("resourceVersion"), f"replace {kind.kind} {namespace}/{name}")
        obj = copy.deepcopy(body)
        obj["metadata"]["uid"] = live["metadata"]["uid"]
        self._store(kind.plural, obj)
        return copy.deepcopy(obj)

    def delete(
        self, kind: ResourceKind, namespace: str, name: str, timeout: Optional[float] = None
    ) -> bool:
        self._record("delete", kind.plural, namespace, name)
        return self._objects.pop((kind.plural, namespace, name), None) is not None
