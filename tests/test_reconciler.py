"""
Tests for the reconciliation engine.

Runs ServiceReconciler against MemoryObjectStore, which enforces resource
versions, finalizer-gated deletion and ownerReference garbage collection.
"""

import dataclasses
from unittest.mock import MagicMock

import pytest

from httproute_controller.constants import (
    ANNOTATION_EXPOSE,
    ANNOTATION_GATEWAY,
    ANNOTATION_GATEWAY_NAMESPACE,
    ANNOTATION_HOSTNAME,
    ANNOTATION_PORT,
    ANNOTATION_SKIP_REFERENCE_GRANT,
    EVENT_TYPE_WARNING,
    FINALIZER,
    HTTP_ROUTE,
    REASON_HTTPROUTE_DELETED,
    REASON_HTTPROUTE_FAILED,
    REASON_HTTPROUTE_RECONCILED,
    REASON_REFERENCEGRANT_DELETED,
    REASON_REFERENCEGRANT_FAILED,
    REASON_REFERENCEGRANT_RECONCILED,
    REASON_REFERENCEGRANT_SKIPPED,
    REFERENCE_GRANT,
)
from httproute_controller.errors import (
    ConfigurationError,
    ConflictError,
    DeadlineExceeded,
    StoreError,
)
from httproute_controller.events import KubernetesEventRecorder
from httproute_controller.reconciler import (
    ResourceAction,
    ServiceReconciler,
    SourceState,
)
from httproute_controller.store import MemoryObjectStore

GATEWAY_NS = "envoy-gateway-system"


def finalizers_of(store, namespace="default", name="myapp"):
    service = store.get_service(namespace, name)
    return service["metadata"].get("finalizers") or []


def route_of(store, namespace="default", name="myapp", gateway_namespace=GATEWAY_NS):
    return store.get(HTTP_ROUTE, gateway_namespace, f"{namespace}-{name}")


def grant_of(store, namespace="default", name="myapp"):
    return store.get(REFERENCE_GRANT, namespace, f"{name}-backend")


@pytest.fixture
def active(store, reconciler, make_service, exposed_annotations):
    """A Service that has been reconciled once while exposed."""
    service = store.add_service(make_service(annotations=exposed_annotations))
    reconciler.reconcile("default", "myapp")
    return service


class TestConstruction:
    """The engine refuses to start without its defaults."""

    def test_requires_gateway_defaults(self, store):
        with pytest.raises(ConfigurationError):
            ServiceReconciler(store=store, defaults=None)


class TestActive:
    """Exposed Services get an HTTPRoute, a ReferenceGrant and the finalizer."""

    def test_creates_derived_resources(self, store, reconciler, recorder, make_service, exposed_annotations):
        service = store.add_service(make_service(annotations=exposed_annotations))

        result = reconciler.reconcile("default", "myapp")

        assert result.state == SourceState.ACTIVE
        assert result.route == ResourceAction.CREATED
        assert result.grant == ResourceAction.CREATED
        assert [f.name for f in dataclasses.fields(result)] == ["state", "route", "grant", "message"]

        route = route_of(store)
        assert route["spec"]["hostnames"] == ["myapp.example.org"]
        assert route["spec"]["parentRefs"][0]["name"] == "test-gateway"
        assert route["spec"]["rules"][0]["backendRefs"] == [
            {"name": "myapp", "namespace": "default", "port": 80}
        ]
        assert "ownerReferences" not in route["metadata"]

        grant = grant_of(store)
        owner = grant["metadata"]["ownerReferences"][0]
        assert owner["kind"] == "Service"
        assert owner["uid"] == service["metadata"]["uid"]
        assert grant["spec"]["from"][0]["namespace"] == GATEWAY_NS

        assert finalizers_of(store) == [FINALIZER]
        assert recorder.reasons() == [REASON_HTTPROUTE_RECONCILED, REASON_REFERENCEGRANT_RECONCILED]

    def test_idempotent(self, store, reconciler, recorder, active):
        """A second pass writes nothing and creates no duplicates."""
        route_before = route_of(store)
        grant_before = grant_of(store)
        writes_before = len(store.writes())
        recorder.clear()

        result = reconciler.reconcile("default", "myapp")

        assert result.route == ResourceAction.UNCHANGED
        assert result.grant == ResourceAction.UNCHANGED
        assert len(store.writes()) == writes_before
        assert route_of(store) == route_before
        assert grant_of(store) == grant_before
        assert len(store.objects(HTTP_ROUTE)) == 1
        assert len(store.objects(REFERENCE_GRANT)) == 1
        assert recorder.events == []

    def test_hostname_change_updates_in_place(self, store, reconciler, exposed_annotations, active):
        route_before = route_of(store)
        annotations = dict(exposed_annotations)
        annotations[ANNOTATION_HOSTNAME] = "b.example.org"
        store.set_annotations("default", "myapp", annotations)

        result = reconciler.reconcile("default", "myapp")

        assert result.route == ResourceAction.UPDATED
        route = route_of(store)
        assert route["spec"]["hostnames"] == ["b.example.org"]
        assert route["metadata"]["uid"] == route_before["metadata"]["uid"]
        assert len(store.objects(HTTP_ROUTE)) == 1

    def test_update_keeps_unrelated_metadata(self, store, reconciler, exposed_annotations, active):
        route = route_of(store)
        route["metadata"].setdefault("labels", {})["team"] = "platform"
        store.replace(HTTP_ROUTE, GATEWAY_NS, "default-myapp", route)
        annotations = dict(exposed_annotations)
        annotations[ANNOTATION_HOSTNAME] = "b.example.org"
        store.set_annotations("default", "myapp", annotations)

        reconciler.reconcile("default", "myapp")

        assert route_of(store)["metadata"]["labels"]["team"] == "platform"

    def test_removed_annotation_removed_from_spec(self, store, reconciler, exposed_annotations):
        """The spec is replaced wholesale, not merged."""
        annotations = dict(exposed_annotations)
        annotations.update({ANNOTATION_PORT: "8080", ANNOTATION_GATEWAY: "public"})
        store.add_service({
            "metadata": {"name": "myapp", "namespace": "default", "annotations": annotations},
            "spec": {"ports": [{"port": 80}]},
        })
        reconciler.reconcile("default", "myapp")
        assert route_of(store)["spec"]["rules"][0]["backendRefs"][0]["port"] == 8080

        store.set_annotations("default", "myapp", exposed_annotations)
        reconciler.reconcile("default", "myapp")

        spec = route_of(store)["spec"]
        assert spec["rules"][0]["backendRefs"][0]["port"] == 80
        assert spec["parentRefs"][0]["name"] == "test-gateway"

    def test_drifted_spec_is_restored(self, store, reconciler, active):
        route = route_of(store)
        route["spec"]["hostnames"] = ["hijacked.example.org"]
        store.replace(HTTP_ROUTE, GATEWAY_NS, "default-myapp", route)

        result = reconciler.reconcile("default", "myapp")

        assert result.route == ResourceAction.UPDATED
        assert route_of(store)["spec"]["hostnames"] == ["myapp.example.org"]

    def test_server_defaults_do_not_cause_writes(self, store, reconciler, active):
        route = route_of(store)
        route["spec"]["parentRefs"][0].update({"group": "gateway.networking.k8s.io", "kind": "Gateway"})
        route["spec"]["rules"][0]["backendRefs"][0]["weight"] = 1
        route["spec"]["rules"][0]["matches"] = [{"path": {"type": "PathPrefix", "value": "/"}}]
        store.replace(HTTP_ROUTE, GATEWAY_NS, "default-myapp", route)
        writes_before = len(store.writes())

        result = reconciler.reconcile("default", "myapp")

        assert result.route == ResourceAction.UNCHANGED
        assert len(store.writes()) == writes_before

    def test_server_defaults_replaced_when_spec_changes(self, store, reconciler, exposed_annotations, active):
        route = route_of(store)
        route["spec"]["rules"][0]["backendRefs"][0]["weight"] = 1
        store.replace(HTTP_ROUTE, GATEWAY_NS, "default-myapp", route)
        annotations = dict(exposed_annotations)
        annotations[ANNOTATION_HOSTNAME] = "b.example.org"
        store.set_annotations("default", "myapp", annotations)

        reconciler.reconcile("default", "myapp")

        assert "weight" not in route_of(store)["spec"]["rules"][0]["backendRefs"][0]

    @pytest.mark.parametrize("rule_field,value", [
        ("filters", [{"type": "RequestRedirect", "requestRedirect": {"hostname": "evil.example.org"}}]),
        ("matches", [{"path": {"type": "PathPrefix", "value": "/admin"}}]),
        ("timeouts", {"request": "1s"}),
    ])
    def test_extra_rule_field_removed(self, store, reconciler, recorder, active, rule_field, value):
        """Fields nobody asked for are dropped by the full spec replacement."""
        route = route_of(store)
        route["spec"]["rules"][0][rule_field] = value
        store.replace(HTTP_ROUTE, GATEWAY_NS, "default-myapp", route)
        recorder.clear()

        result = reconciler.reconcile("default", "myapp")

        assert result.route == ResourceAction.UPDATED
        assert rule_field not in route_of(store)["spec"]["rules"][0]
        assert recorder.reasons() == [REASON_HTTPROUTE_RECONCILED]

    def test_extra_backend_ref_field_removed(self, store, reconciler, active):
        route = route_of(store)
        route["spec"]["rules"][0]["backendRefs"][0]["weight"] = 50
        route["spec"]["rules"][0]["backendRefs"].append({"name": "other", "namespace": "default", "port": 80})
        store.replace(HTTP_ROUTE, GATEWAY_NS, "default-myapp", route)

        reconciler.reconcile("default", "myapp")

        assert route_of(store)["spec"]["rules"][0]["backendRefs"] == [
            {"name": "myapp", "namespace": "default", "port": 80}
        ]

    def test_gateway_namespace_change_removes_old_route(self, store, reconciler, recorder, exposed_annotations, active):
        annotations = dict(exposed_annotations)
        annotations[ANNOTATION_GATEWAY_NAMESPACE] = "edge"
        store.set_annotations("default", "myapp", annotations)
        recorder.clear()

        result = reconciler.reconcile("default", "myapp")

        assert result.route == ResourceAction.CREATED
        routes = store.objects(HTTP_ROUTE)
        assert [(r["metadata"]["namespace"], r["metadata"]["name"]) for r in routes] == [("edge", "default-myapp")]
        assert REASON_HTTPROUTE_DELETED in recorder.reasons()
        assert grant_of(store)["spec"]["from"][0]["namespace"] == "edge"

    def test_foreign_route_with_same_labels_kept(self, store, reconciler, active):
        """Only routes carrying the derived name count as stale."""
        foreign = route_of(store)
        foreign["metadata"] = {"name": "hand-made", "labels": foreign["metadata"]["labels"]}
        store.create(HTTP_ROUTE, "edge", foreign)

        reconciler.reconcile("default", "myapp")

        assert store.get(HTTP_ROUTE, "edge", "hand-made") is not None
    def test_skip_reference_grant(self, store, reconciler, recorder, make_service, exposed_annotations):
        annotations = dict(exposed_annotations)
        annotations[ANNOTATION_SKIP_REFERENCE_GRANT] = "true"
        store.add_service(make_service(annotations=annotations))

        result = reconciler.reconcile("default", "myapp")

        assert result.grant == ResourceAction.SKIPPED
        assert grant_of(store) is None
        assert route_of(store) is not None
        assert finalizers_of(store) == [FINALIZER]
        assert REASON_REFERENCEGRANT_SKIPPED in recorder.reasons()

    def test_same_name_in_two_namespaces(self, store, reconciler, make_service, exposed_annotations):
        store.add_service(make_service(namespace="default", annotations=exposed_annotations))
        store.add_service(make_service(namespace="staging", annotations=exposed_annotations))

        reconciler.reconcile("default", "myapp")
        reconciler.reconcile("staging", "myapp")

        names = sorted(r["metadata"]["name"] for r in store.objects(HTTP_ROUTE))
        assert names == ["default-myapp", "staging-myapp"]
        assert grant_of(store, namespace="default") is not None
        assert grant_of(store, namespace="staging") is not None

    def test_other_finalizers_preserved(self, store, reconciler, make_service, exposed_annotations):
        store.add_service(make_service(annotations=exposed_annotations, finalizers=["example.com/other"]))

        reconciler.reconcile("default", "myapp")

        assert finalizers_of(store) == ["example.com/other", FINALIZER]

    def test_concurrent_finalizer_not_overwritten(self, make_service, defaults, exposed_annotations):
        """The finalizer is added to a fresh copy, not to the one read at the start."""

        class BusyStore(MemoryObjectStore):
            def create(self, kind, namespace, body, timeout=None):
                created = super().create(kind, namespace, body, timeout)
                if kind == HTTP_ROUTE:
                    service = self._objects[("services", "default", "myapp")]
                    service["metadata"].setdefault("finalizers", []).append("example.com/other")
                    self._bump(service)
                return created

        store = BusyStore()
        store.add_service(make_service(annotations=exposed_annotations))
        ServiceReconciler(store=store, defaults=defaults).reconcile("default", "myapp")

        assert finalizers_of(store) == ["example.com/other", FINALIZER]


class TestInactive:
    """Withdrawn intent removes everything, including the finalizer."""

    def test_expose_false_cleans_up(self, store, reconciler, recorder, exposed_annotations, active):
        annotations = dict(exposed_annotations)
        annotations[ANNOTATION_EXPOSE] = "false"
        store.set_annotations("default", "myapp", annotations)
        recorder.clear()

        result = reconciler.reconcile("default", "myapp")

        assert result.state == SourceState.INACTIVE
        assert result.route == ResourceAction.DELETED
        assert result.grant == ResourceAction.DELETED
        assert store.objects(HTTP_ROUTE) == []
        assert store.objects(REFERENCE_GRANT) == []
        assert finalizers_of(store) == []
        assert recorder.reasons() == [REASON_HTTPROUTE_DELETED, REASON_REFERENCEGRANT_DELETED]

    def test_never_exposed_is_read_only(self, store, reconciler, make_service):
        store.add_service(make_service())

        result = reconciler.reconcile("default", "myapp")

        assert result.state == SourceState.INACTIVE
        assert result.route == ResourceAction.NONE
        assert store.writes() == []

    def test_cleanup_uses_annotated_gateway_namespace(self, store, reconciler, make_service, exposed_annotations):
        annotations = dict(exposed_annotations)
        annotations[ANNOTATION_GATEWAY_NAMESPACE] = "edge"
        store.add_service(make_service(annotations=annotations))
        reconciler.reconcile("default", "myapp")
        assert route_of(store, gateway_namespace="edge") is not None

        annotations[ANNOTATION_EXPOSE] = "false"
        store.set_annotations("default", "myapp", annotations)
        reconciler.reconcile("default", "myapp")

        assert store.objects(HTTP_ROUTE) == []

    def test_cleanup_falls_back_to_default_namespace(self, store, reconciler, active):
        """All annotations removed at once: the route is found under the default namespace."""
        store.set_annotations("default", "myapp", {})

        reconciler.reconcile("default", "myapp")

        assert store.objects(HTTP_ROUTE) == []
        assert finalizers_of(store) == []

    def test_round_trip_reproduces_specs(self, store, reconciler, exposed_annotations, active):
        route_spec = route_of(store)["spec"]
        grant_before = grant_of(store)

        store.set_annotations("default", "myapp", {ANNOTATION_EXPOSE: "false"})
        reconciler.reconcile("default", "myapp")
        store.set_annotations("default", "myapp", exposed_annotations)
        reconciler.reconcile("default", "myapp")

        assert route_of(store)["spec"] == route_spec
        grant = grant_of(store)
        assert grant["spec"] == grant_before["spec"]
        assert grant["metadata"]["ownerReferences"] == grant_before["metadata"]["ownerReferences"]


class TestInvalidConfig:
    """Invalid annotations are reported and change nothing."""

    def test_missing_hostname(self, store, reconciler, recorder, make_service):
        store.add_service(make_service(annotations={ANNOTATION_EXPOSE: "true"}))

        result = reconciler.reconcile("default", "myapp")

        assert result.state == SourceState.INVALID_CONFIG
        assert result.message == "hostname missing"
        assert store.writes() == []
        assert finalizers_of(store) == []
        event = recorder.events[0]
        assert event.event_type == EVENT_TYPE_WARNING
        assert event.reason == REASON_HTTPROUTE_FAILED
        assert "hostname missing" in event.message

    def test_no_port(self, store, reconciler, make_service, exposed_annotations):
        store.add_service(make_service(annotations=exposed_annotations, ports=()))

        result = reconciler.reconcile("default", "myapp")

        assert result.state == SourceState.INVALID_CONFIG
        assert result.message == "no port resolvable"
        assert store.writes() == []

    def test_existing_resources_left_alone(self, store, reconciler, active):
        store.set_annotations("default", "myapp", {ANNOTATION_EXPOSE: "true"})
        writes_before = len(store.writes())

        result = reconciler.reconcile("default", "myapp")

        assert result.state == SourceState.INVALID_CONFIG
        assert len(store.writes()) == writes_before
        assert route_of(store) is not None
        assert finalizers_of(store) == [FINALIZER]


class TestDeleting:
    """Deletion runs cleanup before the finalizer is released."""

    def test_cleanup_before_finalizer_release(self, store, reconciler, recorder, make_service, exposed_annotations):
        store.add_service(make_service(namespace="apps", annotations=exposed_annotations))
        reconciler.reconcile("apps", "myapp")
        store.request_deletion("apps", "myapp")
        assert store.get_service("apps", "myapp") is not None
        recorder.clear()
        store.calls.clear()

        result = reconciler.reconcile("apps", "myapp")

        assert result.state == SourceState.DELETING
        assert result.route == ResourceAction.DELETED
        assert result.grant == ResourceAction.DELETED
        assert store.objects(HTTP_ROUTE) == []
        assert store.objects(REFERENCE_GRANT) == []
        assert store.get_service("apps", "myapp") is None

        ops = [(c[0], c[1]) for c in store.writes()]
        assert ops.index(("delete", "httproutes")) < ops.index(("patch", "services"))
        assert recorder.reasons() == [REASON_HTTPROUTE_DELETED, REASON_REFERENCEGRANT_DELETED]

    def test_finalizer_not_held(self, store, reconciler, make_service):
        store.add_service(make_service(finalizers=["example.com/other"]))
        store.request_deletion("default", "myapp")

        result = reconciler.reconcile("default", "myapp")

        assert result.state == SourceState.DELETING
        assert store.writes() == []

    def test_deleting_wins_over_invalid_annotations(self, store, reconciler, active):
        store.set_annotations("default", "myapp", {ANNOTATION_EXPOSE: "true"})
        store.request_deletion("default", "myapp")

        result = reconciler.reconcile("default", "myapp")

        assert result.state == SourceState.DELETING
        assert store.objects(HTTP_ROUTE) == []

    def test_service_gone(self, store, reconciler):
        result = reconciler.reconcile("default", "missing")

        assert result.state == SourceState.GONE
        assert store.writes() == []


class TestFailures:
    """Retryable failures propagate; the next pass completes the work."""

    def test_grant_failure_then_recovery(self, store, reconciler, recorder, make_service, exposed_annotations):
        store.add_service(make_service(annotations=exposed_annotations))
        store.fail_next("create", "referencegrants", StoreError("create ReferenceGrant: 500", status=500))

        with pytest.raises(StoreError):
            reconciler.reconcile("default", "myapp")

        assert route_of(store) is not None
        assert grant_of(store) is None
        assert finalizers_of(store) == []
        assert recorder.reasons() == [REASON_HTTPROUTE_RECONCILED, REASON_REFERENCEGRANT_FAILED]

        result = reconciler.reconcile("default", "myapp")

        assert result.route == ResourceAction.UNCHANGED
        assert result.grant == ResourceAction.CREATED
        assert finalizers_of(store) == [FINALIZER]

    def test_route_failure_creates_nothing_else(self, store, reconciler, recorder, make_service, exposed_annotations):
        store.add_service(make_service(annotations=exposed_annotations))
        store.fail_next("create", "httproutes", StoreError("create HTTPRoute: 503", status=503))

        with pytest.raises(StoreError):
            reconciler.reconcile("default", "myapp")

        assert store.objects(HTTP_ROUTE) == []
        assert store.objects(REFERENCE_GRANT) == []
        assert recorder.reasons() == [REASON_HTTPROUTE_FAILED]

    def test_crash_before_finalizer(self, store, reconciler, make_service, exposed_annotations):
        store.add_service(make_service(annotations=exposed_annotations))
        store.fail_next("patch", "services", StoreError("patch Service: 500", status=500))

        with pytest.raises(StoreError):
            reconciler.reconcile("default", "myapp")

        result = reconciler.reconcile("default", "myapp")

        assert result.route == ResourceAction.UNCHANGED
        assert result.grant == ResourceAction.UNCHANGED
        assert finalizers_of(store) == [FINALIZER]

    def test_conflict_is_not_retried_in_process(self, store, reconciler, exposed_annotations, active):
        annotations = dict(exposed_annotations)
        annotations[ANNOTATION_HOSTNAME] = "b.example.org"
        store.set_annotations("default", "myapp", annotations)
        store.fail_next("replace", "httproutes", ConflictError("replace HTTPRoute: conflict"))

        with pytest.raises(ConflictError):
            reconciler.reconcile("default", "myapp")

        replaces = [c for c in store.calls if c[0] == "replace" and c[1] == "httproutes"]
        assert len(replaces) == 1

        result = reconciler.reconcile("default", "myapp")
        assert result.route == ResourceAction.UPDATED

    def test_cleanup_delete_failure_keeps_finalizer(self, store, reconciler, active):
        store.set_annotations("default", "myapp", {})
        store.fail_next("delete", "httproutes", StoreError("delete HTTPRoute: 500", status=500))

        with pytest.raises(StoreError):
            reconciler.reconcile("default", "myapp")

        assert finalizers_of(store) == [FINALIZER]

    def test_expired_deadline(self, store, reconciler, make_service, exposed_annotations):
        store.add_service(make_service(annotations=exposed_annotations))

        with pytest.raises(DeadlineExceeded):
            reconciler.reconcile("default", "myapp", timeout=0)

        assert store.calls == []

    def test_service_deleted_mid_reconcile(self, make_service, defaults, exposed_annotations):
        """A Service that vanishes before holding the finalizer leaves no HTTPRoute behind."""

        class VanishingStore(MemoryObjectStore):
            def create(self, kind, namespace, body, timeout=None):
                created = super().create(kind, namespace, body, timeout)
                if kind == REFERENCE_GRANT:
                    self.request_deletion("default", "myapp")
                return created

        store = VanishingStore()
        store.add_service(make_service(annotations=exposed_annotations))

        ServiceReconciler(store=store, defaults=defaults).reconcile("default", "myapp")

        assert store.objects(HTTP_ROUTE) == []
        assert store.objects(REFERENCE_GRANT) == []

    def test_event_failures_do_not_fail_reconcile(self, store, defaults, make_service, exposed_annotations):
        core_api = MagicMock()
        core_api.create_namespaced_event.side_effect = RuntimeError("events unavailable")
        reconciler = ServiceReconciler(
            store=store, defaults=defaults, recorder=KubernetesEventRecorder(core_api)
        )
        store.add_service(make_service(annotations=exposed_annotations))

        result = reconciler.reconcile("default", "myapp")

        assert result.state == SourceState.ACTIVE
        assert core_api.create_namespaced_event.called

    @pytest.mark.parametrize("annotations,expected_state", [
        ({ANNOTATION_EXPOSE: "true", ANNOTATION_HOSTNAME: "myapp.example.org"}, SourceState.ACTIVE),
        ({ANNOTATION_EXPOSE: "true"}, SourceState.INVALID_CONFIG),
    ])
    def test_raising_recorder_does_not_fail_reconcile(self, store, defaults, make_service, annotations, expected_state):
        recorder = MagicMock()
        recorder.record.side_effect = RuntimeError("sink down")
        reconciler = ServiceReconciler(store=store, defaults=defaults, recorder=recorder)
        store.add_service(make_service(annotations=annotations))

        result = reconciler.reconcile("default", "myapp")

        assert result.state == expected_state
        assert recorder.record.called

    def test_raising_recorder_during_cleanup(self, store, defaults, make_service, exposed_annotations):
        store.add_service(make_service(annotations=exposed_annotations))
        ServiceReconciler(store=store, defaults=defaults).reconcile("default", "myapp")
        recorder = MagicMock()
        recorder.record.side_effect = RuntimeError("sink down")
        store.set_annotations("default", "myapp", {})

        result = ServiceReconciler(store=store, defaults=defaults, recorder=recorder).reconcile("default", "myapp")

        assert result.route == ResourceAction.DELETED
        assert finalizers_of(store) == []
