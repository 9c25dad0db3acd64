"""
Tests for the reconcile engine against an in-memory Kubernetes API.
"""

import asyncio

import pytest

from conftest import HOST, NAMESPACE, ingress_object, make_descriptor, make_settings
from kubedeploy.exceptions import (
    AggregateDeleteError,
    DescriptorValidationError,
    KubeApiError,
    RetryExhaustedError,
    RouteConflictError,
)
from kubedeploy.services.k8s.reconcile import DeleteOutcome, ReconcileEngine, reduce_outcomes
from kubedeploy.services.k8s.resource_api import ResourceKind

LABEL = f"{NAMESPACE}/losgatos1"


def ingress_paths(fake):
    ing = fake.stored(ResourceKind.INGRESS, NAMESPACE, "atm-ingress")
    return [(p["path"], p["backend"]["service"]["name"]) for r in ing["spec"]["rules"] for p in r["http"]["paths"]]


def seed_application(fake, with_service=True):
    """Resources left behind by an earlier upsert of the standard descriptor."""
    fake.put(ResourceKind.NAMESPACE, NAMESPACE, NAMESPACE, {"metadata": {"name": NAMESPACE}})
    if with_service:
        fake.put(ResourceKind.SERVICE, NAMESPACE, "losgatos1", {"metadata": {"name": "losgatos1"}})
    fake.put(ResourceKind.DEPLOYMENT, NAMESPACE, "losgatos1", {"metadata": {"name": "losgatos1"}})


class TestUpsert:
    def test_creates_in_order(self, engine, fake_api):
        asyncio.run(engine.upsert_application(make_descriptor()))
        assert fake_api.calls == [
            ("get", "namespace", NAMESPACE),
            ("create", "namespace", NAMESPACE),
            ("get", "service", "losgatos1"),
            ("create", "service", "losgatos1"),
            ("get", "deployment", "losgatos1"),
            ("create", "deployment", "losgatos1"),
            ("get", "ingress", "atm-ingress"),
            ("create", "ingress", "atm-ingress"),
        ]
        assert ingress_paths(fake_api) == [("/losgatos1", "losgatos1")]

    def test_without_port_skips_service_and_ingress(self, engine, fake_api):
        asyncio.run(engine.upsert_application(make_descriptor(port=None, path=None)))
        assert fake_api.mutations() == [("create", "namespace"), ("create", "deployment")]

    def test_redeploy_patches_image_only(self, engine, fake_api):
        asyncio.run(engine.upsert_application(make_descriptor()))
        fake_api.calls.clear()

        asyncio.run(engine.upsert_application(make_descriptor(image="registry.example.com/losgatos1:2.0.0")))

        assert fake_api.mutations() == [("patch", "deployment")]
        kind, name, body = fake_api.patches[-1]
        assert (kind, name) == ("deployment", "losgatos1")
        container = body["spec"]["template"]["spec"]["containers"][0]
        assert container == {"name": "losgatos1", "image": "registry.example.com/losgatos1:2.0.0"}

    def test_redeploy_with_container_overlay_rolls_out_image(self, engine, fake_api):
        asyncio.run(engine.upsert_application(make_descriptor()))
        env = [{"name": "LOG_LEVEL", "value": "debug"}]
        overlay = {"spec": {"template": {"spec": {"containers": [{"name": "losgatos1", "env": env}]}}}}

        asyncio.run(engine.upsert_application(make_descriptor(image="img:2", deploymentSpec=overlay)))

        kind, _, body = fake_api.patches[-1]
        assert kind == "deployment"
        assert body["spec"]["template"]["spec"]["containers"] == [{"name": "losgatos1", "env": env, "image": "img:2"}]

    def test_switch_to_https_adds_tls(self, engine, fake_api):
        asyncio.run(engine.upsert_application(make_descriptor()))
        asyncio.run(engine.upsert_application(make_descriptor(protocol="https", tlsSecret="sdm-tls")))

        ing = fake_api.stored(ResourceKind.INGRESS, NAMESPACE, "atm-ingress")
        assert ing["spec"]["tls"] == [{"hosts": [HOST], "secretName": "sdm-tls"}]
        assert ingress_paths(fake_api) == [("/losgatos1", "losgatos1")]

    def test_service_overlay_patched_on_redeploy(self, engine, fake_api):
        seed_application(fake_api)
        asyncio.run(engine.upsert_application(make_descriptor(path=None, serviceSpec={"spec": {"type": "ClusterIP"}})))
        assert ("patch", "service") in fake_api.mutations()

    def test_adds_path_to_shared_ingress(self, engine, fake_api):
        fake_api.put(ResourceKind.INGRESS, NAMESPACE, "atm-ingress", ingress_object(("/other", "other")))
        asyncio.run(engine.upsert_application(make_descriptor()))

        assert ingress_paths(fake_api) == [("/other", "other"), ("/losgatos1", "losgatos1")]
        kind, _, body = fake_api.patches[-1]
        assert kind == "ingress"
        assert body["metadata"] == {"resourceVersion": "7"}

    def test_existing_route_is_noop(self, engine, fake_api):
        fake_api.put(ResourceKind.INGRESS, NAMESPACE, "atm-ingress", ingress_object(("/losgatos1", "losgatos1")))
        asyncio.run(engine.upsert_application(make_descriptor()))
        assert ("patch", "ingress") not in fake_api.mutations()

    def test_route_conflict_not_retried(self, engine, fake_api, sleeper):
        fake_api.put(ResourceKind.INGRESS, NAMESPACE, "atm-ingress", ingress_object(("/losgatos1", "someone-else")))
        with pytest.raises(RouteConflictError) as info:
            asyncio.run(engine.upsert_application(make_descriptor()))
        assert str(info.value).startswith(f"upserting {LABEL}: ingress path {HOST}/losgatos1")
        assert fake_api.calls.count(("get", "ingress", "atm-ingress")) == 1
        assert sleeper.delays == []

    def test_concurrent_ingress_writer_is_merged(self, engine, fake_api):
        """A stale resourceVersion forces a fresh read, so no route is lost."""
        fake_api.put(ResourceKind.INGRESS, NAMESPACE, "atm-ingress", ingress_object(("/a", "a")))

        def concurrent_writer(fake):
            fake.put(
                ResourceKind.INGRESS, NAMESPACE, "atm-ingress", ingress_object(("/a", "a"), ("/b", "b"), version="8")
            )

        fake_api.before("patch", ResourceKind.INGRESS, concurrent_writer)
        asyncio.run(engine.upsert_application(make_descriptor()))

        assert ingress_paths(fake_api) == [("/a", "a"), ("/b", "b"), ("/losgatos1", "losgatos1")]
        assert fake_api.calls.count(("get", "ingress", "atm-ingress")) == 2

    def test_failure_aborts_with_breadcrumb(self, engine, fake_api):
        fake_api.fail("create", ResourceKind.DEPLOYMENT, *(KubeApiError("boom", status=500) for _ in range(3)))

        with pytest.raises(RetryExhaustedError) as info:
            asyncio.run(engine.upsert_application(make_descriptor()))

        assert str(info.value) == f"upserting {LABEL}: creating deployment {LABEL}: boom"
        assert not any(kind == "ingress" for _, kind, _ in fake_api.calls)
        # no rollback of the earlier steps
        assert fake_api.stored(ResourceKind.NAMESPACE, NAMESPACE, NAMESPACE) is not None
        assert fake_api.stored(ResourceKind.SERVICE, NAMESPACE, "losgatos1") is not None

    def test_transient_failure_recovers(self, engine, fake_api, sleeper):
        fake_api.fail("create", ResourceKind.SERVICE, KubeApiError("timeout"))
        asyncio.run(engine.upsert_application(make_descriptor()))
        assert fake_api.stored(ResourceKind.SERVICE, NAMESPACE, "losgatos1") is not None
        assert sleeper.delays == [0.5]

    def test_read_failure_is_not_absence(self, engine, fake_api):
        fake_api.fail("get", ResourceKind.SERVICE, KubeApiError("reading service failed: 403 Forbidden", status=403))
        with pytest.raises(KubeApiError):
            asyncio.run(engine.upsert_application(make_descriptor()))
        assert ("create", "service") not in fake_api.mutations()

    def test_namespace_created_concurrently(self, engine, fake_api):
        fake_api.fail("create", ResourceKind.NAMESPACE, KubeApiError("already exists", status=409))
        asyncio.run(engine.upsert_application(make_descriptor()))
        assert fake_api.calls.count(("create", "namespace", NAMESPACE)) == 1
        assert fake_api.stored(ResourceKind.DEPLOYMENT, NAMESPACE, "losgatos1") is not None


class TestValidation:
    def test_invalid_descriptor_makes_no_calls(self, engine, fake_api):
        with pytest.raises(DescriptorValidationError):
            asyncio.run(engine.upsert_application(make_descriptor(port=None)))
        assert fake_api.calls == []

    def test_environment_mismatch(self, fake_api, policy, sleeper):
        engine = ReconcileEngine(fake_api, make_settings(environment="staging"), policy, sleep=sleeper)
        with pytest.raises(DescriptorValidationError, match="does not match"):
            asyncio.run(engine.upsert_application(make_descriptor()))
        assert fake_api.calls == []

    def test_namespace_mode_requires_pod_namespace(self, fake_api, policy, sleeper):
        engine = ReconcileEngine(fake_api, make_settings(deploy_mode="namespace"), policy, sleep=sleeper)
        with pytest.raises(DescriptorValidationError, match="POD_NAMESPACE"):
            asyncio.run(engine.upsert_application(make_descriptor()))
        assert fake_api.calls == []

    def test_namespace_mode_scope(self, fake_api, policy, sleeper):
        settings = make_settings(deploy_mode="namespace", pod_namespace="apps")
        engine = ReconcileEngine(fake_api, settings, policy, sleep=sleeper)
        with pytest.raises(DescriptorValidationError, match="outside"):
            asyncio.run(engine.upsert_application(make_descriptor()))

        asyncio.run(engine.upsert_application(make_descriptor(ns="apps")))
        assert fake_api.stored(ResourceKind.DEPLOYMENT, "apps", "losgatos1") is not None

    def test_namespace_allow_list(self, fake_api, policy, sleeper):
        engine = ReconcileEngine(fake_api, make_settings(namespaces=["apps"]), policy, sleep=sleeper)
        with pytest.raises(DescriptorValidationError, match="managed namespaces"):
            asyncio.run(engine.delete_application({"name": "losgatos1", "ns": "other"}))
        assert fake_api.calls == []


class TestDelete:
    def test_missing_service_still_succeeds(self, engine, fake_api):
        seed_application(fake_api, with_service=False)
        fake_api.put(
            ResourceKind.INGRESS,
            NAMESPACE,
            "atm-ingress",
            ingress_object(("/other", "other"), ("/losgatos1", "losgatos1")),
        )

        asyncio.run(engine.delete_application(make_descriptor()))

        assert fake_api.stored(ResourceKind.DEPLOYMENT, NAMESPACE, "losgatos1") is None
        assert ingress_paths(fake_api) == [("/other", "other")]
        assert ("delete", "service") in fake_api.mutations()

    def test_last_route_deletes_ingress(self, engine, fake_api):
        seed_application(fake_api)
        fake_api.put(ResourceKind.INGRESS, NAMESPACE, "atm-ingress", ingress_object(("/losgatos1", "losgatos1")))

        asyncio.run(engine.delete_application(make_descriptor()))

        assert fake_api.stored(ResourceKind.INGRESS, NAMESPACE, "atm-ingress") is None
        assert fake_api.stored(ResourceKind.SERVICE, NAMESPACE, "losgatos1") is None

    def test_route_added_before_ingress_delete_survives(self, engine, fake_api):
        """A route registered between the read and the delete keeps the ingress alive."""
        seed_application(fake_api)
        fake_api.put(ResourceKind.INGRESS, NAMESPACE, "atm-ingress", ingress_object(("/losgatos1", "losgatos1")))

        def concurrent_writer(fake):
            fake.put(
                ResourceKind.INGRESS,
                NAMESPACE,
                "atm-ingress",
                ingress_object(("/losgatos1", "losgatos1"), ("/other", "other"), version="8"),
            )

        fake_api.before("delete", ResourceKind.INGRESS, concurrent_writer)
        asyncio.run(engine.delete_application(make_descriptor()))

        assert ingress_paths(fake_api) == [("/other", "other")]
        assert fake_api.calls.count(("get", "ingress", "atm-ingress")) == 2

    def test_nothing_left_is_success(self, engine, fake_api):
        asyncio.run(engine.delete_application({"name": "losgatos1", "teamId": "T1D2E3", "environment": "production"}))
        assert fake_api.mutations() == [("delete", "service"), ("delete", "deployment")]

    def test_without_path_skips_ingress(self, engine, fake_api):
        seed_application(fake_api)
        asyncio.run(engine.delete_application({"name": "losgatos1", "ns": NAMESPACE}))
        assert not any(kind == "ingress" for _, kind, _ in fake_api.calls)

    def test_failures_are_aggregated(self, engine, fake_api):
        seed_application(fake_api)
        fake_api.fail("delete", ResourceKind.SERVICE, *(KubeApiError("svc down") for _ in range(3)))
        fake_api.fail("delete", ResourceKind.DEPLOYMENT, *(KubeApiError("dep down") for _ in range(3)))

        with pytest.raises(AggregateDeleteError) as info:
            asyncio.run(engine.delete_application(make_descriptor()))

        err = info.value
        assert err.details["code"] == 2
        assert err.failed == [f"service {LABEL}", f"deployment {LABEL}"]
        assert str(err) == (
            f"deleting {LABEL}: deleting service {LABEL}: svc down; deleting deployment {LABEL}: dep down"
        )

    def test_foreign_route_is_a_failure(self, engine, fake_api):
        seed_application(fake_api)
        fake_api.put(ResourceKind.INGRESS, NAMESPACE, "atm-ingress", ingress_object(("/losgatos1", "someone-else")))

        with pytest.raises(AggregateDeleteError) as info:
            asyncio.run(engine.delete_application(make_descriptor()))

        assert info.value.failed == [f"ingress {NAMESPACE}/atm-ingress"]
        assert ingress_paths(fake_api) == [("/losgatos1", "someone-else")]
        # the other deletions still ran
        assert fake_api.stored(ResourceKind.DEPLOYMENT, NAMESPACE, "losgatos1") is None


class TestReduceOutcomes:
    def test_sums_codes_and_joins_messages(self):
        total = reduce_outcomes([DeleteOutcome("a"), DeleteOutcome("b", 1, "x"), DeleteOutcome("c", 1, "y")])
        assert total.code == 2
        assert total.message == "x; y"

    def test_all_success(self):
        total = reduce_outcomes([DeleteOutcome("a"), DeleteOutcome("b")])
        assert total.code == 0
        assert total.message is None
