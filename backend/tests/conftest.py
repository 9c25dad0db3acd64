"""
Shared test fixtures: settings, an in-memory Kubernetes API and an engine.
"""

import copy
from typing import Any, Callable

import pytest

from kubedeploy.config import Settings
from kubedeploy.exceptions import KubeApiError
from kubedeploy.services.k8s.reconcile import ReconcileEngine
from kubedeploy.services.k8s.resource_api import KubeResourceApi, ResourceKind
from kubedeploy.services.k8s.retry import RetryPolicy
from kubedeploy.services.k8s.templates import deep_merge

TEAM = "T1D2E3"
ENVIRONMENT = "production"
NAMESPACE = "rt1d2e3-0-production9"
HOST = "sdm.example.com"


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "environment": "",
        "deploy_mode": "cluster",
        "namespaces": [],
        "pod_namespace": None,
        "ingress_name": "atm-ingress",
        "default_host": None,
        "in_cluster": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_descriptor(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "name": "losgatos1",
        "teamId": TEAM,
        "environment": ENVIRONMENT,
        "image": "registry.example.com/losgatos1:1.0.0",
        "port": 8080,
        "path": "/losgatos1",
        "host": HOST,
    }
    data.update(overrides)
    return {k: v for k, v in data.items() if v is not None}


def ingress_object(*paths: tuple[str, str], host: str | None = HOST, version: str = "7") -> dict[str, Any]:
    """A stored shared ingress routing each (path, service) on one host."""
    rule: dict[str, Any] = {
        "http": {
            "paths": [
                {
                    "path": path,
                    "pathType": "ImplementationSpecific",
                    "backend": {"service": {"name": service, "port": {"number": 8080}}},
                }
                for path, service in paths
            ]
        }
    }
    if host:
        rule["host"] = host
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": {"name": "atm-ingress", "namespace": NAMESPACE, "resourceVersion": version},
        "spec": {"rules": [rule]},
    }


class FakeResourceApi(KubeResourceApi):
    """In-memory resource store recording every call in order.

    ``fail(verb, kind, *errors)`` queues errors raised by the next calls of
    that verb and kind. ``before(verb, kind, hook)`` runs ``hook(fake)`` once
    before the next such call, to interleave a concurrent writer.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.patches: list[tuple[str, str, dict[str, Any]]] = []
        self._failures: dict[tuple[str, str], list[Exception]] = {}
        self._hooks: dict[tuple[str, str], list[Callable[["FakeResourceApi"], None]]] = {}
        self._version = 100

    def put(self, kind: ResourceKind, namespace: str, name: str, body: dict[str, Any]) -> None:
        self.objects[(kind.value, namespace, name)] = copy.deepcopy(body)

    def stored(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any] | None:
        return self.objects.get((kind.value, namespace, name))

    def fail(self, verb: str, kind: ResourceKind, *errors: Exception) -> None:
        self._failures.setdefault((verb, kind.value), []).extend(errors)

    def before(self, verb: str, kind: ResourceKind, hook: Callable[["FakeResourceApi"], None]) -> None:
        self._hooks.setdefault((verb, kind.value), []).append(hook)

    def mutations(self) -> list[tuple[str, str]]:
        return [(verb, kind) for verb, kind, _ in self.calls if verb != "get"]

    def _enter(self, verb: str, kind: ResourceKind, name: str) -> None:
        self.calls.append((verb, kind.value, name))
        hooks = self._hooks.get((verb, kind.value))
        if hooks:
            hooks.pop(0)(self)
        failures = self._failures.get((verb, kind.value))
        if failures:
            raise failures.pop(0)

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    async def get(self, kind, namespace, name):
        self._enter("get", kind, name)
        obj = self.objects.get((kind.value, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    async def create(self, kind, namespace, body):
        name = body["metadata"]["name"]
        self._enter("create", kind, name)
        key = (kind.value, namespace, name)
        if key in self.objects:
            raise KubeApiError(f"creating {kind.value} {namespace}/{name} failed: 409 Conflict", status=409)
        stored = copy.deepcopy(body)
        stored["metadata"]["resourceVersion"] = self._next_version()
        self.objects[key] = stored
        return copy.deepcopy(stored)

    async def patch(self, kind, namespace, name, body):
        self._enter("patch", kind, name)
        key = (kind.value, namespace, name)
        current = self.objects.get(key)
        if current is None:
            raise KubeApiError(f"patching {kind.value} {namespace}/{name} failed: 404 Not Found", status=404)
        expected = (body.get("metadata") or {}).get("resourceVersion")
        if expected is not None and expected != current["metadata"].get("resourceVersion"):
            raise KubeApiError(f"patching {kind.value} {namespace}/{name} failed: 409 Conflict", status=409)
        self.patches.append((kind.value, name, copy.deepcopy(body)))
        merged = deep_merge(current, {k: v for k, v in body.items() if k != "metadata"})
        merged["metadata"]["resourceVersion"] = self._next_version()
        self.objects[key] = merged
        return copy.deepcopy(merged)

    async def delete(self, kind, namespace, name, resource_version=None):
        self._enter("delete", kind, name)
        key = (kind.value, namespace, name)
        current = self.objects.get(key)
        if current is None:
            return False
        if resource_version is not None and resource_version != current["metadata"].get("resourceVersion"):
            raise KubeApiError(f"deleting {kind.value} {namespace}/{name} failed: 409 Conflict", status=409)
        del self.objects[key]
        return True


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def fake_api() -> FakeResourceApi:
    return FakeResourceApi()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(max_retries=2, backoff_factor=3.0, min_delay=0.5, max_delay=5.0, jitter=False)


@pytest.fixture
def engine(fake_api, settings, policy, sleeper) -> ReconcileEngine:
    return ReconcileEngine(fake_api, settings, policy, sleep=sleeper)
