from __future__ import annotations

import abc
import asyncio
import enum
from collections.abc import Callable
from typing import Any

import structlog
from kubernetes import client, config
from kubernetes.client import ApiClient
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from kubedeploy.config import Settings, get_settings
from kubedeploy.exceptions import KubeApiError

logger = structlog.get_logger(__name__)


class ResourceKind(str, enum.Enum):
    NAMESPACE = "namespace"
    SERVICE = "service"
    DEPLOYMENT = "deployment"
    INGRESS = "ingress"


class KubeResourceApi(abc.ABC):
    """Get/create/patch/delete of the resource kinds an application owns.

    Resources travel as JSON-like dicts in Kubernetes wire form. ``get``
    distinguishes absence (None) from failure (``KubeApiError``); ``delete``
    reports whether anything was deleted.
    """

    @abc.abstractmethod
    async def get(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any] | None: ...

    @abc.abstractmethod
    async def create(self, kind: ResourceKind, namespace: str, body: dict[str, Any]) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def patch(self, kind: ResourceKind, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def delete(
        self, kind: ResourceKind, namespace: str, name: str, resource_version: str | None = None
    ) -> bool:
        """Delete a resource, False when it was already gone.

        With ``resource_version`` the deletion only happens if the resource is
        unchanged since it was read; otherwise a conflict ``KubeApiError`` is raised.
        """


class KubernetesResourceApi(KubeResourceApi):
    """KubeResourceApi backed by the official Kubernetes Python client."""

    def __init__(self, settings: Settings | None = None, api_client: ApiClient | None = None) -> None:
        self.settings = settings or get_settings()
        self._client_lock = asyncio.Lock()
        self._api_client: ApiClient | None = api_client
        self._apis: dict[ResourceKind, Any] | None = None
        if api_client is not None:
            self._apis = self._build_apis(api_client)

    async def get(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any] | None:
        api = await self._api(kind)
        try:
            obj = await self._call(kind, "read", api, name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise self._error("reading", kind, namespace, name, exc) from exc
        return self._serialize(obj)

    async def create(self, kind: ResourceKind, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        api = await self._api(kind)
        name = (body.get("metadata") or {}).get("name", "")
        try:
            obj = await self._call(kind, "create", api, namespace=namespace, body=body)
        except ApiException as exc:
            raise self._error("creating", kind, namespace, name, exc) from exc
        logger.info("kubernetes.created", kind=kind.value, namespace=namespace, name=name)
        return self._serialize(obj)

    async def patch(self, kind: ResourceKind, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        api = await self._api(kind)
        try:
            obj = await self._call(kind, "patch", api, name=name, namespace=namespace, body=body)
        except ApiException as exc:
            raise self._error("patching", kind, namespace, name, exc) from exc
        logger.info("kubernetes.patched", kind=kind.value, namespace=namespace, name=name)
        return self._serialize(obj)

    async def delete(
        self, kind: ResourceKind, namespace: str, name: str, resource_version: str | None = None
    ) -> bool:
        api = await self._api(kind)
        kwargs: dict[str, Any] = {"propagation_policy": "Background"}
        if resource_version:
            kwargs["body"] = client.V1DeleteOptions(
                preconditions=client.V1Preconditions(resource_version=resource_version),
            )
        try:
            await self._call(kind, "delete", api, name=name, namespace=namespace, **kwargs)
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise self._error("deleting", kind, namespace, name, exc) from exc
        logger.info("kubernetes.deleted", kind=kind.value, namespace=namespace, name=name)
        return True

    async def _call(self, kind: ResourceKind, verb: str, api: Any, **kwargs: Any) -> Any:
        if kind is ResourceKind.NAMESPACE:
            # namespaces are cluster scoped
            kwargs.pop("namespace", None)
            method: Callable[..., Any] = getattr(api, f"{verb}_namespace")
        else:
            method = getattr(api, f"{verb}_namespaced_{kind.value}")
        return await asyncio.to_thread(lambda: method(**kwargs))

    @staticmethod
    def _error(action: str, kind: ResourceKind, namespace: str, name: str, exc: ApiException) -> KubeApiError:
        reason = exc.reason or "error"
        return KubeApiError(
            f"{action} {kind.value} {namespace}/{name} failed: {exc.status} {reason}",
            status=exc.status,
        )

    def _serialize(self, obj: Any) -> dict[str, Any]:
        api_client = self._api_client or ApiClient()
        data = api_client.sanitize_for_serialization(obj)
        return data if isinstance(data, dict) else {}

    async def _api(self, kind: ResourceKind) -> Any:
        apis = await self._ensure_clients()
        return apis[kind]

    @staticmethod
    def _build_apis(api_client: ApiClient) -> dict[ResourceKind, Any]:
        core = client.CoreV1Api(api_client)
        return {
            ResourceKind.NAMESPACE: core,
            ResourceKind.SERVICE: core,
            ResourceKind.DEPLOYMENT: client.AppsV1Api(api_client),
            ResourceKind.INGRESS: client.NetworkingV1Api(api_client),
        }

    async def _ensure_clients(self) -> dict[ResourceKind, Any]:
        if self._apis:
            return self._apis

        async with self._client_lock:
            if self._apis:
                return self._apis

            def _load() -> ApiClient:
                try:
                    if self.settings.in_cluster:
                        config.load_incluster_config()
                    else:
                        config.load_kube_config(
                            config_file=self.settings.kube_config_path,
                            context=self.settings.kube_context,
                        )
                except ConfigException as exc:
                    logger.warning("kubernetes.config_missing", error=str(exc))
                return client.ApiClient()

            self._api_client = await asyncio.to_thread(_load)
            self._apis = self._build_apis(self._api_client)
            return self._apis
