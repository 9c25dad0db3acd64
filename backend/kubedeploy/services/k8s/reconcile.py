from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from kubedeploy.config import Settings, get_settings
from kubedeploy.core.request_context import application_var
from kubedeploy.exceptions import (
    AggregateDeleteError,
    DescriptorValidationError,
    KubeApiError,
    ReconcileError,
)
from kubedeploy.schemas.application import ApplicationDescriptor, ApplicationRef, load_descriptor, load_ref

from . import ingress_rules
from .ingress_rules import IngressAction, IngressPath
from .naming import endpoint_url
from .resource_api import KubeResourceApi, ResourceKind
from .retry import RetryPolicy, retry
from .templates import ResourceTemplates

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class DeleteOutcome:
    """Result of one sub-deletion: code 0 is success."""

    step: str
    code: int = 0
    message: str | None = None


def reduce_outcomes(outcomes: Iterable[DeleteOutcome]) -> DeleteOutcome:
    """Sum the codes and join the messages of several outcomes."""
    code = 0
    messages: list[str] = []
    steps: list[str] = []
    for outcome in outcomes:
        code += outcome.code
        steps.append(outcome.step)
        if outcome.message:
            messages.append(outcome.message)
    return DeleteOutcome(step=", ".join(steps), code=code, message="; ".join(messages) or None)


class ReconcileEngine:
    """Creates, updates and removes the resources of one application.

    Upsert walks namespace, service, deployment and ingress in that order and
    stops at the first failure, leaving earlier resources in place. Delete
    removes the ingress route, service and deployment concurrently and
    reports every failure at once.
    """

    def __init__(
        self,
        api: KubeResourceApi,
        settings: Settings | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.api = api
        self.settings = settings or get_settings()
        self.policy = policy or RetryPolicy.from_settings(self.settings)
        self.templates = ResourceTemplates(self.settings)
        self._sleep = sleep

    # ---------------------------
    # Validation
    # ---------------------------

    def validate(self, descriptor: ApplicationDescriptor | dict[str, Any] | str) -> ApplicationDescriptor:
        d = load_descriptor(descriptor)
        self._check_scope(d)
        return d

    def _check_scope(self, ref: ApplicationRef) -> None:
        s = self.settings
        if s.environment and ref.environment and ref.environment != s.environment:
            raise DescriptorValidationError(
                f"application environment '{ref.environment}' does not match this deployer's "
                f"environment '{s.environment}'"
            )
        ns = ref.target_namespace
        if s.deploy_mode == "namespace":
            if not s.pod_namespace:
                raise DescriptorValidationError(
                    "running in namespace-scoped mode and the POD_NAMESPACE environment variable is not set"
                )
            if ns != s.pod_namespace:
                raise DescriptorValidationError(
                    f"namespace '{ns}' is outside the namespace '{s.pod_namespace}' this deployer manages"
                )
        elif s.namespaces and ns not in s.namespaces:
            raise DescriptorValidationError(f"namespace '{ns}' is not in the list of managed namespaces")

    def endpoint(self, d: ApplicationDescriptor) -> str | None:
        entry = self.templates.ingress_entry(d)
        if entry is None:
            return None
        return endpoint_url(entry.host, entry.path, d.protocol)

    # ---------------------------
    # Upsert
    # ---------------------------

    async def upsert_application(self, descriptor: ApplicationDescriptor | dict[str, Any] | str) -> None:
        d = self.validate(descriptor)
        token = application_var.set(d.label)
        try:
            logger.info("reconcile.upsert", application=d.label, image=d.image)
            await self._upsert_namespace(d)
            if d.port is not None:
                await self._upsert_service(d)
            await self._upsert_deployment(d)
            entry = self.templates.ingress_entry(d)
            if entry is not None:
                await self._upsert_ingress(d, entry)
        except ReconcileError as exc:
            raise exc.prefix(f"upserting {d.label}")
        finally:
            application_var.reset(token)

    async def _upsert_namespace(self, d: ApplicationDescriptor) -> None:
        ns = d.target_namespace
        if await self._read(ResourceKind.NAMESPACE, ns, ns) is not None:
            logger.debug("reconcile.namespace_exists", namespace=ns)
            return

        body = self.templates.namespace(d)

        async def _create() -> None:
            try:
                await self.api.create(ResourceKind.NAMESPACE, ns, body)
            except KubeApiError as exc:
                # created by someone else since the read
                if not exc.is_conflict:
                    raise

        await self._mutate(_create, f"creating namespace {ns}")

    async def _upsert_service(self, d: ApplicationDescriptor) -> None:
        ns, name = d.target_namespace, d.resource_name
        if await self._read(ResourceKind.SERVICE, ns, name) is None:
            body = self.templates.service(d)
            await self._mutate(lambda: self.api.create(ResourceKind.SERVICE, ns, body), f"creating service {ns}/{name}")
            return

        patch = self.templates.service_patch(d)
        if patch is None:
            logger.debug("reconcile.service_unchanged", namespace=ns, name=name)
            return
        await self._mutate(
            lambda: self.api.patch(ResourceKind.SERVICE, ns, name, patch), f"patching service {ns}/{name}"
        )

    async def _upsert_deployment(self, d: ApplicationDescriptor) -> None:
        ns, name = d.target_namespace, d.resource_name
        if await self._read(ResourceKind.DEPLOYMENT, ns, name) is None:
            body = self.templates.deployment(d)
            await self._mutate(
                lambda: self.api.create(ResourceKind.DEPLOYMENT, ns, body), f"creating deployment {ns}/{name}"
            )
            return

        patch = self.templates.deployment_patch(d)
        await self._mutate(
            lambda: self.api.patch(ResourceKind.DEPLOYMENT, ns, name, patch),
            f"patching deployment {ns}/{name} with image {d.image}",
        )

    async def _upsert_ingress(self, d: ApplicationDescriptor, entry: IngressPath) -> None:
        ns, name = d.target_namespace, self.settings.ingress_name

        # Re-read on every attempt so that a resourceVersion conflict with a
        # concurrent writer is resolved against fresh rules.
        async def _cycle() -> IngressAction:
            current = await self.api.get(ResourceKind.INGRESS, ns, name)
            if current is None:
                await self.api.create(ResourceKind.INGRESS, ns, self.templates.ingress(d, entry))
                return IngressAction.ADD
            update = ingress_rules.insert(current.get("spec"), entry)
            if not update.changed:
                return update.action
            await self.api.patch(ResourceKind.INGRESS, ns, name, _versioned(update.patch_body(), current))
            return update.action

        action = await self._mutate(_cycle, f"adding path {entry.host or '*'}{entry.path} to ingress {ns}/{name}")
        logger.info("reconcile.ingress", namespace=ns, ingress=name, path=entry.path, action=action.value)

    # ---------------------------
    # Delete
    # ---------------------------

    async def delete_application(self, ref: ApplicationRef | dict[str, Any] | str) -> None:
        ref = load_ref(ref)
        self._check_scope(ref)
        token = application_var.set(ref.label)
        try:
            logger.info("reconcile.delete", application=ref.label)
            outcomes = await asyncio.gather(
                self._delete_ingress_path(ref),
                self._delete_resource(ResourceKind.SERVICE, ref),
                self._delete_resource(ResourceKind.DEPLOYMENT, ref),
            )
        finally:
            application_var.reset(token)

        total = reduce_outcomes(outcomes)
        if total.code != 0:
            failed = [o.step for o in outcomes if o.code != 0]
            raise AggregateDeleteError(f"deleting {ref.label}: {total.message}", code=total.code, failed=failed)

    async def _delete_resource(self, kind: ResourceKind, ref: ApplicationRef) -> DeleteOutcome:
        ns, name = ref.target_namespace, ref.resource_name
        step = f"{kind.value} {ns}/{name}"
        try:
            deleted = await self._mutate(lambda: self.api.delete(kind, ns, name), f"deleting {step}")
        except Exception as exc:
            logger.warning("reconcile.delete_failed", step=step, error=str(exc))
            return DeleteOutcome(step, 1, str(exc))
        if not deleted:
            logger.info("reconcile.already_absent", kind=kind.value, namespace=ns, name=name)
        return DeleteOutcome(step)

    async def _delete_ingress_path(self, ref: ApplicationRef) -> DeleteOutcome:
        ns, name = ref.target_namespace, self.settings.ingress_name
        step = f"ingress {ns}/{name}"
        if not ref.path:
            return DeleteOutcome(step)

        entry = IngressPath(
            host=ref.host or self.settings.default_host,
            path=ref.path,
            service_name=ref.resource_name,
            service_port=0,
        )

        async def _cycle() -> IngressAction:
            current = await self.api.get(ResourceKind.INGRESS, ns, name)
            if current is None:
                return IngressAction.NOOP
            update = ingress_rules.remove(current.get("spec"), entry)
            if update.action is IngressAction.DELETE:
                version = (current.get("metadata") or {}).get("resourceVersion")
                await self.api.delete(ResourceKind.INGRESS, ns, name, resource_version=version)
            elif update.changed:
                await self.api.patch(ResourceKind.INGRESS, ns, name, _versioned(update.patch_body(), current))
            return update.action

        try:
            action = await self._mutate(
                _cycle, f"removing path {entry.host or '*'}{entry.path} from ingress {ns}/{name}"
            )
        except Exception as exc:
            logger.warning("reconcile.delete_failed", step=step, error=str(exc))
            return DeleteOutcome(step, 1, str(exc))
        logger.info("reconcile.ingress", namespace=ns, ingress=name, path=entry.path, action=action.value)
        return DeleteOutcome(step)

    # ---------------------------
    # Helpers
    # ---------------------------

    async def _read(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any] | None:
        """Existence probe; not found is None, any other failure aborts."""
        try:
            return await self.api.get(kind, namespace, name)
        except ReconcileError:
            raise
        except Exception as exc:
            raise KubeApiError(f"reading {kind.value} {namespace}/{name} failed: {exc}") from exc

    async def _mutate(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        return await retry(operation, self.policy, description, sleep=self._sleep)


def _versioned(body: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Attach the observed resourceVersion so the API rejects stale writes."""
    version = (current.get("metadata") or {}).get("resourceVersion")
    if version:
        body.setdefault("metadata", {})["resourceVersion"] = version
    return body
