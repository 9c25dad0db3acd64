"""
Kubernetes manifest templates for one application.

All builders are pure: they return fresh JSON-like dicts in Kubernetes wire
form (camelCase keys) and never touch the cluster. User overlays are merged
over the defaults with ``deep_merge``.
"""

from __future__ import annotations

import copy
import json
from typing import Any

from kubedeploy.config import Settings
from kubedeploy.schemas.application import ApplicationDescriptor

from .ingress_rules import IngressPath

PORT_NAME = "http"
REVISION_HISTORY_LIMIT = 3
DEFAULT_RESOURCES = {
    "limits": {"cpu": "1000m", "memory": "384Mi"},
    "requests": {"cpu": "100m", "memory": "320Mi"},
}
K8VENT_ANNOTATION = "atomist.com/k8vent"
INGRESS_CLASS_ANNOTATION = "kubernetes.io/ingress.class"


def deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge ``overlay`` onto ``base`` and return the result.

    Mappings merge recursively. Any other overlay value, lists included,
    replaces the base value wholesale. Neither argument is modified.
    """
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _probe(path: str) -> dict[str, Any]:
    return {
        "httpGet": {"path": path, "port": PORT_NAME, "scheme": "HTTP"},
        "initialDelaySeconds": 30,
        "timeoutSeconds": 3,
        "periodSeconds": 10,
        "successThreshold": 1,
        "failureThreshold": 3,
    }


class ResourceTemplates:
    """Builds the resources of an application from its descriptor."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def labels(self, d: ApplicationDescriptor) -> dict[str, str]:
        return {
            "app": d.resource_name,
            "teamId": d.team_id,
            "env": d.environment,
            "creator": self.settings.creator,
        }

    def selector(self, d: ApplicationDescriptor) -> dict[str, str]:
        return {"app": d.resource_name, "teamId": d.team_id}

    def namespace(self, d: ApplicationDescriptor) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {
                "name": d.target_namespace,
                "labels": {"creator": self.settings.creator},
            },
        }

    def service(self, d: ApplicationDescriptor) -> dict[str, Any] | None:
        """Service fronting the deployment, None when the application has no port."""
        if d.port is None:
            return None
        labels = self.labels(d)
        labels["service"] = labels.pop("app")
        svc = {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {
                "name": d.resource_name,
                "namespace": d.target_namespace,
                "labels": labels,
            },
            "spec": {
                "ports": [
                    {
                        "name": PORT_NAME,
                        "protocol": "TCP",
                        "port": d.port,
                        "targetPort": PORT_NAME,
                    }
                ],
                "selector": self.selector(d),
                "sessionAffinity": "None",
                "type": "NodePort",
            },
        }
        if d.service_spec:
            svc = deep_merge(svc, d.service_spec)
        return svc

    def k8vent(self, d: ApplicationDescriptor) -> str:
        """Environment and webhook descriptor read by cluster event forwarders."""
        base = self.settings.webhook_base_url.rstrip("/")
        return json.dumps(
            {"environment": d.environment, "webhooks": [f"{base}/atomist/kube/teams/{d.team_id}"]},
            separators=(",", ":"),
        )

    def container(self, d: ApplicationDescriptor) -> dict[str, Any]:
        container: dict[str, Any] = {
            "name": d.resource_name,
            "image": d.image,
            "imagePullPolicy": "IfNotPresent",
            "env": [
                {"name": "ATOMIST_TEAM", "value": d.team_id},
                {"name": "ATOMIST_ENVIRONMENT", "value": d.environment},
            ],
            "resources": copy.deepcopy(DEFAULT_RESOURCES),
        }
        if d.port is not None:
            container["ports"] = [{"name": PORT_NAME, "containerPort": d.port, "protocol": "TCP"}]
            container["readinessProbe"] = _probe("/")
            container["livenessProbe"] = _probe("/")
        return container

    def deployment(self, d: ApplicationDescriptor) -> dict[str, Any]:
        pod_spec: dict[str, Any] = {
            "containers": [self.container(d)],
            "dnsPolicy": "ClusterFirst",
            "restartPolicy": "Always",
        }
        if d.image_pull_secret:
            pod_spec["imagePullSecrets"] = [{"name": d.image_pull_secret}]

        dep = {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {
                "name": d.resource_name,
                "namespace": d.target_namespace,
                "labels": self.labels(d),
            },
            "spec": {
                "replicas": 1 if d.replicas is None else d.replicas,
                "revisionHistoryLimit": REVISION_HISTORY_LIMIT,
                "selector": {"matchLabels": self.selector(d)},
                "template": {
                    "metadata": {
                        "labels": self.labels(d),
                        "annotations": {K8VENT_ANNOTATION: self.k8vent(d)},
                    },
                    "spec": pod_spec,
                },
                "strategy": {
                    "type": "RollingUpdate",
                    "rollingUpdate": {"maxUnavailable": 0, "maxSurge": 1},
                },
            },
        }
        if d.deployment_spec:
            dep = deep_merge(dep, d.deployment_spec)
        return dep

    def deployment_patch(self, d: ApplicationDescriptor) -> dict[str, Any]:
        """Fields that change on redeploy: the container image, plus the overlay.

        The image is set after the overlay is merged, so an overlay that
        replaces the containers list still rolls out the new image.
        """
        patch: dict[str, Any] = {
            "spec": {
                "template": {
                    "spec": {"containers": [{"name": d.resource_name}]},
                },
            },
        }
        if d.deployment_spec:
            patch = deep_merge(patch, d.deployment_spec)

        pod_spec = patch["spec"].setdefault("template", {}).setdefault("spec", {})
        containers = pod_spec.get("containers")
        if not isinstance(containers, list):
            containers = pod_spec["containers"] = []
        for container in containers:
            if isinstance(container, dict) and container.get("name") == d.resource_name:
                container["image"] = d.image
                break
        else:
            containers.append({"name": d.resource_name, "image": d.image})
        return patch

    def service_patch(self, d: ApplicationDescriptor) -> dict[str, Any] | None:
        if d.port is None or not d.service_spec:
            return None
        return copy.deepcopy(d.service_spec)

    def ingress_host(self, d: ApplicationDescriptor) -> str | None:
        return d.host or self.settings.default_host

    def ingress_entry(self, d: ApplicationDescriptor) -> IngressPath | None:
        """The application's route in the shared ingress, None without a path."""
        if not d.path or d.port is None:
            return None
        host = self.ingress_host(d)
        tls_secret = None
        if d.protocol == "https" and host:
            tls_secret = d.tls_secret or f"{host.replace('.', '-')}-tls"
        return IngressPath(
            host=host,
            path=d.path,
            service_name=d.resource_name,
            service_port=d.port,
            tls_secret=tls_secret,
        )

    def ingress(self, d: ApplicationDescriptor, entry: IngressPath) -> dict[str, Any]:
        """Shared ingress as first created, holding only this application's route."""
        annotations = {INGRESS_CLASS_ANNOTATION: self.settings.ingress_class}
        annotations.update(self.settings.ingress_annotations)
        spec: dict[str, Any] = {"rules": [entry.rule()]}
        if entry.tls_secret and entry.host:
            spec["tls"] = [{"hosts": [entry.host], "secretName": entry.tls_secret}]
        return {
            "apiVersion": "networking.k8s.io/v1",
            "kind": "Ingress",
            "metadata": {
                "name": self.settings.ingress_name,
                "namespace": d.target_namespace,
                "annotations": annotations,
                "labels": {
                    "ingress": self.settings.ingress_class,
                    "creator": self.settings.creator,
                },
            },
            "spec": spec,
        }

    def manifests(self, d: ApplicationDescriptor) -> list[dict[str, Any]]:
        """Every resource the application would own, in creation order."""
        resources = [self.namespace(d)]
        svc = self.service(d)
        if svc is not None:
            resources.append(svc)
        resources.append(self.deployment(d))
        entry = self.ingress_entry(d)
        if entry is not None:
            resources.append(self.ingress(d, entry))
        return resources
