"""
Insert/remove algebra over the rules of a shared ingress.

Many unrelated applications keep their routes in one Ingress. These helpers
operate on the ingress ``spec`` (networking.k8s.io/v1 wire form) and never
modify their input; they return the rules and TLS entries to write back and
what to do with them.

Invariants kept on the returned spec:

- at most one rule per host, the host-less rule being its own key
- paths are unique within a rule
- a (host, path) pair is routed to exactly one backend service
"""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field
from typing import Any, Optional

from kubedeploy.exceptions import RouteConflictError

PATH_TYPE = "ImplementationSpecific"


class IngressAction(str, enum.Enum):
    NOOP = "noop"
    ADD = "add"
    PATCH = "patch"
    DELETE = "delete"


@dataclass(frozen=True)
class IngressPath:
    """One application's route: host (None for any host), path and backend."""

    host: Optional[str]
    path: str
    service_name: str
    service_port: int
    tls_secret: Optional[str] = None

    def http_path(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "pathType": PATH_TYPE,
            "backend": {
                "service": {
                    "name": self.service_name,
                    "port": {"number": self.service_port},
                },
            },
        }

    def rule(self) -> dict[str, Any]:
        rule: dict[str, Any] = {"http": {"paths": [self.http_path()]}}
        if self.host:
            rule["host"] = self.host
        return rule


@dataclass
class IngressUpdate:
    action: IngressAction
    rules: list[dict[str, Any]] = field(default_factory=list)
    tls: list[dict[str, Any]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.action is not IngressAction.NOOP

    def patch_body(self) -> dict[str, Any]:
        # tls is always sent so that emptied TLS lists are cleared as well
        return {"spec": {"rules": self.rules, "tls": self.tls or None}}


def backend_service(http_path: dict[str, Any]) -> Optional[str]:
    """Backend service name of an ingress path entry."""
    backend = http_path.get("backend") or {}
    service = backend.get("service") or {}
    return service.get("name")


def _host_key(host: Optional[str]) -> Optional[str]:
    return host or None


def _find_rule(rules: list[dict[str, Any]], host: Optional[str]) -> Optional[dict[str, Any]]:
    key = _host_key(host)
    for rule in rules:
        if _host_key(rule.get("host")) == key:
            return rule
    return None


def _rule_paths(rule: dict[str, Any]) -> list[dict[str, Any]]:
    http = rule.setdefault("http", {})
    paths = http.get("paths")
    if paths is None:
        paths = http["paths"] = []
    return paths


def _find_path(paths: list[dict[str, Any]], path: str) -> Optional[dict[str, Any]]:
    for entry in paths:
        if entry.get("path") == path:
            return entry
    return None


def _copy_spec(spec: Optional[dict[str, Any]]) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    spec = spec or {}
    return copy.deepcopy(spec.get("rules") or []), copy.deepcopy(spec.get("tls") or [])


def _add_tls_host(tls: list[dict[str, Any]], host: str, secret: str) -> bool:
    """Add ``host`` to the TLS entries, returning whether anything changed."""
    for entry in tls:
        if host in (entry.get("hosts") or []):
            return False
    for entry in tls:
        if entry.get("secretName") == secret:
            entry.setdefault("hosts", []).append(host)
            return True
    tls.append({"hosts": [host], "secretName": secret})
    return True


def _drop_tls_host(tls: list[dict[str, Any]], host: str) -> list[dict[str, Any]]:
    kept = []
    for entry in tls:
        hosts = [h for h in (entry.get("hosts") or []) if h != host]
        if hosts:
            entry["hosts"] = hosts
            kept.append(entry)
    return kept


def insert(spec: Optional[dict[str, Any]], entry: IngressPath) -> IngressUpdate:
    """Add ``entry`` to the ingress rules.

    A route that is already registered yields ``NOOP``, or ``PATCH`` when only
    its TLS host was missing.

    Raises:
        RouteConflictError: the (host, path) is already routed to another service
    """
    rules, tls = _copy_spec(spec)

    rule = _find_rule(rules, entry.host)
    if rule is None:
        rules.append(entry.rule())
    else:
        paths = _rule_paths(rule)
        existing = _find_path(paths, entry.path)
        if existing is None:
            paths.append(entry.http_path())
        else:
            owner = backend_service(existing)
            if owner != entry.service_name:
                raise RouteConflictError(entry.host, entry.path, owner or "<none>", entry.service_name)
            # route already registered, only a newly required TLS host may be missing
            if entry.tls_secret and entry.host and _add_tls_host(tls, entry.host, entry.tls_secret):
                return IngressUpdate(IngressAction.PATCH, rules, tls)
            return IngressUpdate(IngressAction.NOOP, rules, tls)

    if entry.tls_secret and entry.host:
        _add_tls_host(tls, entry.host, entry.tls_secret)
    return IngressUpdate(IngressAction.ADD, rules, tls)


def remove(spec: Optional[dict[str, Any]], entry: IngressPath) -> IngressUpdate:
    """Remove ``entry`` from the ingress rules.

    An emptied rule is dropped, and an ingress left without rules yields
    ``DELETE`` rather than a patch with no rules.

    Raises:
        RouteConflictError: the (host, path) is routed to another service
    """
    rules, tls = _copy_spec(spec)

    rule = _find_rule(rules, entry.host)
    if rule is None:
        return IngressUpdate(IngressAction.NOOP, rules, tls)
    paths = _rule_paths(rule)
    existing = _find_path(paths, entry.path)
    if existing is None:
        return IngressUpdate(IngressAction.NOOP, rules, tls)

    owner = backend_service(existing)
    if owner != entry.service_name:
        raise RouteConflictError(entry.host, entry.path, owner or "<none>", entry.service_name)

    paths.remove(existing)
    if not paths:
        rules.remove(rule)
        if entry.host:
            tls = _drop_tls_host(tls, entry.host)

    if not rules:
        return IngressUpdate(IngressAction.DELETE)
    return IngressUpdate(IngressAction.PATCH, rules, tls)
