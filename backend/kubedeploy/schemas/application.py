import json
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from kubedeploy.exceptions import DescriptorValidationError
from kubedeploy.services.k8s import naming

_HOSTNAME = re.compile(r"^[a-z0-9](?:[-a-z0-9]*[a-z0-9])?(?:\.[a-z0-9](?:[-a-z0-9]*[a-z0-9])?)*$")


def parse_overlay(value: Any, field_name: str) -> dict[str, Any] | None:
    """Accept an overlay as a mapping or as JSON text describing one."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as exc:
            raise ValueError(f"failed to parse {field_name} overlay as JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise ValueError(f"{field_name} overlay must be a JSON object, got {type(value).__name__}")
    return value


class ApplicationRef(BaseModel):
    """Identity of a deployed application, enough to remove it."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1, description="Base name of the application resources")
    namespace: str | None = Field(default=None, alias="ns")
    team_id: str | None = Field(default=None, alias="teamId")
    environment: str | None = None
    path: str | None = Field(default=None, description="Ingress path, absent means no ingress rule")
    host: str | None = Field(default=None, description="Ingress host, absent means the host-less rule")

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

    @field_validator("path")
    @classmethod
    def _absolute_path(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith("/"):
            raise ValueError("path must be an absolute URL path")
        return v

    @field_validator("host")
    @classmethod
    def _valid_host(cls, v: str | None) -> str | None:
        if v is not None and (len(v) > 253 or not _HOSTNAME.match(v)):
            raise ValueError("host must be a valid lower-case DNS hostname")
        return v

    @model_validator(mode="after")
    def _namespace_resolvable(self) -> "ApplicationRef":
        if not self.namespace and not (self.team_id and self.environment):
            raise ValueError("either namespace or both teamId and environment are required")
        return self

    @property
    def resource_name(self) -> str:
        return naming.resource_name(self.name)

    @property
    def target_namespace(self) -> str:
        if self.namespace:
            return self.namespace
        return naming.namespace_for(self.team_id or "", self.environment or "")

    @property
    def label(self) -> str:
        return f"{self.target_namespace}/{self.resource_name}"


class ApplicationDescriptor(ApplicationRef):
    """Declarative description of one application's desired deployment."""

    team_id: str = Field(alias="teamId")
    environment: str
    image: str = Field(min_length=1, description="Container image reference")
    image_pull_secret: str | None = Field(default=None, alias="imagePullSecret")
    port: int | None = Field(default=None, ge=1, le=65535)
    protocol: Literal["http", "https"] = "http"
    tls_secret: str | None = Field(default=None, alias="tlsSecret")
    replicas: int | None = Field(default=None, ge=0)
    deployment_spec: dict[str, Any] | None = Field(default=None, alias="deploymentSpec")
    service_spec: dict[str, Any] | None = Field(default=None, alias="serviceSpec")

    @field_validator("deployment_spec", mode="before")
    @classmethod
    def _parse_deployment_overlay(cls, v: Any) -> dict[str, Any] | None:
        return parse_overlay(v, "deployment")

    @field_validator("service_spec", mode="before")
    @classmethod
    def _parse_service_overlay(cls, v: Any) -> dict[str, Any] | None:
        return parse_overlay(v, "service")

    @model_validator(mode="after")
    def _path_needs_port(self) -> "ApplicationDescriptor":
        if self.path and self.port is None:
            raise ValueError("an ingress path requires a port for the service backend")
        return self


class OperationResult(BaseModel):
    ok: bool
    message: str | None = None
    endpoint: str | None = None


class RenderedManifests(BaseModel):
    namespace: str
    name: str
    yaml: str


def _problems(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'descriptor'}: {err['msg']}" for err in exc.errors()
    )


def load_descriptor(data: "ApplicationDescriptor | dict[str, Any] | str") -> ApplicationDescriptor:
    """Validate raw descriptor input, JSON text or a mapping, into a descriptor."""
    if isinstance(data, ApplicationDescriptor):
        return data
    try:
        if isinstance(data, str):
            return ApplicationDescriptor.model_validate_json(data)
        return ApplicationDescriptor.model_validate(data)
    except ValidationError as exc:
        raise DescriptorValidationError(f"invalid application descriptor: {_problems(exc)}") from exc


def load_ref(data: "ApplicationRef | dict[str, Any] | str") -> ApplicationRef:
    """Like ``load_descriptor`` for the identity needed to remove an application."""
    if isinstance(data, ApplicationRef):
        return data
    try:
        if isinstance(data, str):
            return ApplicationRef.model_validate_json(data)
        return ApplicationRef.model_validate(data)
    except ValidationError as exc:
        raise DescriptorValidationError(f"invalid application reference: {_problems(exc)}") from exc
