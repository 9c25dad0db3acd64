from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration sourced from environment variables."""

    model_config = SettingsConfigDict(
        env_file=(".env",), env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    app_env: Literal["development", "production", "test"] = "development"
    log_level: str = "INFO"
    log_json: bool = False
    log_file: str | None = None
    host: str = "0.0.0.0"
    port: int = 8000

    # Cluster access, loaded by the kubernetes client
    kube_context: str | None = None
    kube_config_path: str | None = Field(default=None, alias="KUBE_CONFIG_PATH")
    in_cluster: bool = False

    # Deployment scope of this instance
    environment: str = Field(default="", description="Environment served by this instance, empty disables the check")
    deploy_mode: Literal["cluster", "namespace"] = "cluster"
    namespaces: list[str] = Field(default_factory=list, description="Namespaces allowed in cluster mode")
    pod_namespace: str | None = Field(default=None, validation_alias=AliasChoices("POD_NAMESPACE", "pod_namespace"))

    # Shared ingress and template constants
    ingress_name: str = "atm-ingress"
    ingress_class: str = "nginx"
    ingress_annotations: dict[str, str] = Field(
        default_factory=lambda: {"nginx.ingress.kubernetes.io/rewrite-target": "/"}
    )
    default_host: str | None = None
    webhook_base_url: str = "https://webhook.atomist.com"
    creator: str = "atomist.k8-automation"

    # Retry policy defaults for cluster mutations
    retry_max_retries: int = Field(default=5, ge=0)
    retry_backoff_factor: float = Field(default=3.0, ge=1.0)
    retry_min_delay: float = Field(default=0.5, ge=0.0, description="Seconds")
    retry_max_delay: float = Field(default=5.0, ge=0.0, description="Seconds")
    retry_jitter: bool = True

    @computed_field
    @property
    def is_debug(self) -> bool:
        return self.app_env == "development"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]
