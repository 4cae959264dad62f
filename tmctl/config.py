"""tmctl configuration."""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration settings.

    Values come from ``TMCTL_*`` environment variables; command line flags
    override them for a single invocation.
    """

    # Kubernetes settings
    kubeconfig_path: Optional[str] = None
    in_cluster: bool = False
    namespace: Optional[str] = None  # kubeconfig context namespace if unset

    # Registry settings
    registry: str = "knative.registry.svc.cluster.local"
    registry_secret: Optional[str] = None

    # Deployment behaviour
    dry_run: bool = False
    wait: bool = False
    concurrency: int = 3
    build_timeout: str = "10m"

    # TaskRun wait
    wait_timeout: int = 600  # seconds
    wait_interval: float = 2.0  # seconds

    # Logging
    log_level: str = "WARNING"

    model_config = SettingsConfigDict(env_prefix="TMCTL_", case_sensitive=False)
