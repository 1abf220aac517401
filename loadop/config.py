"""
Application Configuration using Pydantic Settings

Loads configuration from environment variables with sensible defaults.
"""

from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # ========================================================================
    # Application Settings
    # ========================================================================
    APP_HOST: str = "127.0.0.1"
    APP_PORT: int = 8000
    APP_RELOAD: bool = False

    # ========================================================================
    # Runner Settings
    # ========================================================================
    # Value of the "app" label stamped on every derived resource.
    RUNNER_APP_LABEL: str = "k6"
    # Control port of the runner agent REST API.
    RUNNER_CONTROL_PORT: int = 6565
    # Where the shared segment sequence config map is mounted inside runners.
    RUNNER_SEGMENT_MOUNT_PATH: str = "/etc/segment"
    STARTER_IMAGE: str = "curlimages/curl:8.10.1"

    # ========================================================================
    # Agent HTTP Settings
    # ========================================================================
    AGENT_HTTP_TIMEOUT_SECONDS: float = 5.0

    # ========================================================================
    # Dispatch Pool Settings
    # ========================================================================
    # Queue is bounded; requests beyond capacity are dropped, not blocked on.
    DISPATCH_QUEUE_SIZE: int = 1000
    DISPATCH_WORKERS: int = 8

    # ========================================================================
    # Reconcile Timing (seconds)
    # ========================================================================
    READINESS_POLL_SECONDS: float = 1.0
    TOKEN_WAIT_SECONDS: float = 5.0
    CREATE_CONFLICT_WAIT_SECONDS: float = 10.0
    CREATE_CONFLICT_GRACE_SECONDS: float = 30.0
    READINESS_ABORT_AFTER_SECONDS: float = 300.0
    FINISH_POLL_SECONDS: float = 5.0
    RECONCILE_BACKOFF_BASE_SECONDS: float = 0.5
    RECONCILE_BACKOFF_MAX_SECONDS: float = 300.0

    # ========================================================================
    # Cluster Settings
    # ========================================================================
    # "memory" keeps cluster state in-process; "kubectl" drives a real cluster.
    CLUSTER_BACKEND: str = "memory"
    KUBECTL_BIN: str = "kubectl"
    KUBECONFIG_PATH: str = ""
    KUBECTL_TIMEOUT_SECONDS: float = 30.0
    # TestRuns in these namespaces are picked up again when the controller starts.
    WATCH_NAMESPACES: List[str] = ["default"]

    # ========================================================================
    # Cloud Reporting Settings
    # ========================================================================
    # Empty disables HTTP event reporting (events are only logged).
    CLOUD_API_URL: str = ""
    CLOUD_API_TIMEOUT_SECONDS: float = 5.0

    # ========================================================================
    # Logging Settings
    # ========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(levelprefix)s %(asctime)s - %(name)s - %(message)s"

    @field_validator("CLUSTER_BACKEND", mode="before")
    @classmethod
    def _normalize_backend(cls, v):
        value = str(v or "memory").strip().lower()
        if value not in {"memory", "kubectl"}:
            raise ValueError(f"Unsupported CLUSTER_BACKEND: {v!r}")
        return value

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _normalize_log_level(cls, v):
        return str(v or "INFO").strip().upper()


# Create global settings instance
settings = Settings()
