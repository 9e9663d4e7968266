"""
Configuration settings for the rollout controller.
"""
from dataclasses import dataclass
from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional, Union

from .errors import ConfigurationError


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # Application
    APP_NAME: str = Field(default="kube-rollout-controller", description="Application name")
    APP_ENV: str = Field(default="dev", description="Environment: dev|staging|prod")
    HTTP_PORT: int = Field(default=8002, description="Service port")
    LOG_LEVEL: str = Field(default="info", description="Log level: info|debug|warning")

    # Kubernetes Configuration
    K8S_NAMESPACE: str = Field(default="default", description="Kubernetes namespace")
    K8S_CONTEXT: Optional[str] = Field(default=None, description="Kubernetes context")
    K8S_IN_CLUSTER: bool = Field(default=False, description="Running in cluster")
    CLUSTER_BACKEND: str = Field(default="kubernetes", description="Cluster backend: kubernetes|memory")

    # Registry Configuration
    REGISTRY_URL: str = Field(default="https://registry-1.docker.io", description="Registry base URL")
    REGISTRY_USERNAME: Optional[str] = Field(default=None, description="Registry user for token auth")
    REGISTRY_PASSWORD: Optional[str] = Field(default=None, description="Registry password or token")
    REQUEST_TIMEOUT_SECS: int = Field(default=30, description="Request timeout")
    RESOLVER_CACHE_TTL_SECS: float = Field(default=30.0, description="Digest cache TTL")
    RESOLVER_MAX_ATTEMPTS: int = Field(default=5, description="Registry lookup attempts")
    RESOLVER_INITIAL_BACKOFF_SECS: float = Field(default=0.5, description="First retry backoff")
    RESOLVER_MAX_BACKOFF_SECS: float = Field(default=8.0, description="Backoff ceiling")

    # Rollout strategy
    MAX_UNAVAILABLE: str = Field(default="25%", description="Replicas allowed non-Ready: count or percent")
    BATCH_TIMEOUT_SECS: float = Field(default=120.0, description="Per-batch readiness deadline")
    PROBE_INTERVAL_SECS: float = Field(default=2.0, description="Health poll interval")
    PROBE_SUCCESS_THRESHOLD: int = Field(default=3, description="Consecutive successes before Ready")
    PROBE_FAILURE_THRESHOLD: int = Field(default=3, description="Consecutive failures before Unready")
    PROBE_CONCURRENCY: int = Field(default=0, description="Parallel probes, 0 means batch size")

    # Operator events
    EVENT_WEBHOOK_URL: Optional[str] = Field(default=None, description="Webhook for rollout events")
    EVENT_HISTORY_SIZE: int = Field(default=500, description="Events kept in memory for the API")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


def parse_max_unavailable(value: Union[str, int]) -> Union[int, float]:
    """
    Parse a max-unavailable spec.

    Args:
        value: Absolute count (``2``, ``"2"``) or percentage (``"25%"``)

    Returns:
        An int for absolute counts, a fraction in [0, 1] for percentages
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"invalid max-unavailable: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ConfigurationError(f"max-unavailable must be >= 0, got {value}")
        return value
    text = str(value).strip()
    try:
        if text.endswith("%"):
            percent = float(text[:-1])
            if not 0 <= percent <= 100:
                raise ConfigurationError(f"max-unavailable percent out of range: {text}")
            return percent / 100.0
        count = int(text)
    except ValueError:
        raise ConfigurationError(f"invalid max-unavailable: {value!r}") from None
    if count < 0:
        raise ConfigurationError(f"max-unavailable must be >= 0, got {count}")
    return count


@dataclass
class RolloutPolicy:
    """Rollout strategy knobs. All of them are configurable defaults."""
    max_unavailable: Union[str, int] = "25%"
    batch_timeout: float = 120.0
    probe_interval: float = 2.0
    success_threshold: int = 3
    failure_threshold: int = 3
    probe_concurrency: int = 0

    def __post_init__(self):
        parse_max_unavailable(self.max_unavailable)
        if self.batch_timeout <= 0:
            raise ConfigurationError("batch timeout must be positive")
        if self.probe_interval < 0:
            raise ConfigurationError("probe interval must be >= 0")
        if self.success_threshold < 1 or self.failure_threshold < 1:
            raise ConfigurationError("probe thresholds must be >= 1")
        if self.probe_concurrency < 0:
            raise ConfigurationError("probe concurrency must be >= 0")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RolloutPolicy":
        return cls(
            max_unavailable=settings.MAX_UNAVAILABLE,
            batch_timeout=settings.BATCH_TIMEOUT_SECS,
            probe_interval=settings.PROBE_INTERVAL_SECS,
            success_threshold=settings.PROBE_SUCCESS_THRESHOLD,
            failure_threshold=settings.PROBE_FAILURE_THRESHOLD,
            probe_concurrency=settings.PROBE_CONCURRENCY,
        )


# Global settings instance
settings = Settings()
