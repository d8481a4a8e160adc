"""
Application configuration for the tag synchronization client.
"""
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional


def _env_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class SyncConfig:
    """
    Backend and synchronization configuration.

    ``persist_offline`` is global: turning it on makes the offline queue
    durable for every tag on every screen that shares this configuration.
    There is no per-tag persistence.
    """
    backend_url: str = "http://localhost:8080"
    project_bucket: str = "default"
    developer_bucket: str = "developer"
    persist_offline: bool = False
    override_api_key: Optional[str] = None
    api_key: Optional[str] = None
    developer_token: Optional[str] = None
    queue_path: str = "tagsync_queue.db"
    max_transaction_retries: int = 25
    tag_list_includes_queued: bool = False
    request_timeout: float = 30.0
    reconnect_interval: float = 30.0

    @property
    def namespace(self) -> str:
        """Key prefix under which every tag of this project lives."""
        return f"{self.developer_bucket.strip('/')}/{self.project_bucket.strip('/')}/"

    @property
    def effective_api_key(self) -> Optional[str]:
        """The override key, when present, wins over the embedded one."""
        return self.override_api_key or self.api_key

    @property
    def effective_queue_path(self) -> str:
        return self.queue_path if self.persist_offline else ":memory:"


@dataclass
class WorkerConfig:
    """Worker thread configuration."""
    max_workers: int = 10


@dataclass
class AppConfig:
    """Main application configuration."""
    sync: SyncConfig = field(default_factory=SyncConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'AppConfig':
        """Create configuration from TAGSYNC_* environment variables."""
        env = os.environ if environ is None else environ
        defaults = SyncConfig()
        sync = SyncConfig(
            backend_url=env.get("TAGSYNC_BACKEND_URL", defaults.backend_url),
            project_bucket=env.get("TAGSYNC_PROJECT_BUCKET", defaults.project_bucket),
            developer_bucket=env.get("TAGSYNC_DEVELOPER_BUCKET", defaults.developer_bucket),
            persist_offline=_env_bool(env.get("TAGSYNC_PERSIST_OFFLINE"), defaults.persist_offline),
            override_api_key=env.get("TAGSYNC_OVERRIDE_API_KEY") or None,
            api_key=env.get("TAGSYNC_API_KEY") or None,
            developer_token=env.get("TAGSYNC_DEVELOPER_TOKEN") or None,
            queue_path=env.get("TAGSYNC_QUEUE_PATH", defaults.queue_path),
            max_transaction_retries=int(env.get("TAGSYNC_MAX_RETRIES", defaults.max_transaction_retries)),
            tag_list_includes_queued=_env_bool(
                env.get("TAGSYNC_TAG_LIST_INCLUDES_QUEUED"), defaults.tag_list_includes_queued
            ),
        )
        workers = WorkerConfig(
            max_workers=int(env.get("TAGSYNC_MAX_WORKERS", WorkerConfig.max_workers))
        )
        return cls(sync=sync, workers=workers)
