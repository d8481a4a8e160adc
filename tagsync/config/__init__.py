from .app_config import AppConfig, SyncConfig, WorkerConfig

__all__ = ['AppConfig', 'SyncConfig', 'WorkerConfig']
