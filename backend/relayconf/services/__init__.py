"""
Service layer for relayconf.
"""
from relayconf.services.apply_orchestrator import ApplyOrchestrator, ApplyState
from relayconf.services.config_manager import ConfigManager
from relayconf.services.retention_service import RetentionService

__all__ = [
    "ApplyOrchestrator",
    "ApplyState",
    "ConfigManager",
    "RetentionService",
]
