"""
Database models for relayconf.
"""
from relayconf.models.staged import StagedConfig
from relayconf.models.version import ConfigVersion, VersionStatus
from relayconf.models.secret import ConfigSecret
from relayconf.models.audit import AuditLog

__all__ = [
    "StagedConfig",
    "ConfigVersion",
    "VersionStatus",
    "ConfigSecret",
    "AuditLog",
]
