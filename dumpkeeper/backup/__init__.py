"""
Backup module for dumpkeeper.

This module handles the core backup functionality including:
- Source dumps (local command, SSH command, existing file)
- Streaming artifact building (compression, encryption, digest)
- Storage (local directory and S3)
- The manifest of artifacts and its reconciliation
- Retention planning
- Run orchestration under a per-source lease
"""

from .builder import ArtifactBuilder
from .executor import BackupOrchestrator, RunReport, RunState, create_orchestrator, get_orchestrator
from .locking import LeaseLock
from .manifest import ManifestStore
from .reconcile import Reconciler
from .retention import RetentionPolicy, plan
from .sources import CommandSource, SSHSource, FileSource
from .storage import S3Storage, LocalStorage

__all__ = [
    'ArtifactBuilder',
    'BackupOrchestrator',
    'RunReport',
    'RunState',
    'create_orchestrator',
    'get_orchestrator',
    'LeaseLock',
    'ManifestStore',
    'Reconciler',
    'RetentionPolicy',
    'plan',
    'CommandSource',
    'SSHSource',
    'FileSource',
    'S3Storage',
    'LocalStorage'
]
