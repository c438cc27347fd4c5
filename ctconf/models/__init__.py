"""Data models for ctconf."""
from ctconf.models.container import (
    Config,
    ContainerOptions,
    LockToken,
    NetworkInterface,
    SnapshotConfig,
    SnapshotState,
    copy_options,
)
from ctconf.models.settings import SettingsFile

__all__ = [
    'Config',
    'ContainerOptions',
    'LockToken',
    'NetworkInterface',
    'SnapshotConfig',
    'SnapshotState',
    'SettingsFile',
    'copy_options',
]
