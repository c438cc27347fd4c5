"""Schema for the ctconf settings file."""
import re
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

STORAGE_ID_RE = re.compile(r'^[a-z][a-z0-9\-_.]*[a-z0-9]$', re.IGNORECASE)


class SettingsFile(BaseModel):
    """Validated contents of /etc/ctconf/ctconf.yml."""

    model_config = ConfigDict(extra='forbid')

    node: Optional[str] = None
    config_root: Optional[str] = Field(None, description="Directory holding <vmid>/config")
    lock_dir: Optional[str] = None
    lock_timeout: Optional[int] = Field(None, ge=0)
    rollback_unlock_timeout: Optional[int] = Field(None, ge=0)
    cgroup_root: Optional[str] = None
    command_timeout: Optional[int] = Field(None, gt=0)
    stop_timeout: Optional[int] = Field(None, gt=0)
    zfs_pools: Dict[str, str] = Field(
        default_factory=dict,
        description="Storage id -> ZFS dataset prefix, e.g. local-zfs: rpool/data",
    )
    dir_storages: Dict[str, str] = Field(
        default_factory=dict,
        description="Storage id -> directory path for plain directory storages",
    )

    @field_validator('zfs_pools', 'dir_storages')
    @classmethod
    def validate_storage_ids(cls, v):
        """Storage ids follow the Proxmox storage naming rules."""
        for storage_id in v:
            if not STORAGE_ID_RE.match(storage_id):
                raise ValueError(f"invalid storage id '{storage_id}'")
        return v
