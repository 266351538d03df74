# kubeherd/models/settings.py

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class KubeherdSettings(BaseSettings):
    """
    Process-wide settings. Every field maps to an environment variable
    prefixed with `KUBEHERD_`, e.g. `KUBEHERD_SSH_READY_RETRIES=10`.
    """

    model_config = SettingsConfigDict(env_prefix="KUBEHERD_")

    home_dir: str = "~/.kubeherd"
    image_dir: str = "/var/lib/kubeherd/images"
    remote_rootfs_base: str = "/var/lib/kubeherd/data"

    ssh_ready_retries: int = Field(default=6, ge=1)
    ssh_ready_delay: float = Field(default=5.0, ge=0.0)
    ssh_connect_timeout: int = Field(default=10, ge=1)
    # None keeps the historical behaviour: a hung command hangs its host task.
    command_timeout: Optional[float] = None
    # None means one task per host with no cap.
    max_concurrency: Optional[int] = Field(default=None, ge=1)
    vlog: int = Field(default=0, ge=0)
