"""
kubeherd/models/scale.py

ScaleRequest: the one-shot input of a join or delete, built from CLI flags
and consumed by kubeherd.deployment.scale.
"""

from __future__ import annotations

from typing import List, Optional
from pydantic import BaseModel, Field

from kubeherd.models.ssh import SSHCredentials


class ScaleRequest(BaseModel):
    """
    Attributes:
        masters: "ip1,ip2" or "ipA-ipB"; empty means no master change.
        nodes: Same format for workers.
        ssh: Credentials for the targeted hosts if they differ from the
            cluster default.
        custom_env: Extra "KEY=VALUE" entries appended to the cluster env.
    """

    masters: str = ""
    nodes: str = ""
    ssh: Optional[SSHCredentials] = None
    custom_env: List[str] = Field(default_factory=list)
