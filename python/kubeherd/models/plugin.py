"""
kubeherd/models/plugin.py

Shell plugins: user snippets run on cluster hosts at lifecycle phases.
They travel as extra `kind: Plugin` documents in the Clusterfile.
"""

from __future__ import annotations

from enum import Enum
from typing import List
from pydantic import BaseModel, Field

PLUGIN_KIND = "Plugin"
SHELL_PLUGIN = "SHELL"


class Phase(str, Enum):
    ORIGINALLY = "Originally"
    PRE_INIT = "PreInit"
    POST_INSTALL = "PostInstall"
    PRE_CLEAN = "PreClean"
    POST_CLEAN = "PostClean"


class PluginSpec(BaseModel):
    """
    Attributes:
        type: Plugin type; only "SHELL" is executed.
        action: Phases joined by "|", e.g. "PreInit|PostInstall".
        on: Comma-separated roles ("master,node") or IP target text; empty
            means every host.
        data: Shell snippet.
    """

    type: str = SHELL_PLUGIN
    action: str = ""
    on: str = ""
    data: str = ""

    def phases(self) -> List[str]:
        return [p.strip() for p in self.action.split("|") if p.strip()]


class Plugin(BaseModel):
    kind: str = PLUGIN_KIND
    name: str
    spec: PluginSpec = Field(default_factory=PluginSpec)
