"""Pydantic schemas describing loaded plugins."""

from pydantic import BaseModel, Field


class PluginInfo(BaseModel):
    """Public metadata of a registered plugin."""

    name: str = Field(..., description="Unique plugin name (registry key).")
    version: str = Field(..., description="Plugin version string.")
    description: str = Field(..., description="What the plugin does.")
    author: str = Field("Unknown", description="Plugin author.")
    dependencies: list[str] = Field(
        default_factory=list,
        description="Names of plugins that must be registered first.",
    )
    enabled: bool = Field(True, description="Whether hooks/middlewares are active.")
    loaded: bool = Field(True, description="Always true for registered plugins.")
    hooks: list[str] = Field(default_factory=list, description="Hook names handled.")
    middlewares: list[str] = Field(
        default_factory=list,
        description="Events the plugin intercepts with middleware.",
    )
