"""Toolbox control plane: environment lifecycle and tool instance commands."""

from .main import create_app
from .settings import ToolboxControlSettings

__all__ = ["create_app", "ToolboxControlSettings"]
