"""
Central Cortex - Plugin pipeline and controllers
Layer 2: Orchestration

This module provides:
- The plugin model (operation kinds, lifecycle phases, contexts)
- The plugin executor composing middleware per operation
- Single operation controllers and the client instance
"""

from .plugins import (
    InstanceContext,
    LifecyclePhase,
    OperationType,
    Plugin,
    PluginContext,
)
from .executor import PluginExecutor

__all__ = [
    'InstanceContext',
    'LifecyclePhase',
    'OperationType',
    'Plugin',
    'PluginContext',
    'PluginExecutor',
]
