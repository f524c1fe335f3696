"""
mdboard - task store for markdown task boards

Parses and writes markdown task files, keeps ordinals for drag-and-drop
ordering, and merges task state across git branches.
"""

__version__ = "0.4.0"

# Re-export core models for convenience
from mdboard.core.config.models import BoardConfig
from mdboard.core.tasks.models import ChecklistItem, Task, TaskPriority

__all__ = ["BoardConfig", "ChecklistItem", "Task", "TaskPriority", "__version__"]
