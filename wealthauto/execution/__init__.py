"""Order execution collaborators."""

from wealthauto.execution.interfaces import ActionExecutor
from wealthauto.execution.paper import PaperActionExecutor

__all__ = ["ActionExecutor", "PaperActionExecutor"]
