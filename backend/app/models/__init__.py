"""Database models for the custom tables backend."""

from .custom_table import CustomField, CustomTable
from .logs import RunLog
from .workflow import Workflow, WorkflowExecution

__all__ = ["CustomField", "CustomTable", "RunLog", "Workflow", "WorkflowExecution"]
