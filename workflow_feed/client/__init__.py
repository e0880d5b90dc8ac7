from .connection import WorkflowConnection

__all__ = ["WorkflowConnection"]
