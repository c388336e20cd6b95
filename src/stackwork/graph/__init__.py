"""Memoized build-target graph."""

from .database import GraphDatabase, GraphDatabaseWarning
from .scheduler import GraphRunResult, Node, TargetKey, TaskGraph

__all__ = [
    "GraphDatabase",
    "GraphDatabaseWarning",
    "GraphRunResult",
    "Node",
    "TargetKey",
    "TaskGraph",
]
