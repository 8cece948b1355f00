"""
converge - declarative reconciliation engine.

Computes the minimal set of remote API calls that converge a live system on
a desired configuration, executes them concurrently and keeps a versioned
record of what exists.
"""

from converge.base import DesiredInstance, InstanceKey
from converge.engine import Engine
from converge.errors import (
    ConvergeError,
    CyclicDependency,
    FatalError,
    NotFoundError,
    RetryableError,
    SchemaMismatch,
    StateConflict,
    StateLocked,
)
from converge.remote import CreateResult, Provider, RemoteAPI
from converge.schema import ResourceSchema, SchemaRegistry
from converge.values import Value

__all__ = [
    "ConvergeError",
    "CreateResult",
    "CyclicDependency",
    "DesiredInstance",
    "Engine",
    "FatalError",
    "InstanceKey",
    "NotFoundError",
    "Provider",
    "RemoteAPI",
    "ResourceSchema",
    "RetryableError",
    "SchemaMismatch",
    "SchemaRegistry",
    "StateConflict",
    "StateLocked",
    "Value",
]
