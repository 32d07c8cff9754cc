"""Function contract and registry."""

from kanopy.functions.base import CallableFunction, Function
from kanopy.functions.registry import (
    FunctionRegistry,
    get_default_registry,
    register_function,
    reset_default_registry,
)

__all__ = [
    "CallableFunction",
    "Function",
    "FunctionRegistry",
    "get_default_registry",
    "register_function",
    "reset_default_registry",
]
