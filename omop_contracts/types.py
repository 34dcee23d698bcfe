"""Common type definitions for OMOP pipeline contracts.

This module provides type aliases for commonly used types across the package,
improving type safety and reducing repetition.
"""

from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any, TypeAlias

# JSON-compatible message shapes as they travel on the queue
JSONDict: TypeAlias = dict[str, Any]
WireMessage: TypeAlias = Mapping[str, Any]

# Injected time source for the tracker and validator
Clock: TypeAlias = Callable[[], datetime]
