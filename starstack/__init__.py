"""StarStack package for incremental star alignment and stacking of hand-held exposures."""

from starstack.config import StackSettings
from starstack.errors import InitializationError
from starstack.register import FrameOutcome
from starstack.stack import MergeResult, StackSession

__all__ = [
    "config",
    "errors",
    "detect",
    "match",
    "register",
    "composite",
    "stack",
    "io",
    "preview",
    "FrameOutcome",
    "InitializationError",
    "MergeResult",
    "StackSession",
    "StackSettings",
]
