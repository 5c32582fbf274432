"""
Error types and the stage guard used by every analysis stage.

Stages signal unmet preconditions by raising ``StageNotReady`` internally;
``stage_guard`` turns that into a logged warning and a ``None`` result so a
stage never throws at its public boundary and never half-updates a project.
"""

import functools
from typing import Callable, Optional, TypeVar
from loguru import logger

T = TypeVar("T")


class StructureError(Exception):
    """Base class for dxfstruct errors."""


class StageNotReady(StructureError):
    """A stage cannot run: missing configuration, prior stage, or input data."""

    def __init__(self, stage: str, reason: str):
        super().__init__(f"{stage}: {reason}")
        self.stage = stage
        self.reason = reason


class SnapshotError(StructureError):
    """Analysis snapshot could not be read."""


def stage_guard(stage: str) -> Callable[[Callable[..., T]], Callable[..., Optional[T]]]:
    """
    Decorate a stage calculation so precondition failures return None.

    The undecorated function stays reachable as ``__wrapped__`` for callers
    that need the failure reason.

    Args:
        stage: Stage name used in log messages

    Returns:
        Decorator
    """
    def decorator(func: Callable[..., T]) -> Callable[..., Optional[T]]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Optional[T]:
            try:
                return func(*args, **kwargs)
            except StageNotReady as e:
                logger.warning(f"[{stage}] cannot proceed: {e.reason}")
                return None

        wrapper.stage_name = stage
        return wrapper

    return decorator
