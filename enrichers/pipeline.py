"""Linear stage composition.

A stage is any callable taking a context and returning the (possibly
updated) context. A pipeline is just an ordered list of stages.
"""

import logging
from typing import Callable, Optional, Sequence, TypeVar

from utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

ContextT = TypeVar("ContextT")
Stage = Callable[[ContextT], ContextT]


def stage_name(stage: Callable) -> str:
    return getattr(stage, "__name__", type(stage).__name__)


def run_stages(
    stages: Sequence[Stage],
    context: ContextT,
    token: Optional[CancellationToken] = None,
) -> ContextT:
    """Run ``stages`` in order, threading the context through each one.

    Exceptions raised by a stage propagate unchanged; the stage name is
    logged so failures can be traced to a step.

    Raises:
        OperationCancelled: If the token is cancelled between stages
        TypeError: If a stage returns None instead of a context
    """
    for stage in stages:
        if token is not None:
            token.raise_if_cancelled()

        name = stage_name(stage)
        logger.debug(f"Running stage: {name}")
        try:
            result = stage(context)
        except Exception as e:
            logger.debug(f"Stage {name} failed: {e}")
            raise

        if result is None:
            raise TypeError(f"Stage {name} returned None instead of a context")
        context = result

    return context
