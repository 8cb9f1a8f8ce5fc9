from .handlers import HANDLERS, HandlerContext, StepEffect, dispatch, prevalidate_for_layer, resolve_path
from .runner import EXIT_FAILURE, EXIT_SUCCESS, RunReport, StepExecutor

__all__ = [
    "HANDLERS",
    "HandlerContext",
    "StepEffect",
    "dispatch",
    "prevalidate_for_layer",
    "resolve_path",
    "EXIT_FAILURE",
    "EXIT_SUCCESS",
    "RunReport",
    "StepExecutor",
]
