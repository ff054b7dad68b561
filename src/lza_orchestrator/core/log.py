"""Execution-scoped logging.

Components accept a logger at construction. A pipeline run hands every
component the same adapter so that log lines from one execution carry
its id and never leak state into another run.
"""

import logging
from typing import Any, MutableMapping, Optional, Tuple


LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s %(message)s"


class ExecutionLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with the pipeline execution id."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.extra['execution_id']}] {msg}", kwargs


def execution_logger(execution_id: str, name: str = "lza_orchestrator") -> ExecutionLoggerAdapter:
    """Build a logger scoped to one pipeline execution.

    Args:
        execution_id: Identifier of the pipeline execution
        name: Underlying logger name

    Returns:
        Logger adapter tagging records with the execution id
    """
    return ExecutionLoggerAdapter(logging.getLogger(name), {"execution_id": execution_id})


def configure_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Configure root logging once for command-line use."""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
    )
    # botocore is noisy at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
