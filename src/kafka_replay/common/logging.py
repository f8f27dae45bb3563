"""
Logging utilities for kafka_replay.

Provides:
- Context variables (job_id, cluster_id, worker_id) injected by formatters
- Structured logging helpers that pass context fields via ``extra``
- LoggedClass mixin for components
"""

import logging
from contextvars import ContextVar
from typing import Any, Dict, Optional

_job_id: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
_cluster_id: ContextVar[Optional[str]] = ContextVar("cluster_id", default=None)
_worker_id: ContextVar[Optional[str]] = ContextVar("worker_id", default=None)


def set_log_context(
    job_id: Optional[str] = None,
    cluster_id: Optional[str] = None,
    worker_id: Optional[str] = None,
) -> None:
    """
    Set logging context variables for the current task.

    Only the arguments that are provided are changed. asyncio tasks copy the
    context when created, so a value set inside a worker task stays local to
    that task.
    """
    if job_id is not None:
        _job_id.set(job_id)
    if cluster_id is not None:
        _cluster_id.set(cluster_id)
    if worker_id is not None:
        _worker_id.set(worker_id)


def get_log_context() -> Dict[str, Optional[str]]:
    """Get current logging context."""
    return {
        "job_id": _job_id.get(),
        "cluster_id": _cluster_id.get(),
        "worker_id": _worker_id.get(),
    }


def clear_log_context() -> None:
    """Reset job-scoped context variables."""
    _job_id.set(None)
    _cluster_id.set(None)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def log_with_context(
    logger: logging.Logger,
    level: int,
    msg: str,
    **kwargs: Any,
) -> None:
    """
    Log with structured context fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Additional context fields (job_id, partition, etc.)

    Example:
        log_with_context(
            logger, logging.INFO, "Batch committed",
            job_id=job.id,
            partition=3,
            records_produced=500,
        )
    """
    logger.log(level, msg, extra=kwargs)


def log_exception(
    logger: logging.Logger,
    exc: BaseException,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **kwargs: Any,
) -> None:
    """
    Log exception with context and optional traceback.

    Automatically extracts error_category from ReplayError subclasses.

    Args:
        logger: Logger instance
        exc: Exception to log
        msg: Context message
        level: Log level (default: ERROR)
        include_traceback: Include full traceback (default: True)
        **kwargs: Additional context fields
    """
    error_category = kwargs.get("error_category")
    if error_category is None and hasattr(exc, "category"):
        cat = exc.category
        error_category = cat.value if hasattr(cat, "value") else str(cat)
        kwargs["error_category"] = error_category

    error_msg = str(exc)
    if len(error_msg) > 500:
        error_msg = error_msg[:500] + "..."
    kwargs["error_message"] = error_msg

    if include_traceback:
        logger.log(level, msg, exc_info=exc, extra=kwargs)
    else:
        logger.log(level, msg, extra=kwargs)


def _extract_instance_context(obj: Any) -> Dict[str, Any]:
    """Extract loggable identifier fields from instance attributes."""
    ctx: Dict[str, Any] = {}
    for attr in ["cluster_id", "component_name"]:
        value = getattr(obj, attr, None)
        if value is not None:
            ctx[attr] = value
    return ctx


class LoggedClass:
    """
    Mixin providing logging infrastructure for classes.

    Provides:
    - self._logger: Logger instance
    - self._log(): Log with auto-extracted context
    - self._log_exception(): Exception logging with context

    Example:
        class ProducerPool(LoggedClass):
            def acquire(self, cluster_id):
                self._log(logging.DEBUG, "Acquiring producer", cluster_id=cluster_id)
    """

    log_component: Optional[str] = None  # Optional logger name suffix

    def __init__(self, *args, **kwargs):
        logger_name = self.__class__.__module__
        if self.log_component:
            logger_name = f"{logger_name}.{self.log_component}"
        self._logger = get_logger(logger_name)
        super().__init__(*args, **kwargs)

    def _log(self, level: int, msg: str, **extra: Any) -> None:
        """Log with automatic context extraction from instance."""
        context = _extract_instance_context(self)
        context.update(extra)
        log_with_context(self._logger, level, msg, **context)

    def _log_exception(
        self,
        exc: BaseException,
        msg: str,
        level: int = logging.ERROR,
        **extra: Any,
    ) -> None:
        """Log exception with automatic context extraction from instance."""
        context = _extract_instance_context(self)
        context.update(extra)
        log_exception(self._logger, exc, msg, level=level, **context)


def extract_log_context(job: Any) -> Dict[str, Any]:
    """
    Extract loggable context from a replay job.

    Args:
        job: MessageReplayJob (or any object with matching attributes)

    Returns:
        Dict with identifier fields suitable for logging

    Example:
        try:
            await extractor.run(job, token)
        except Exception as e:
            log_exception(logger, e, "Replay run failed", **extract_log_context(job))
    """
    ctx: Dict[str, Any] = {}

    if job is None:
        return ctx

    for attr in [
        "cluster_id",
        "source_topic",
        "target_topic",
        "consumer_group_id",
        "run_number",
        "retry_count",
    ]:
        value = getattr(job, attr, None)
        if value is not None:
            ctx[attr] = value

    job_id = getattr(job, "id", None)
    if job_id is not None:
        ctx["job_id"] = job_id

    status = getattr(job, "status", None)
    if status is not None:
        ctx["status"] = status.value if hasattr(status, "value") else str(status)

    return ctx
