"""Error handling helpers for isolated failures.

A failure inside one container's watch or one trigger's dispatch must not stop
the rest of the batch; these helpers log such failures consistently.
"""

import logging


def log_and_continue(
    logger_instance: logging.Logger,
    error: Exception,
    context_message: str,
    log_level: str = "warning",
) -> None:
    """Log an isolated error with context and keep going.

    The message is logged at ``log_level``; the traceback is only attached at
    debug level to keep scan logs readable.
    """
    log_method = getattr(logger_instance, log_level, logger_instance.warning)
    log_method(f"{context_message} ({type(error).__name__}: {error})")
    logger_instance.debug(context_message, exc_info=error)
