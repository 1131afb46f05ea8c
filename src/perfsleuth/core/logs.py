"""Logging helpers.

All perfsleuth loggers live under the ``perfsleuth`` namespace so an
application can route or silence them with one ``logging`` configuration.
"""

import logging

_ROOT = "perfsleuth"


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the perfsleuth namespace.

    Args:
        name: Usually ``__name__`` of the calling module.
    """
    if name == _ROOT or name.startswith(_ROOT + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_ROOT}.{name}")


def log_exception(
    message: str,
    logger: logging.Logger | None = None,
    **attributes: str | int | float | bool,
) -> None:
    """Log the exception currently being handled, with traceback.

    Must be called from inside an ``except`` block.

    Args:
        message: Description of what failed.
        logger: Logger to use (default: the package root logger).
        **attributes: Structured fields attached via ``extra``.
    """
    (logger or logging.getLogger(_ROOT)).error(
        message, exc_info=True, extra=dict(attributes)
    )
