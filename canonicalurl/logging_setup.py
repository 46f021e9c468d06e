"""Shared structlog/stdlib logging bootstrap for the supervisor and worker processes.

Records are rendered to JSON lines in the process that emits them and pushed
onto a multiprocessing queue; the supervisor drains that queue into the only
real sink (file, daily rotating file or stdout), so every line is written by
one process.
"""

import logging
import logging.handlers
import sys
from typing import Optional

import structlog

# stdlib has no level between DEBUG and INFO that structlog can emit, so
# "verbose" shares INFO with "info"
LEVELS = {
    'debug': logging.DEBUG,
    'verbose': logging.INFO,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'error': logging.ERROR,
}

_shared_processors = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso"),
]


def level_for(name: str) -> int:
    return LEVELS.get((name or 'info').lower(), logging.INFO)


def configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_shared_processors,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def json_formatter() -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=_shared_processors,
    )


def build_sink(path: Optional[str], rotate: bool = False) -> logging.Handler:
    """File handler for path, rotated at midnight when asked; stdout without a path.

    The sink writes lines that were already rendered, so its format is bare.
    """
    if not path:
        handler = logging.StreamHandler(sys.stdout)
    elif rotate:
        handler = logging.handlers.TimedRotatingFileHandler(path, when='midnight', encoding='utf-8')
    else:
        handler = logging.FileHandler(path, encoding='utf-8')
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def _install(handler: logging.Handler, level: str) -> None:
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level_for(level))

    # uvicorn's own loggers should flow into the same sink
    for name in ('uvicorn', 'uvicorn.error', 'uvicorn.access'):
        logging.getLogger(name).handlers.clear()
        logging.getLogger(name).propagate = True
    # per-request transport chatter is only wanted when debugging
    transport_level = logging.DEBUG if level_for(level) == logging.DEBUG else logging.WARNING
    logging.getLogger('httpx').setLevel(transport_level)
    logging.getLogger('httpcore').setLevel(transport_level)

    configure_structlog()


def _queue_handler(queue) -> logging.Handler:
    handler = logging.handlers.QueueHandler(queue)
    handler.setFormatter(json_formatter())
    return handler


def configure_supervisor_logging(path: Optional[str], level: str, rotate: bool = False, queue=None):
    """Configure the supervisor process.

    With a queue, the supervisor logs through it like the workers and the
    returned (started) QueueListener owns the sink; stop it on shutdown.
    """
    sink = build_sink(path, rotate)
    if queue is None:
        sink.setFormatter(json_formatter())
        _install(sink, level)
        return None

    _install(_queue_handler(queue), level)
    listener = logging.handlers.QueueListener(queue, sink)
    listener.start()
    return listener


def configure_worker_logging(queue, level: str) -> None:
    """Send every record of a worker process to the supervisor's queue."""
    _install(_queue_handler(queue), level)
