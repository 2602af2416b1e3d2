import structlog, sys, logging


def setup_logging(level: str = "INFO", json: bool = True, stream=None):
    lvl = getattr(logging, str(level).upper(), logging.INFO)
    out = stream or sys.stdout
    logging.basicConfig(level=lvl, stream=out)
    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer(colors=False)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(lvl),
        logger_factory=structlog.PrintLoggerFactory(file=out),
        cache_logger_on_first_use=False,
    )
    return structlog.get_logger()


def get_logger(component: str, **context):
    # stays a lazy proxy so loggers created at import time follow setup_logging()
    return structlog.get_logger(component=component, **context)
