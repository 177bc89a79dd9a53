import logging
import sys
from werkverdeling.config.settings import get_settings

settings = get_settings()


def setup_logging():
    """Configure application-wide logging."""
    log_level = logging.DEBUG if settings.debug else logging.INFO

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    # setup_logging may run once per app instance; keep a single console handler
    if not any(getattr(h, "_werkverdeling", False) for h in root_logger.handlers):
        console_handler._werkverdeling = True
        root_logger.addHandler(console_handler)

    # Quiet down noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    # the search loops log at DEBUG per move
    logging.getLogger("werkverdeling.engine.local_search").setLevel(max(log_level, logging.INFO))

    return root_logger
