import logging

from rich.logging import RichHandler

LOG_FORMAT = "%(name)s | %(message)s"
DATE_FMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: int | str = logging.INFO, rich_tracebacks: bool = True) -> None:
    """Initialize rich-based logging for sysstats and uvicorn."""
    handler = RichHandler(rich_tracebacks=rich_tracebacks, markup=False)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FMT,
        handlers=[handler],
        force=True,
    )
