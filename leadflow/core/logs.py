import logging
from rich.logging import RichHandler


def setup_logging(level: str = "INFO") -> None:
    """Route library logging through rich; called once by the CLI."""
    root = logging.getLogger()
    root.handlers.clear()
    handler = RichHandler(rich_tracebacks=True, show_path=False)
    handler.setFormatter(logging.Formatter("%(name)s - %(message)s"))
    root.addHandler(handler)
    root.setLevel(level.upper())
