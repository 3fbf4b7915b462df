import logging
from pathlib import Path
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def setup_logging(log_dir: Path, debug: bool = False, console: bool = True) -> logging.Logger:
    """Configures file logging (abrpub.log) plus a rich console handler."""
    log_dir.mkdir(parents=True, exist_ok=True)
    level = logging.DEBUG if debug else logging.INFO

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level)

    file_handler = logging.FileHandler(log_dir / "abrpub.log")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)

    if console:
        rich_handler = RichHandler(rich_tracebacks=debug, show_path=debug)
        rich_handler.setLevel(level)
        root.addHandler(rich_handler)

    # botocore is extremely chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return logging.getLogger("abrpub")
