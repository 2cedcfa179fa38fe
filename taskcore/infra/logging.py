from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from taskcore.config import SETTINGS, PROJECT_ROOT


def setup_logging(level: str | None = None, log_to_file: bool = True) -> None:
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers: list[logging.Handler] = [console_handler]

    if log_to_file:
        log_dir = PROJECT_ROOT / SETTINGS.log_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_dir / "taskcore.log", maxBytes=2_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(
        level=(level or SETTINGS.log_level).upper(),
        handlers=handlers,
        force=True,
    )
    # SQL statement logging is noisy at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
