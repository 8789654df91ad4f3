"""
Logging for the recurrent DQN core.

Every module logs through a child of the 'drqn' logger:

    from drqn.utils.logger import get_logger

    logger = get_logger(__name__)
    logger.info("Iter 0: Updating Clone Net")

Two helpers give training events a fixed, greppable shape:

    log_update('sequential', 120, train_steps=3, loss=0.0412)
        -> "Iter 120: SEQUENTIAL update | train_steps=3 | loss=0.041200"
    log_model_event('snapshot', 'snapshots/drqn_iter_120.solverstate', iteration=120)
        -> "SNAPSHOT | snapshots/drqn_iter_120.solverstate | iteration=120"

Verbosity and the log directory come from LOG_LEVEL and LOG_DIR in config.py
(see setup_logging_from_config).
"""

import logging
import sys
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'


class LogLevel(Enum):
    """Log levels accepted by setup_logging (names match Config.LOG_LEVEL)."""
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR


# Module-level state
_initialized = False
_file_handler: Optional[logging.FileHandler] = None


def setup_logging(
    log_dir: str = 'logs',
    level: LogLevel = LogLevel.INFO,
    console_output: bool = True,
    file_output: bool = False,
    log_filename: Optional[str] = None,
    force: bool = False,
) -> None:
    """
    Initialize the 'drqn' logger.

    Args:
        log_dir: Directory for log files
        level: Minimum log level to capture
        console_output: Whether to output to stdout
        file_output: Whether to output to a file in log_dir
        log_filename: Custom log filename (default: drqn_YYYYMMDD_HHMMSS.log)
        force: Reconfigure even if logging was already initialized
    """
    global _initialized, _file_handler

    if _initialized and not force:
        return
    _file_handler = None

    root_logger = logging.getLogger('drqn')
    root_logger.setLevel(level.value)
    for handler in root_logger.handlers:
        handler.close()
    root_logger.handlers.clear()

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level.value)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(console_handler)

    if file_output:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        if log_filename is None:
            log_filename = f"drqn_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

        _file_handler = logging.FileHandler(directory / log_filename, mode='a', encoding='utf-8')
        _file_handler.setLevel(logging.DEBUG)  # Capture everything in file
        _file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(_file_handler)

    _initialized = True
    root_logger.info(f"Logging initialized (level={level.name}, file={file_output})")


def setup_logging_from_config(config, quiet: bool = False, file_output: bool = False) -> None:
    """
    (Re)initialize logging from a Config's LOG_DIR and LOG_LEVEL.

    Args:
        config: Configuration object
        quiet: Only log warnings and errors, whatever LOG_LEVEL says
        file_output: Also write drqn_*.log into LOG_DIR
    """
    setup_logging(
        log_dir=config.LOG_DIR,
        level=LogLevel.WARNING if quiet else LogLevel[config.LOG_LEVEL],
        file_output=file_output,
        force=True,
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger under the 'drqn' namespace.

    Args:
        name: Module name (typically __name__)
    """
    # Auto-initialize with defaults if not already done
    if not _initialized:
        setup_logging()

    # Strip 'drqn.' prefix so package modules are not prefixed twice
    if name.startswith('drqn.'):
        name = name[5:]

    return logging.getLogger(f'drqn.{name}')


def get_log_path() -> Optional[Path]:
    """Get the current log file path."""
    if _file_handler is not None:
        return Path(_file_handler.baseFilename)
    return None


def log_update(strategy: str, iteration: int, train_steps: int, loss: Optional[float]) -> None:
    """
    Log the outcome of one update pass at DEBUG level.

    Args:
        strategy: 'sequential' or 'random'
        iteration: Live iteration after the pass
        train_steps: Number of train_step() calls in the pass
        loss: Loss of the last train_step(), None if nothing was trained
    """
    logger = get_logger('updates')
    loss_text = 'n/a' if loss is None else f"{loss:.6f}"
    logger.debug(
        f"Iter {iteration}: {strategy.upper()} update | "
        f"train_steps={train_steps} | loss={loss_text}"
    )


def log_model_event(event: str, path: str, **kwargs) -> None:
    """
    Log snapshot file events.

    Args:
        event: Event type ('snapshot', 'restore', 'load')
        path: File path or snapshot stem
        **kwargs: Additional context (e.g., iteration, transitions)
    """
    logger = get_logger('model')

    extra = " | ".join(f"{k}={v}" for k, v in kwargs.items())
    if extra:
        logger.info(f"{event.upper()} | {path} | {extra}")
    else:
        logger.info(f"{event.upper()} | {path}")
