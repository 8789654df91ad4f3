"""Utility modules for the recurrent DQN core."""

from .logger import get_logger, setup_logging, setup_logging_from_config, LogLevel

__all__ = ['get_logger', 'setup_logging', 'setup_logging_from_config', 'LogLevel']
