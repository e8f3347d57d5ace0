"""
Part of dotnetmeta

All loggers of the package hang below the "dotnetmeta" logger, which owns the only handler.
"""

import logging
from typing import Optional

PACKAGE_LOGGER_NAME = 'dotnetmeta'
LOG_FORMAT = '%(levelname)s - %(process)d - %(asctime)s - %(filename)s - %(lineno)d - %(message)s'


def initialize_logging(level: int) -> logging.Logger:
    """
    Attach the console handler to the package logger. The level is only set together with the handler, later calls
    leave an existing configuration alone.
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER_NAME)

    if not package_logger.handlers:
        package_logger.setLevel(level)

        formatter = logging.Formatter(LOG_FORMAT)

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        package_logger.addHandler(console_handler)
        package_logger.propagate = False

    return package_logger


def get_logger(logger_name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Get a child logger of the package logger, e.g. get_logger('image') -> "dotnetmeta.image".
    Passing a level configures the package logger if nothing has configured it before.
    """
    if level is not None:
        initialize_logging(level)

    if logger_name == PACKAGE_LOGGER_NAME or logger_name.startswith(f'{PACKAGE_LOGGER_NAME}.'):
        return logging.getLogger(logger_name)

    return logging.getLogger(f'{PACKAGE_LOGGER_NAME}.{logger_name}')
