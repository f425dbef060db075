import logging
import sys
from logging.config import dictConfig

from pipeyard.config import settings


def setup_logging(level: str | None = None) -> None:
    dictConfig(
        {
            'version': 1,
            'disable_existing_loggers': False,
            'formatters': {
                'default': {
                    'format': '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
                },
            },
            'handlers': {
                'console': {
                    'class': 'logging.StreamHandler',
                    'stream': sys.stdout,
                    'formatter': 'default',
                },
            },
            'loggers': {
                # APScheduler logs every job run at INFO.
                'apscheduler': {
                    'level': 'WARNING',
                },
            },
            'root': {
                'level': (level or settings.log_level).upper(),
                'handlers': ['console'],
            },
        }
    )
    logging.getLogger(__name__).debug('Logging configured')
