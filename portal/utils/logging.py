"""
portal/utils/logging.py
───────────────────────
Configures logging for the staff portal.
"""
import os
import sys
import logging
from logging.handlers import RotatingFileHandler
from flask import request, has_request_context


class RequestFormatter(logging.Formatter):
    """
    Formatter that injects request info (IP, URL) into the record
    when a request context is available.
    """
    def format(self, record):
        if has_request_context():
            record.url = request.url
            record.remote_addr = request.remote_addr
        else:
            record.url = None
            record.remote_addr = None
        return super().format(record)


def _already_configured(logger, kind):
    return any(getattr(h, '_portal_handler', None) == kind for h in logger.handlers)


def setup_logging(app):
    """
    Configure rotating file logging (logs/app.log) plus stdout.
    Max size: 5MB
    Backup count: 5 files
    Format: timestamp | level | module | remote_addr | url | message

    The service modules log through ``logging.getLogger('portal.*')``,
    which propagates to the app logger configured here.
    """
    logger = app.logger

    # 1. File Logger (skipped under tests and on read-only filesystems)
    if not app.testing and not _already_configured(logger, 'file'):
        try:
            log_dir = app.config.get('LOG_DIR') or os.path.join(app.root_path, '..', 'logs')
            os.makedirs(log_dir, exist_ok=True)

            file_handler = RotatingFileHandler(
                os.path.join(log_dir, 'app.log'),
                maxBytes=5 * 1024 * 1024,
                backupCount=5
            )
            file_handler.setFormatter(RequestFormatter(
                '%(asctime)s | %(levelname)s | %(name)s | %(remote_addr)s | %(url)s | %(message)s'
            ))
            file_handler.setLevel(logging.INFO)
            file_handler._portal_handler = 'file'
            logger.addHandler(file_handler)
        except OSError:
            pass  # stdout only

    # 2. Stdout Logger (what gunicorn / the platform collects)
    if not _already_configured(logger, 'stream'):
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)s | %(name)s | %(message)s'
        ))
        stream_handler.setLevel(logging.INFO)
        stream_handler._portal_handler = 'stream'
        logger.addHandler(stream_handler)

    logger.setLevel(logging.INFO)
    logger.info("Barber portal startup")
