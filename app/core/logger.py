import logging
import sys
import json
from datetime import datetime
from pathlib import Path
from logging.handlers import TimedRotatingFileHandler


def _render_context(context) -> str:
    try:
        return json.dumps(context, indent=2, default=str)
    except (TypeError, ValueError):
        return str(context)


class FileLogFormatter(logging.Formatter):
    """Plain formatter for file output (no colors)"""

    def format_level(self, record) -> str:
        return record.levelname

    def format(self, record):
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')

        # [timestamp] LEVEL (logger): message
        log_entry = f"[{timestamp}] {self.format_level(record)} ({record.name}): {record.getMessage()}"

        if record.exc_info:
            log_entry += f"\n{self.formatException(record.exc_info)}"

        if getattr(record, 'context', None):
            log_entry += f"\nContext: {_render_context(record.context)}"

        return log_entry


class ColoredLogFormatter(FileLogFormatter):
    """Console formatter, same layout as the file output with a colored level"""

    COLORS = {
        'DEBUG': '\033[36m',  # Cyan
        'INFO': '\033[32m',  # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',  # Red
        'CRITICAL': '\033[35m',  # Purple
    }
    RESET = '\033[0m'

    def format_level(self, record) -> str:
        color = self.COLORS.get(record.levelname, '')
        return f"{color}{record.levelname}{self.RESET}"


def setup_logging(
        log_level=logging.INFO,
        log_dir='logs',
        app_name='drcal-jobs',
        backup_count=30,
        to_file=True,
):
    """
    Configure a named logger with colored console output and a daily rotated file

    """
    logger_instance = logging.getLogger(app_name)
    logger_instance.setLevel(log_level)

    # Prevent duplicate handlers if called multiple times
    if logger_instance.handlers:
        return logger_instance

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ColoredLogFormatter())
    logger_instance.addHandler(console_handler)

    if not to_file:
        return logger_instance

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    # rotated files keep the app-name-YYYY-MM-DD.log naming
    today = datetime.now().strftime('%Y-%m-%d')
    log_file = log_path / f"{app_name}-{today}.log"

    file_handler = TimedRotatingFileHandler(
        filename=str(log_file),
        when='midnight',
        interval=1,
        backupCount=backup_count,
        encoding='utf-8'
    )
    file_handler.namer = lambda default_name: default_name.replace(
        f"{app_name}-{today}.log.", f"{app_name}-"
    )
    file_handler.setFormatter(FileLogFormatter())
    logger_instance.addHandler(file_handler)

    return logger_instance


def log_with_context(logger, level, message, context=None, exc_info=None):
    """Log a message with additional context data"""
    extra = {'context': context} if context else {}
    logger.log(level, message, extra=extra, exc_info=exc_info)


def debug(logger, message, context=None):
    """Log debug message with optional context"""
    log_with_context(logger, logging.DEBUG, message, context)


def info(logger, message, context=None):
    """Log info message with optional context"""
    log_with_context(logger, logging.INFO, message, context)


def warning(logger, message, context=None):
    """Log warning message with optional context"""
    log_with_context(logger, logging.WARNING, message, context)


def error(logger, message, context=None, exc_info=None):
    """Log error message with optional context"""
    log_with_context(logger, logging.ERROR, message, context, exc_info)


def critical(logger, message, context=None, exc_info=None):
    """Log critical message with optional context"""
    log_with_context(logger, logging.CRITICAL, message, context, exc_info)
