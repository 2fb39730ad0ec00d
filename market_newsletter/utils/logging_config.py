"""
Logging setup for newsletter runs.

Console output is colored for interactive runs or JSON for log shippers. Scheduled
runs also write a daily rotating log plus an errors-only file. Stage metrics and
LLM calls are logged with a machine-readable ``extra_data`` payload.
"""

import json
import logging
import logging.handlers
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

PACKAGE_PREFIX = "market_newsletter."
QUIET_LOGGERS = ("aiohttp", "google_genai", "httpx", "urllib3", "cssutils")


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record):
        payload = {
            'ts': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
            'where': f"{record.module}.{record.funcName}:{record.lineno}",
        }
        extra = getattr(record, 'extra_data', None)
        if extra:
            payload['data'] = extra
        if record.exc_info:
            payload['exception'] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """Short, colored lines for terminal runs."""

    LEVEL_COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record):
        name = record.name
        if name.startswith(PACKAGE_PREFIX):
            name = name[len(PACKAGE_PREFIX):]
        color = self.LEVEL_COLORS.get(record.levelname, '')
        line = (
            f"{self.formatTime(record, '%H:%M:%S')} "
            f"{color}{record.levelname[0]}{self.RESET} "
            f"{name}: {record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _file_handlers(log_dir: Path, structured: bool) -> List[logging.Handler]:
    log_dir.mkdir(parents=True, exist_ok=True)
    plain = logging.Formatter('%(asctime)s | %(levelname)-8s | %(name)s | %(message)s')

    daily = logging.handlers.TimedRotatingFileHandler(
        log_dir / "market_newsletter.log", when='midnight', backupCount=14, encoding='utf-8',
    )
    daily.setLevel(logging.DEBUG)
    daily.setFormatter(StructuredFormatter() if structured else plain)

    # Failed feeds, chunks and sends
    errors = logging.FileHandler(log_dir / "errors.log", encoding='utf-8')
    errors.setLevel(logging.WARNING)
    errors.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)-8s | %(name)s | %(funcName)s:%(lineno)d | %(message)s'
    ))
    return [daily, errors]


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    enable_file_logging: bool = True,
    enable_structured_logging: bool = False
) -> None:
    """
    Replace the root logger's handlers for a newsletter run.

    Args:
        log_level: Console threshold (DEBUG, INFO, WARNING, ERROR)
        log_dir: Directory for the rotating and error logs, 'logs' when omitted
        enable_file_logging: Also write log files
        enable_structured_logging: JSON lines instead of colored text
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG if enable_file_logging else level)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(StructuredFormatter() if enable_structured_logging else ColoredConsoleFormatter())
    root.addHandler(console)

    if enable_file_logging:
        for handler in _file_handlers(Path(log_dir or "logs"), enable_structured_logging):
            root.addHandler(handler)

    configure_pipeline_loggers()


def configure_pipeline_loggers() -> None:
    """Keep HTTP client and CSS parser chatter out of the run log."""
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class PerformanceTracker:
    """Times a block and logs how long it took."""

    def __init__(self, operation_name: str, logger: Optional[logging.Logger] = None):
        self.operation_name = operation_name
        self.logger = logger or logging.getLogger(__name__)
        self.duration_ms: float = 0.0
        self._started: Optional[float] = None

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self._started) * 1000
        if exc_type:
            self.logger.error(f"{self.operation_name} failed after {self.duration_ms:.0f}ms: {exc_val}")
        else:
            self.logger.debug(f"{self.operation_name} took {self.duration_ms:.0f}ms")
        return False


def log_pipeline_metrics(
    logger: logging.Logger,
    stage: str,
    input_count: int,
    output_count: int,
    duration_ms: float,
    **extra_data
):
    """One INFO line per pipeline stage, with the counts attached as ``extra_data``."""
    metrics = {
        'stage': stage,
        'input_count': input_count,
        'output_count': output_count,
        'duration_ms': round(duration_ms, 1),
        **extra_data
    }
    details = ", ".join(f"{k}={v}" for k, v in extra_data.items())
    logger.info(
        f"[{stage}] {input_count} in, {output_count} out in {duration_ms:.0f}ms" + (f" ({details})" if details else ""),
        extra={'extra_data': metrics},
    )


def log_ai_interaction(
    logger: logging.Logger,
    prompt_key: str,
    model: str,
    tokens_used: int,
    response_time_ms: float,
    success: bool,
    **extra_data
):
    """Record one LLM call: prompt, model, token count, latency and outcome."""
    interaction = {
        'prompt_key': prompt_key,
        'model': model,
        'tokens_used': tokens_used,
        'response_time_ms': round(response_time_ms, 1),
        'success': success,
        **extra_data
    }
    level = logging.INFO if success else logging.WARNING
    logger.log(
        level,
        f"{model} {prompt_key}: {'ok' if success else 'failed'}, {tokens_used} tokens, {response_time_ms:.0f}ms",
        extra={'extra_data': interaction},
    )
