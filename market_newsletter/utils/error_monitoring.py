import json
import logging
import traceback
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(Enum):
    """Error taxonomy for a pipeline run"""
    SOURCE_FETCH = "source_fetch"
    CHUNK_ANNOTATION = "chunk_annotation"
    DIGEST = "digest"
    CONFIGURATION = "configuration"


class ErrorSeverity(Enum):
    """Error severity levels"""
    CRITICAL = "critical"
    MEDIUM = "medium"
    LOW = "low"


KIND_SEVERITY: Dict[ErrorKind, ErrorSeverity] = {
    ErrorKind.SOURCE_FETCH: ErrorSeverity.LOW,
    ErrorKind.CHUNK_ANNOTATION: ErrorSeverity.MEDIUM,
    ErrorKind.DIGEST: ErrorSeverity.LOW,
    ErrorKind.CONFIGURATION: ErrorSeverity.CRITICAL,
}


class ConfigurationError(Exception):
    """Invalid arguments or unreadable configuration. Aborts the run."""
    pass


@dataclass
class ErrorContext:
    """Context for an error occurrence"""
    kind: ErrorKind
    error_type: str
    error_message: str
    stack_trace: str
    timestamp: datetime
    service: str
    operation: str
    severity: str
    metadata: Optional[Dict[str, Any]] = None


class ErrorHandler:
    """
    Records errors absorbed at their boundary and escalates configuration errors.

    Source fetch, chunk annotation and digest failures are logged and counted so the
    run can still return a best-effort result. Configuration errors are re-raised.
    """

    def __init__(self) -> None:
        self.error_history: List[ErrorContext] = []
        self.error_counts: Dict[ErrorKind, int] = defaultdict(int)
        self.logger = logging.getLogger(__name__)

    def handle_error(
        self,
        error: Exception,
        kind: ErrorKind,
        service: str,
        operation: str,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        severity = KIND_SEVERITY[kind]
        error_context = ErrorContext(
            kind=kind,
            error_type=type(error).__name__,
            error_message=str(error),
            stack_trace=''.join(traceback.format_exception(type(error), error, error.__traceback__)),
            timestamp=datetime.now(),
            service=service,
            operation=operation,
            severity=severity.value,
            metadata=context or {},
        )

        self.error_history.append(error_context)
        self.error_counts[kind] += 1

        log = self.logger.error if severity == ErrorSeverity.CRITICAL else self.logger.warning
        log(json.dumps({
            'event': 'error',
            'kind': kind.value,
            'service': service,
            'operation': operation,
            'severity': severity.value,
            'error_type': error_context.error_type,
            'error_message': error_context.error_message,
            'timestamp': error_context.timestamp.isoformat(),
            **(context or {}),
        }, ensure_ascii=False, default=str))

        if kind == ErrorKind.CONFIGURATION:
            if isinstance(error, ConfigurationError):
                raise error
            raise ConfigurationError(f"{service}:{operation} - {error}") from error

        return error_context

    def count(self, kind: ErrorKind) -> int:
        return self.error_counts.get(kind, 0)

    def get_error_statistics(self) -> Dict[str, Any]:
        return {
            'total_errors': sum(self.error_counts.values()),
            'by_kind': {kind.value: count for kind, count in self.error_counts.items()},
        }
