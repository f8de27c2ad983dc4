"""
Centralized Logging Configuration for Sollar
Provides structured logging with JSON formatting and log rotation
"""
import logging
import logging.handlers
import os
import sys
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any


# Log levels mapping
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# Determine log directory based on environment
RENDER_DISK_PATH = "/var/data"
if os.getenv('LOG_DIR'):
    LOG_DIR = os.getenv('LOG_DIR')
elif os.path.exists(RENDER_DISK_PATH):
    # Production on Render
    LOG_DIR = os.path.join(RENDER_DISK_PATH, 'logs')
else:
    # Local development
    LOG_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'logs')

# Log file paths
APP_LOG_FILE = os.path.join(LOG_DIR, 'app.log')
ERROR_LOG_FILE = os.path.join(LOG_DIR, 'error.log')
SECURITY_LOG_FILE = os.path.join(LOG_DIR, 'security.log')

# Requests under these paths come from anonymous respondents.
# Nothing identifying the client is attached to their log records.
ANONYMOUS_PATH_PREFIXES = ('/survey/',)

REDACTED = '***REDACTED***'


class JSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging.
    Outputs logs as JSON objects for easier parsing and analysis.
    """

    # Sensitive fields that should not be logged
    SENSITIVE_FIELDS = {
        'password', 'password_hash', 'token', 'secret', 'api_key',
        'access_token', 'refresh_token', 'authorization', 'cookie',
        'session_id', 'csrf_token', 'anonymous_id'
    }

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON"""
        log_data = {
            'timestamp': datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ'),
            'level': record.levelname,
            'logger': record.name,
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'message': record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        # Add extra fields if present (from logger.info('msg', extra={...}))
        if hasattr(record, 'extra_data'):
            log_data['extra'] = self._sanitize_data(record.extra_data)

        # Add request context if available
        try:
            from flask import has_request_context, request, g
            if has_request_context():
                log_data['request'] = {
                    'method': request.method,
                    'path': request.path,
                }
                if not is_anonymous_path(request.path):
                    log_data['request']['remote_addr'] = request.remote_addr
                    log_data['request']['user_agent'] = request.headers.get('User-Agent', '')
                    principal = g.get('principal')
                    if principal is not None:
                        log_data['request']['user_id'] = principal.user_id
                        log_data['request']['organization_id'] = principal.organization_id
        except (ImportError, RuntimeError):
            # Flask not available or no request context
            pass

        return json.dumps(log_data, default=str)

    def _sanitize_data(self, data: Any) -> Any:
        """Remove sensitive information from log data"""
        if isinstance(data, dict):
            return {
                key: REDACTED if str(key).lower() in self.SENSITIVE_FIELDS else self._sanitize_data(value)
                for key, value in data.items()
            }
        elif isinstance(data, (list, tuple)):
            return [self._sanitize_data(item) for item in data]
        else:
            return data


class ColoredConsoleFormatter(logging.Formatter):
    """
    Colored console formatter for better readability in development.
    """

    # ANSI color codes
    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors"""
        color = self.COLORS.get(record.levelname, self.RESET)

        # Format: [TIMESTAMP] LEVEL [module.function] message
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        level = f"{color}{record.levelname:8}{self.RESET}"
        location = f"{record.module}.{record.funcName}"
        message = record.getMessage()

        log_line = f"[{timestamp}] {level} [{location}] {message}"

        # Add exception traceback if present
        if record.exc_info:
            log_line += '\n' + self.formatException(record.exc_info)

        return log_line


class SecurityLogFilter(logging.Filter):
    """
    Filter to identify security-related log events.
    Logs from security module or containing security keywords.
    """

    SECURITY_KEYWORDS = {
        'login', 'logout', 'authentication', 'authorization',
        'permission', 'access denied', 'unauthorized', 'forbidden',
        'not permitted', 'cross-tenant', 'csrf', 'security',
        'suspicious', 'suppressed'
    }

    def filter(self, record: logging.LogRecord) -> bool:
        """Return True if record is security-related"""
        # Check if from security module
        name = record.name.lower()
        if 'security' in name or 'auth' in name or 'identity' in name:
            return True

        # Check message for security keywords
        message = record.getMessage().lower()
        return any(keyword in message for keyword in self.SECURITY_KEYWORDS)


def is_anonymous_path(path: str) -> bool:
    return any(path.startswith(prefix) for prefix in ANONYMOUS_PATH_PREFIXES)


def _rotating_handler(path: str, level: int, backup_count: int = 5):
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=backup_count,
        encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter())
    return handler


def setup_logging(app_name: str = 'sollar') -> logging.Logger:
    """
    Setup centralized logging configuration.

    Args:
        app_name: Name of the application logger

    Returns:
        Configured root logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(LOG_LEVEL)

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    # 1. Console Handler (for development and stdout in production)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(LOG_LEVEL)

    # Use colored formatter for local development, JSON for production
    if os.path.exists(RENDER_DISK_PATH):
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(ColoredConsoleFormatter())

    root_logger.addHandler(console_handler)

    try:
        Path(LOG_DIR).mkdir(parents=True, exist_ok=True)

        # 2. App Log File Handler (all logs)
        root_logger.addHandler(_rotating_handler(APP_LOG_FILE, logging.DEBUG))

        # 3. Error Log File Handler (ERROR and CRITICAL only)
        root_logger.addHandler(_rotating_handler(ERROR_LOG_FILE, logging.ERROR))

        # 4. Security Log File Handler (keep more security logs)
        security_file_handler = _rotating_handler(SECURITY_LOG_FILE, logging.WARNING, backup_count=10)
        security_file_handler.addFilter(SecurityLogFilter())
        root_logger.addHandler(security_file_handler)
    except OSError as e:
        print(f"Warning: Could not setup log file handlers: {e}", file=sys.stderr)

    # Configure third-party loggers to be less verbose
    logging.getLogger('werkzeug').setLevel(logging.WARNING)

    logger = logging.getLogger(app_name)
    logger.info("Logging configured", extra={'extra_data': {
        'log_level': LOG_LEVEL,
        'log_dir': LOG_DIR,
        'environment': 'production' if os.path.exists(RENDER_DISK_PATH) else 'development'
    }})

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def log_security_event(logger: logging.Logger, event_type: str, details: Dict[str, Any]):
    """
    Log a security event with structured data.

    Args:
        logger: Logger instance
        event_type: Type of security event (e.g., 'login_failed', 'access_denied')
        details: Event details dictionary
    """
    logger.warning(
        f"Security event: {event_type}",
        extra={'extra_data': {'event_type': event_type, **details}}
    )


def log_request(logger: logging.Logger, request, response_code: int, duration_ms: float):
    """
    Log HTTP request with details.

    Respondent requests are logged without address or user agent.
    """
    data = {
        'method': request.method,
        'path': request.path,
        'status_code': response_code,
        'duration_ms': duration_ms,
    }
    if not is_anonymous_path(request.path):
        data['remote_addr'] = request.remote_addr
        data['user_agent'] = request.headers.get('User-Agent', '')

    logger.info(f"{request.method} {request.path} {response_code}", extra={'extra_data': data})


# Initialize logging on module import
setup_logging()
