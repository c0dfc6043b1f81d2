import json
import logging
import uuid
import inspect
import os
from datetime import datetime, timezone
from functools import wraps
from google.cloud import logging as cloud_logging

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

# Configure the standard logger
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger('followers-notify')


def cloud_logging_requested():
    """Cloud Logging is attached on Cloud Functions or when asked for explicitly."""
    if os.environ.get('ENABLE_CLOUD_LOGGING', '').lower() in ('1', 'true', 'yes'):
        return True
    return bool(os.environ.get('K_SERVICE'))


# Initialize GCP Cloud Logging
GCP_ENABLED = False
if cloud_logging_requested():
    try:
        client = cloud_logging.Client()
        client.setup_logging(log_level=logging.getLevelName(LOG_LEVEL))
        GCP_ENABLED = True
    except Exception:
        logger.warning("GCP Cloud Logging could not be initialized. Using standard logging.")


def generate_request_id():
    """Generate a unique request ID for tracing."""
    return str(uuid.uuid4())


class StructuredLogger:
    """Structured logger that formats logs consistently."""

    SENSITIVE_FIELDS = ('password', 'token', 'key', 'secret', 'auth')

    def __init__(self, service_name):
        self.service_name = service_name
        self.request_id = None
        self.video_id = None

    def set_context(self, request_id=None, video_id=None):
        """Set the current invocation context."""
        self.request_id = request_id or self.request_id or generate_request_id()
        if video_id is not None:
            self.video_id = video_id
        return self

    def clear_context(self):
        self.request_id = None
        self.video_id = None

    def _format_log(self, message, additional_data=None):
        """Format log message as structured data."""
        caller_frame = inspect.currentframe().f_back.f_back
        function_name = caller_frame.f_code.co_name
        file_name = os.path.basename(caller_frame.f_code.co_filename)

        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": self.service_name,
            "request_id": self.request_id,
            "location": f"{file_name}:{function_name}",
            "message": message
        }

        if self.video_id:
            log_data["video_id"] = self.video_id

        if additional_data:
            log_data["data"] = self._sanitize_data(additional_data)

        return log_data

    def _sanitize_data(self, data):
        """Remove sensitive fields from data before logging."""
        if isinstance(data, list):
            return [self._sanitize_data(item) for item in data]
        if not isinstance(data, dict):
            return data

        sanitized = {}
        for key, value in data.items():
            # counts such as token_count are safe to log
            is_count = isinstance(value, (int, float)) and not isinstance(value, bool)
            if not is_count and any(sensitive in str(key).lower() for sensitive in self.SENSITIVE_FIELDS):
                sanitized[key] = "[REDACTED]"
            elif isinstance(value, (dict, list)):
                sanitized[key] = self._sanitize_data(value)
            else:
                sanitized[key] = value

        return sanitized

    def debug(self, message, data=None):
        """Log a debug message."""
        log_data = self._format_log(message, data)
        logger.debug(json.dumps(log_data, default=str))
        return log_data

    def info(self, message, data=None):
        """Log an info message."""
        log_data = self._format_log(message, data)
        logger.info(json.dumps(log_data, default=str))
        return log_data

    def warning(self, message, data=None):
        """Log a warning message."""
        log_data = self._format_log(message, data)
        logger.warning(json.dumps(log_data, default=str))
        return log_data

    def error(self, message, data=None, exc_info=None):
        """Log an error message."""
        log_data = self._format_log(message, data)
        logger.error(json.dumps(log_data, default=str), exc_info=exc_info)
        return log_data


def create_logger(service_name):
    """Create a structured logger for a service."""
    return StructuredLogger(service_name)


def video_id_from_subject(subject):
    """Firestore CloudEvents carry the document path as subject, e.g. documents/videos/v123."""
    if not subject or not isinstance(subject, str):
        return None
    return subject.rstrip('/').split('/')[-1] or None


def log_function_call(logger):
    """Decorator to log entry and exit of a CloudEvent function."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            video_id = None
            if args:
                try:
                    video_id = video_id_from_subject(args[0]['subject'])
                except (KeyError, TypeError):
                    video_id = None

            logger.clear_context()
            logger.set_context(request_id=generate_request_id(), video_id=video_id)

            event_type = None
            if args:
                try:
                    event_type = args[0]['type']
                except (KeyError, TypeError):
                    event_type = type(args[0]).__name__

            logger.info(f"Function {func.__name__} called", {"event_type": event_type})

            try:
                result = func(*args, **kwargs)
                logger.info(f"Function {func.__name__} completed")
                return result
            except Exception as e:
                logger.error(f"Function {func.__name__} failed: {str(e)}", exc_info=True)
                raise

        return wrapper
    return decorator
