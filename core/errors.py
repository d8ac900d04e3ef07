import logging
import traceback
import hashlib
from datetime import datetime
from typing import Dict, Any

import sentry_sdk
from django.conf import settings
from django.http import JsonResponse, HttpRequest, HttpResponse
from django.core.cache import cache
from django.core.exceptions import PermissionDenied, SuspiciousOperation, ValidationError
from django.utils import timezone
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION & CONSTANTS
# ============================================================================

class ErrorHandlerConfig:
    """
    Centralized configuration for error handling behavior.
    """

    ENABLE_SENTRY = getattr(settings, 'SENTRY_ENABLED', False)

    # Response behavior
    SHOW_DEBUG_INFO = settings.DEBUG
    SHOW_STACK_TRACES = settings.DEBUG

    # Security settings
    SANITIZE_SENSITIVE_DATA = True
    SENSITIVE_KEYS = [
        'password', 'secret', 'api_key', 'token', 'authorization',
        'cookie', 'session', 'csrf', 'private_key'
    ]


# ============================================================================
# CUSTOM EXCEPTION CLASSES
# ============================================================================

class BaseApplicationError(Exception):
    """
    Base exception class for all application-specific errors.

    Provides structured error information and consistent handling
    across the application.
    """

    def __init__(
        self,
        message: str,
        error_code: str = None,
        status_code: int = 500,
        user_message: str = None,
        context: Dict[str, Any] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.status_code = status_code
        self.user_message = user_message or message
        self.context = context or {}
        self.timestamp = timezone.now()


class ResourceNotFoundError(BaseApplicationError):
    """Raised when a directly addressed resource doesn't exist."""

    def __init__(self, resource_type: str, identifier: str, **kwargs):
        message = f"{resource_type} with identifier '{identifier}' not found"
        super().__init__(
            message=message,
            error_code='RESOURCE_NOT_FOUND',
            status_code=404,
            user_message=f"The {resource_type.lower()} you're looking for doesn't exist.",
            **kwargs
        )


class InsufficientPermissionsError(BaseApplicationError):
    """Raised when user lacks required permissions."""

    def __init__(self, required_permission: str, **kwargs):
        message = f"Permission denied: requires '{required_permission}'"
        super().__init__(
            message=message,
            error_code='INSUFFICIENT_PERMISSIONS',
            status_code=403,
            user_message="You don't have permission to perform this action.",
            **kwargs
        )


class InvalidTransitionError(BaseApplicationError):
    """Raised when a submission is not in the state a transition requires."""

    def __init__(self, identifier: str, action: str, current_status: str = None, **kwargs):
        message = f"Cannot {action} submission '{identifier}'"
        if current_status:
            message += f" in status {current_status}"
        super().__init__(
            message=message,
            error_code='INVALID_TRANSITION',
            status_code=409,
            user_message=f"This submission can no longer be {action}d.",
            **kwargs
        )


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def generate_error_id(request: HttpRequest, error: Exception) -> str:
    """
    Generate a unique error ID users can quote to support, and that
    correlates the response with log and Sentry entries.
    """
    timestamp = datetime.now().isoformat()
    hash_input = f"{timestamp}:{request.path}:{type(error).__name__}:{str(error)}"
    return hashlib.sha256(hash_input.encode()).hexdigest()[:16].upper()


def sanitize_data(data: Any, depth: int = 0, max_depth: int = 5) -> Any:
    """
    Recursively redact sensitive keys (passwords, tokens, ...) from data
    destined for logs and error responses.
    """
    if depth > max_depth:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(data, dict):
        sanitized = {}
        for key, value in data.items():
            key_lower = str(key).lower()
            if any(sensitive in key_lower for sensitive in ErrorHandlerConfig.SENSITIVE_KEYS):
                sanitized[key] = "[REDACTED]"
            else:
                sanitized[key] = sanitize_data(value, depth + 1, max_depth)
        return sanitized

    elif isinstance(data, (list, tuple)):
        return [sanitize_data(item, depth + 1, max_depth) for item in data]

    elif isinstance(data, (str, int, float, bool, type(None))):
        return data

    return str(data)


def get_client_ip(request: HttpRequest) -> str:
    """Extract the real client IP address, accounting for proxies."""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        return x_forwarded_for.split(',')[0].strip()

    x_real_ip = request.META.get('HTTP_X_REAL_IP')
    if x_real_ip:
        return x_real_ip.strip()

    return request.META.get('REMOTE_ADDR', 'unknown')


def capture_request_context(request: HttpRequest) -> Dict[str, Any]:
    """Extract sanitized request context for error logs."""
    user = getattr(request, 'user', None)
    context = {
        'method': request.method,
        'path': request.path,
        'user': {
            'id': getattr(user, 'id', None),
            'username': getattr(user, 'username', 'anonymous'),
            'is_authenticated': bool(user and user.is_authenticated),
        },
        'client': {
            'ip': get_client_ip(request),
            'user_agent': request.META.get('HTTP_USER_AGENT', 'Unknown'),
        },
        'query_params': dict(request.GET.items()),
        'timestamp': timezone.now().isoformat(),
    }

    if ErrorHandlerConfig.SANITIZE_SENSITIVE_DATA:
        context = sanitize_data(context)

    return context


def log_error_to_monitoring(
    error: Exception,
    request: HttpRequest,
    error_id: str,
    context: Dict[str, Any],
    level: int = logging.ERROR
) -> None:
    """
    Send error information to Sentry (when enabled) and the structured logger.
    """
    if ErrorHandlerConfig.ENABLE_SENTRY and level >= logging.ERROR:
        with sentry_sdk.new_scope() as scope:
            scope.set_context("error_details", {
                "error_id": error_id,
                "error_type": type(error).__name__,
            })
            scope.set_context("request_context", context)
            sentry_sdk.capture_exception(error)

    logger.log(
        level,
        f"Error {error_id}: {type(error).__name__}: {error}",
        extra={
            'error_id': error_id,
            'error_type': type(error).__name__,
            'request_context': context,
        },
        exc_info=level >= logging.ERROR
    )


def is_api_request(request: HttpRequest) -> bool:
    """Determine if the request expects a JSON response."""
    if 'application/json' in request.META.get('HTTP_ACCEPT', ''):
        return True
    if request.path.startswith('/api/'):
        return True
    return request.GET.get('format') == 'json'


# ============================================================================
# ERROR RESPONSE BUILDERS
# ============================================================================

def build_error_payload(
    request: HttpRequest,
    error: Exception,
    error_code: str,
    error_message: str,
    status_code: int
) -> Dict[str, Any]:
    """
    Build the standardized JSON error body shared by the middleware and
    the REST framework exception handler.
    """
    error_id = generate_error_id(request, error)
    level = logging.ERROR if status_code >= 500 else logging.WARNING
    log_error_to_monitoring(error, request, error_id, capture_request_context(request), level)

    payload = {
        'error': {
            'code': error_code,
            'message': error_message,
            'request_id': error_id,
            'timestamp': timezone.now().isoformat(),
        },
        'status': status_code,
    }

    if isinstance(error, BaseApplicationError) and error.context:
        payload['error']['context'] = sanitize_data(error.context)

    if ErrorHandlerConfig.SHOW_DEBUG_INFO:
        payload['debug'] = {
            'exception_type': type(error).__name__,
            'exception_message': str(error),
            'path': request.path,
        }
        if ErrorHandlerConfig.SHOW_STACK_TRACES:
            payload['debug']['stack_trace'] = traceback.format_tb(error.__traceback__)

    return payload


def build_json_error_response(
    request: HttpRequest,
    error: Exception,
    error_code: str,
    error_message: str,
    status_code: int
) -> JsonResponse:
    """Return errors in a consistent format that API clients can parse."""
    payload = build_error_payload(request, error, error_code, error_message, status_code)
    return JsonResponse(payload, status=status_code)


def api_exception_handler(exc, context):
    """
    REST framework exception handler.

    Application errors and Django model validation errors get the same
    JSON body as the middleware produces. Serializer validation,
    authentication and throttling keep the framework's default rendering.
    """
    request = context['request']

    if isinstance(exc, BaseApplicationError):
        payload = build_error_payload(
            request, exc, exc.error_code, exc.user_message, exc.status_code
        )
        return Response(payload, status=exc.status_code)

    if isinstance(exc, ValidationError):
        payload = build_error_payload(request, exc, 'VALIDATION_ERROR', ' '.join(exc.messages), 400)
        return Response(payload, status=400)

    return drf_exception_handler(exc, context)


# ============================================================================
# MIDDLEWARE FOR GLOBAL ERROR HANDLING
# ============================================================================

class EnhancedErrorHandlingMiddleware:
    """
    Catches exceptions raised by plain Django views and renders them as
    JSON for API clients. Non-API requests fall through to Django's own
    handlers.

    Usage:
        Add to settings.py MIDDLEWARE:
        'core.errors.EnhancedErrorHandlingMiddleware',
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        return self.get_response(request)

    def process_exception(self, request, exception):
        if isinstance(exception, BaseApplicationError):
            return build_json_error_response(
                request,
                exception,
                exception.error_code,
                exception.user_message,
                exception.status_code
            )

        if not is_api_request(request):
            return None

        if isinstance(exception, PermissionDenied):
            return build_json_error_response(
                request, exception, '403',
                'You do not have permission to access this resource.', 403
            )
        if isinstance(exception, SuspiciousOperation):
            return build_json_error_response(
                request, exception, '400',
                'Your request appears to be malformed or suspicious.', 400
            )

        logger.critical(f"Unhandled exception on {request.path}", exc_info=exception)
        return build_json_error_response(
            request, exception, '500',
            'An internal server error occurred. Our team has been notified.', 500
        )


# ============================================================================
# HEALTH CHECK & MONITORING ENDPOINTS
# ============================================================================

def health_check(request: HttpRequest) -> HttpResponse:
    """
    Health check endpoint for load balancers and monitoring systems.
    """
    from django.db import connection

    status = {
        'status': 'healthy',
        'timestamp': timezone.now().isoformat(),
        'version': getattr(settings, 'VERSION', 'dev'),
        'checks': {}
    }

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
        status['checks']['database'] = 'ok'
    except Exception as e:
        logger.error(f"Health check database failure: {e}")
        status['status'] = 'unhealthy'
        status['checks']['database'] = 'error'

    try:
        cache.set('health_check', 'ok', 10)
        cache.get('health_check')
        status['checks']['cache'] = 'ok'
    except Exception as e:
        logger.error(f"Health check cache failure: {e}")
        status['status'] = 'unhealthy'
        status['checks']['cache'] = 'error'

    return JsonResponse(status, status=200 if status['status'] == 'healthy' else 503)
