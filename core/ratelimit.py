"""
Fixed-window request counters for expensive endpoints.

Counters live in the default Django cache. With the LocMem backend that
cache is private to the process, so each worker process enforces its own
limit; a deployment with several instances needs a shared cache backend
for the limit to hold globally.
"""

import logging
import math
import time
from dataclasses import dataclass
from functools import wraps

from django.conf import settings
from django.core.cache import cache
from django.http import JsonResponse

from .errors import get_client_ip

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    retry_after: int = 0


def check_rate_limit(key: str, limit: int, window_seconds: int, now: float = None) -> RateLimitResult:
    """
    Count one request against ``key``.

    The first request opens a window of ``window_seconds``; up to ``limit``
    requests are allowed inside it and the counter resets when it expires.
    ``retry_after`` is the number of whole seconds until the window resets.
    """
    now = time.time() if now is None else now
    cache_key = f"rate_limit:{key}"
    bucket = cache.get(cache_key)

    if bucket is None or bucket['reset_at'] <= now:
        cache.set(cache_key, {'count': 1, 'reset_at': now + window_seconds}, window_seconds)
        return RateLimitResult(allowed=True)

    ttl = max(1, math.ceil(bucket['reset_at'] - now))

    if bucket['count'] < limit:
        bucket['count'] += 1
        cache.set(cache_key, bucket, ttl)
        return RateLimitResult(allowed=True)

    return RateLimitResult(allowed=False, retry_after=ttl)


def rate_limit(scope):
    """
    View decorator applying the ``COMPLIANCE_RATE_LIMITS[scope]`` limit per
    caller (user id, or client IP for anonymous requests).

    Works on plain views and on REST framework ``APIView`` methods.
    """
    def decorator(view_func):
        @wraps(view_func)
        def _wrapped_view(*args, **kwargs):
            request = args[1] if len(args) > 1 and hasattr(args[1], 'META') else args[0]
            limit, window = settings.COMPLIANCE_RATE_LIMITS[scope]

            user = getattr(request, 'user', None)
            caller = user.pk if user is not None and user.is_authenticated else get_client_ip(request)
            result = check_rate_limit(f"{scope}:{caller}", limit, window)

            if not result.allowed:
                logger.warning(f"Rate limit exceeded for {scope} by {caller}")
                response = JsonResponse({
                    'error': {
                        'code': 'RATE_LIMITED',
                        'message': 'Rate limit exceeded. Please try again later.',
                    },
                    'status': 429,
                }, status=429)
                response['Retry-After'] = str(result.retry_after)
                return response

            return view_func(*args, **kwargs)
        return _wrapped_view
    return decorator
