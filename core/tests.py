from django.core.cache import cache
from django.test import RequestFactory, SimpleTestCase, TestCase, override_settings
from django.http import JsonResponse

from .errors import (
    BaseApplicationError, EnhancedErrorHandlingMiddleware, InsufficientPermissionsError,
    InvalidTransitionError, ResourceNotFoundError, get_client_ip, is_api_request, sanitize_data,
)
from .ratelimit import check_rate_limit, rate_limit


class RateLimitTestCase(SimpleTestCase):

    def setUp(self):
        cache.clear()

    def test_allows_up_to_limit_then_denies(self):
        for _ in range(3):
            self.assertTrue(check_rate_limit('caller', 3, 60, now=1000.0).allowed)

        result = check_rate_limit('caller', 3, 60, now=1010.0)
        self.assertFalse(result.allowed)
        self.assertEqual(result.retry_after, 50)

    def test_window_resets(self):
        check_rate_limit('caller', 1, 60, now=1000.0)
        self.assertFalse(check_rate_limit('caller', 1, 60, now=1030.0).allowed)
        self.assertTrue(check_rate_limit('caller', 1, 60, now=1060.0).allowed)

    def test_keys_are_independent(self):
        check_rate_limit('first', 1, 60, now=1000.0)
        self.assertTrue(check_rate_limit('second', 1, 60, now=1000.0).allowed)

    @override_settings(COMPLIANCE_RATE_LIMITS={'demo': (1, 60)})
    def test_decorator_returns_429(self):
        @rate_limit('demo')
        def view(request):
            return JsonResponse({'ok': True})

        factory = RequestFactory()
        self.assertEqual(view(factory.get('/api/demo/', REMOTE_ADDR='10.0.0.9')).status_code, 200)

        response = view(factory.get('/api/demo/', REMOTE_ADDR='10.0.0.9'))
        self.assertEqual(response.status_code, 429)
        self.assertIn('Retry-After', response)

        self.assertEqual(view(factory.get('/api/demo/', REMOTE_ADDR='10.0.0.10')).status_code, 200)


class ErrorClassesTestCase(SimpleTestCase):

    def test_status_codes(self):
        self.assertEqual(ResourceNotFoundError('Submission', 'x').status_code, 404)
        self.assertEqual(InsufficientPermissionsError('review').status_code, 403)
        error = InvalidTransitionError('abc', 'approve', 'REJECTED')
        self.assertEqual(error.status_code, 409)
        self.assertEqual(error.error_code, 'INVALID_TRANSITION')
        self.assertIn('REJECTED', str(error))

    def test_sanitize_data_redacts_secrets(self):
        data = sanitize_data({'password': 'hunter2', 'nested': {'api_key': 'k', 'name': 'ok'}})
        self.assertEqual(data['password'], '[REDACTED]')
        self.assertEqual(data['nested'], {'api_key': '[REDACTED]', 'name': 'ok'})

    def test_client_ip_prefers_forwarded_header(self):
        request = RequestFactory().get('/', HTTP_X_FORWARDED_FOR='1.2.3.4, 10.0.0.1')
        self.assertEqual(get_client_ip(request), '1.2.3.4')

    def test_api_request_detection(self):
        factory = RequestFactory()
        self.assertTrue(is_api_request(factory.get('/api/credits/')))
        self.assertTrue(is_api_request(factory.get('/', HTTP_ACCEPT='application/json')))
        self.assertFalse(is_api_request(factory.get('/admin/')))


class MiddlewareTestCase(SimpleTestCase):

    def setUp(self):
        self.middleware = EnhancedErrorHandlingMiddleware(lambda request: None)
        self.factory = RequestFactory()

    def test_application_error_rendered_as_json(self):
        request = self.factory.get('/api/submissions/')
        response = self.middleware.process_exception(request, ResourceNotFoundError('Submission', 'x'))
        self.assertEqual(response.status_code, 404)
        self.assertIn(b'RESOURCE_NOT_FOUND', response.content)

    def test_non_api_errors_fall_through(self):
        request = self.factory.get('/admin/')
        self.assertIsNone(self.middleware.process_exception(request, ValueError('boom')))

    def test_base_error_defaults(self):
        error = BaseApplicationError('internal detail')
        self.assertEqual(error.status_code, 500)


class HealthCheckTestCase(TestCase):

    def test_healthy(self):
        response = self.client.get('/health/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['checks'], {'database': 'ok', 'cache': 'ok'})
