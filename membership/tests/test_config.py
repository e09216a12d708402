from django.conf import settings
from django.test import SimpleTestCase


class LoggingConfigTests(SimpleTestCase):
    def test_service_logs_go_to_console(self):
        self.assertEqual(set(settings.LOGGING['handlers']), {'console'})
        for name in ('membership', 'celery'):
            self.assertEqual(settings.LOGGING['loggers'][name]['handlers'], ['console'])
            self.assertFalse(settings.LOGGING['loggers'][name]['propagate'])
