"""Development settings for the rental marketplace.

This module extends the base settings with development specific
configuration, such as enabling debug and allowing all hosts.
Do not use these settings in production!
"""

import structlog

from .base import *  # noqa: F401,F403

# Enable debug mode for development
DEBUG = True

# Allow all hosts in development
ALLOWED_HOSTS = ['*']

# Use console email backend during development
EMAIL_BACKEND = 'django.core.mail.backends.console.EmailBackend'

LOGGING['formatters']['console'] = {  # noqa: F405
    "()": "structlog.stdlib.ProcessorFormatter",
    "processor": structlog.dev.ConsoleRenderer(colors=False),
}
LOGGING['handlers']['console']['formatter'] = 'console'  # noqa: F405
