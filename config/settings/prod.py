"""Production settings for the rental marketplace.

This module extends the base settings with production specific
configuration. Sensitive values must be provided via environment
variables; startup fails when they are missing.
"""

from config.env import get_env, get_list

from .base import *  # noqa: F401,F403

# Never run with debug enabled in production
DEBUG = False

SECRET_KEY = get_env('DJANGO_SECRET_KEY', required=True)

# Allowed hosts should be defined explicitly via environment variable
ALLOWED_HOSTS = get_list('DJANGO_ALLOWED_HOSTS', '')

STRIPE_SECRET_KEY = get_env('STRIPE_SECRET_KEY', required=True)
PAYMENT_WEBHOOK_SECRET = get_env('PAYMENT_WEBHOOK_SECRET', required=True)

# Configure secure proxies and cookies
CSRF_COOKIE_SECURE = True
SESSION_COOKIE_SECURE = True
SECURE_PROXY_SSL_HEADER = ('HTTP_X_FORWARDED_PROTO', 'https')
