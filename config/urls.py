"""URL configuration for the rental marketplace.

Django admin, the versioned REST API of each app, the provider webhook
and the OpenAPI schema.
"""
from django.contrib import admin  # type: ignore
from django.urls import path, include  # type: ignore
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView  # type: ignore

from apps.finances.views import PaymentWebhookView

urlpatterns = [
    path('admin/', admin.site.urls),
    # Application URLs
    path('api/v1/items/', include('apps.items.urls')),
    path('api/v1/rentals/', include('apps.rentals.urls')),
    path('api/v1/payments/', include('apps.finances.urls')),
    # Payment provider webhook (signature-authenticated)
    path('api/v1/webhooks/payments/', PaymentWebhookView.as_view(), name='payment-webhook'),
    # OpenAPI
    path('api/schema/', SpectacularAPIView.as_view(), name='schema'),
    path('api/docs/', SpectacularSwaggerView.as_view(url_name='schema'), name='swagger-ui'),
]
