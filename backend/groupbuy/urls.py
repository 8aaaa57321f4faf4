"""
URL Configuration for the group buying service
"""
from django.contrib import admin
from django.urls import path, include
from django.http import JsonResponse
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView, SpectacularRedocView


def home_view(request):
    """API root information"""
    return JsonResponse({
        'message': 'Group Buying Service API',
        'version': '1.0.0',
        'description': 'Tiered-price group purchasing with escrow, bot fill and warehouse checks',
        'documentation': {
            'swagger_ui': f"{request.scheme}://{request.get_host()}/api/docs/",
            'redoc': f"{request.scheme}://{request.get_host()}/api/redoc/",
            'openapi_schema': f"{request.scheme}://{request.get_host()}/api/schema/"
        },
        'endpoints': {
            'api': '/api/v1/',
            'admin': '/admin/',
            'health': '/health'
        }
    })


urlpatterns = [
    path('', home_view, name='home'),
    path('admin/', admin.site.urls),

    # API v1 endpoints
    path('api/v1/', include('groupbuy.api_urls')),

    # API Documentation
    path('api/schema/', SpectacularAPIView.as_view(), name='schema'),
    path('api/docs/', SpectacularSwaggerView.as_view(url_name='schema'),
         name='swagger-ui'),
    path('api/redoc/', SpectacularRedocView.as_view(url_name='schema'),
         name='redoc'),
]
