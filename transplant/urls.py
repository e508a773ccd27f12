"""
URL configuration for the transplant project.

Only operational endpoints live here: the Django admin, a health check
and the Prometheus metrics exporter. The allocation engine itself is
called in-process by the CRUD service.
"""
from django.contrib import admin
from django.urls import path, include

from allocation.views.health import healthz

urlpatterns = [
    path('admin/', admin.site.urls),
    path('healthz', healthz, name='healthz'),
    path('', include('django_prometheus.urls')),
]
