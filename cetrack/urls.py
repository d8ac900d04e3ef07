from django.contrib import admin
from django.urls import path, include

from core.errors import health_check

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/', include('compliance.urls')),
    path('health/', health_check, name='health_check'),
]
