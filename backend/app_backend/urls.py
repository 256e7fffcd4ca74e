from django.contrib import admin
from django.urls import path, include

from .views import health_check

urlpatterns = [
    path('admin/', admin.site.urls),
    path("health/", health_check),
    path('api/rides/', include('rides.urls')),
    path('api/notifications/', include('notifications.urls')),
]
