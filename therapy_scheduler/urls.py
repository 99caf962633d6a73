"""
URL configuration for therapy_scheduler project.
"""
from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/scheduling/', include('scheduling.urls')),
]
