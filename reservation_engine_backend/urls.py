from django.urls import path, include
from reservation_engine.views import health_check, welcome

urlpatterns = [
    path('health', health_check, name='health'),
    path('', welcome, name='welcome'),
    path('api/', include('reservation_engine.urls')),
]
