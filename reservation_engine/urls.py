from django.urls import path
from rest_framework.routers import DefaultRouter

from reservation_engine.views import BookingViewSet, RoomTypeViewSet, default_promo, payment_callback

router = DefaultRouter()
router.register(r'room-types', RoomTypeViewSet)
router.register(r'bookings', BookingViewSet)

urlpatterns = [
    path('promo-codes/default/', default_promo, name='default-promo'),
    path('payments/<str:provider>/callback/', payment_callback, name='payment-callback'),
] + router.urls
