from datetime import datetime

import structlog
from django.http import JsonResponse
from rest_framework import status, viewsets
from rest_framework.decorators import action, api_view
from rest_framework.response import Response

from . import payments, pricing, settlement
from .allocator import GuestInfo, allocate
from .availability import find_available, validate_stay
from .exceptions import InvalidTransition, PaymentError, PaymentVerificationFailed, QuoteChanged
from .inventory import get_room_type, inventory_summary
from .lookup import find_booking
from .models import Booking, RoomType
from .payments import PaymentOutcome
from .serializers import (
    BookingCreate,
    BookingSerializer,
    CancelInput,
    ConfirmPayment,
    PaymentInitiate,
    PromoCodeSerializer,
    QuoteRequest,
    RoomTypeSerializer,
)

logger = structlog.get_logger(__name__)


def welcome(request):
    return JsonResponse({"message": "Welcome to the Reservation Engine"})


def health_check(request):
    return JsonResponse({"status": "ok"})


def _parse_stay(params):
    """Read ``check_in``/``check_out`` query params; None when either is missing."""
    check_in_str = params.get('check_in')
    check_out_str = params.get('check_out')
    if not (check_in_str and check_out_str):
        return None
    check_in = datetime.strptime(check_in_str, '%Y-%m-%d').date()
    check_out = datetime.strptime(check_out_str, '%Y-%m-%d').date()
    validate_stay(check_in, check_out)
    return check_in, check_out


class RoomTypeViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = RoomType.objects.filter(is_active=True).order_by('pk')
    serializer_class = RoomTypeSerializer

    def list(self, request):
        """Room types, with free room counts when a date range is given"""
        try:
            stay = _parse_stay(request.query_params)
        except ValueError:
            return Response({'error': 'Invalid date format. Use YYYY-MM-DD'},
                            status=status.HTTP_400_BAD_REQUEST)

        room_types = self.get_queryset()
        max_price = request.query_params.get('max_price')
        if max_price:
            if not max_price.isdigit():
                return Response({'error': 'max_price must be a whole number'},
                                status=status.HTTP_400_BAD_REQUEST)
            room_types = room_types.filter(price_cents__lte=int(max_price) * 100)

        room_types = list(room_types)
        if stay:
            for room_type in room_types:
                room_type.available_count = len(find_available(room_type.pk, *stay))

        serializer = self.get_serializer(room_types, many=True)
        return Response(serializer.data)

    @action(detail=True, methods=['get'])
    def availability(self, request, pk=None):
        """Free rooms of one type for a date range, with the current price"""
        room_type = get_room_type(pk)
        try:
            stay = _parse_stay(request.query_params)
        except ValueError:
            return Response({'error': 'Invalid date format. Use YYYY-MM-DD'},
                            status=status.HTTP_400_BAD_REQUEST)
        if stay is None:
            return Response({'error': 'check_in and check_out are required'},
                            status=status.HTTP_400_BAD_REQUEST)

        rooms = find_available(room_type.pk, *stay)
        return Response({
            'room_type': RoomTypeSerializer(room_type).data,
            'check_in': stay[0],
            'check_out': stay[1],
            'available': bool(rooms),
            'available_rooms': len(rooms),
            'rooms': [room.number for room in rooms],
            'inventory': inventory_summary(room_type),
            'quote': pricing.quote(room_type, *stay).as_dict(),
        })


class BookingViewSet(viewsets.GenericViewSet):
    queryset = Booking.objects.select_related('room_type', 'room')
    serializer_class = BookingSerializer
    lookup_field = 'booking_number'

    def retrieve(self, request, booking_number=None):
        booking = find_booking(booking_number)
        return Response(self.get_serializer(booking).data)

    def create(self, request):
        """Hold a room for the guest and open a payment if a provider was chosen"""
        serializer = BookingCreate(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        room_type = get_room_type(data['room_type_id'])
        provider_name = data.get('payment_provider')
        if provider_name:
            # fail on a bad provider before a room is held
            payments.get_provider(provider_name)

        quote = pricing.quote(room_type, data['check_in'], data['check_out'], data.get('promo_code'))
        quoted = data.get('quoted_total_cents')
        if quoted is not None and quoted != quote.total_cents:
            raise QuoteChanged(quote=quote.as_dict())

        guest = data['guest']
        booking = allocate(
            room_type,
            data['check_in'],
            data['check_out'],
            GuestInfo(
                name=guest['full_name'],
                email=guest['email'],
                phone=guest.get('phone', ''),
                count=guest['guest_count'],
                special_requests=guest.get('special_requests', ''),
            ),
            quote,
        )

        payment = None
        if provider_name:
            try:
                payment = settlement.initiate_payment(
                    booking, provider_name, **serializer.provider_options()
                ).as_dict()
            except PaymentError as exc:
                # the hold stands; the guest can retry through pay/
                exc.booking_number = exc.booking_number or booking.booking_number
                logger.warning("payment.initiation_failed", booking_number=booking.booking_number,
                               provider=provider_name, error=str(exc))
                payment = {'error': exc.message}

        return Response({
            'booking': self.get_serializer(booking).data,
            'payment': payment,
        }, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=['post'])
    def quote(self, request):
        """Price a stay without holding anything"""
        serializer = QuoteRequest(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        room_type = get_room_type(data['room_type_id'])
        validate_stay(data['check_in'], data['check_out'])
        return Response(
            pricing.quote(room_type, data['check_in'], data['check_out'], data.get('promo_code')).as_dict()
        )

    @action(detail=True, methods=['post'])
    def pay(self, request, booking_number=None):
        """Open a new payment for a held booking"""
        serializer = PaymentInitiate(data=request.data)
        serializer.is_valid(raise_exception=True)
        booking = find_booking(booking_number)
        initiation = settlement.initiate_payment(
            booking, serializer.validated_data['payment_provider'], **serializer.provider_options()
        )
        return Response({
            'booking': self.get_serializer(booking).data,
            'payment': initiation.as_dict(),
        })

    @action(detail=True, methods=['post'])
    def confirm_payment(self, request, booking_number=None):
        """Confirm after the guest returns from the provider; the provider is asked, not trusted"""
        serializer = ConfirmPayment(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = settlement.confirm_payment(
            booking_number,
            provider_reference=serializer.validated_data.get('reference') or None,
            provider=serializer.validated_data.get('provider') or None,
        )
        pending = result.outcome == PaymentOutcome.PENDING
        return Response({
            'booking': self.get_serializer(result.booking).data,
            'payment_outcome': result.outcome.value,
            'transitioned': result.transitioned,
        }, status=status.HTTP_202_ACCEPTED if pending else status.HTTP_200_OK)

    @action(detail=True, methods=['post'])
    def check_in(self, request, booking_number=None):
        booking = settlement.check_in(booking_number)
        return Response(self.get_serializer(booking).data)

    @action(detail=True, methods=['post'])
    def check_out(self, request, booking_number=None):
        booking = settlement.check_out(booking_number)
        return Response(self.get_serializer(booking).data)

    @action(detail=True, methods=['post'])
    def cancel(self, request, booking_number=None):
        serializer = CancelInput(data=request.data)
        serializer.is_valid(raise_exception=True)
        booking = settlement.cancel(booking_number, serializer.validated_data.get('reason', ''))
        return Response(self.get_serializer(booking).data)


@api_view(['POST'])
def payment_callback(request, provider):
    """Provider webhook. Acknowledged once handled so the provider stops retrying."""
    try:
        result = settlement.handle_callback(provider, request.data)
    except (PaymentVerificationFailed, InvalidTransition) as exc:
        logger.warning("payment.callback_rejected", provider=provider, error=str(exc))
        return Response({'received': True, 'processed': False})
    if result is None:
        return Response({'received': True, 'processed': False})
    return Response({
        'received': True,
        'processed': True,
        'booking_number': result.booking.booking_number,
        'status': result.booking.status,
        'payment_outcome': result.outcome.value,
    })


@api_view(['GET'])
def default_promo(request):
    promo = pricing.default_promo()
    return Response({'promo_code': PromoCodeSerializer(promo).data if promo else None})
