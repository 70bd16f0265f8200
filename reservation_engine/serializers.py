from rest_framework import serializers

from .lookup import payment_status
from .models import Booking, IndividualRoom, PromoCode, RoomType


class RoomTypeSerializer(serializers.ModelSerializer):

    class Meta:
        model = RoomType
        fields = ['id', 'name', 'price_cents', 'monthly_price_cents', 'max_guests', 'total_rooms']

    def to_representation(self, instance):
        data = super().to_representation(instance)
        data['price'] = instance.price_cents / 100.0
        # set by the list view when a date range was requested
        if hasattr(instance, 'available_count'):
            data['available_rooms'] = instance.available_count
        return data


class IndividualRoomSerializer(serializers.ModelSerializer):

    class Meta:
        model = IndividualRoom
        fields = ['id', 'number', 'floor', 'building']


class PromoCodeSerializer(serializers.ModelSerializer):

    class Meta:
        model = PromoCode
        fields = ['code', 'discount_type', 'discount_value', 'valid_from', 'valid_to', 'min_nights']


class StayInput(serializers.Serializer):
    check_in = serializers.DateField()
    check_out = serializers.DateField()

    def validate(self, data):
        if data['check_out'] <= data['check_in']:
            raise serializers.ValidationError("check_out must be after check_in")
        return data


class QuoteRequest(StayInput):
    room_type_id = serializers.IntegerField()
    promo_code = serializers.CharField(required=False, allow_blank=True)


class GuestInput(serializers.Serializer):
    full_name = serializers.CharField(max_length=150)
    email = serializers.EmailField()
    phone = serializers.CharField(allow_blank=True, required=False, max_length=50)
    guest_count = serializers.IntegerField(min_value=1, default=1)
    special_requests = serializers.CharField(allow_blank=True, required=False)


class PaymentOptions(serializers.Serializer):
    payment_provider = serializers.CharField(required=False, allow_blank=True)
    card_token = serializers.CharField(required=False, allow_blank=True)
    source_type = serializers.CharField(required=False, allow_blank=True)
    locale = serializers.CharField(required=False, default='en', max_length=10)

    def provider_options(self):
        data = self.validated_data
        options = {'locale': data.get('locale', 'en')}
        for key in ('card_token', 'source_type'):
            if data.get(key):
                options[key] = data[key]
        return options


class BookingCreate(QuoteRequest, PaymentOptions):
    guest = GuestInput()
    quoted_total_cents = serializers.IntegerField(required=False, min_value=0)


class PaymentInitiate(PaymentOptions):
    payment_provider = serializers.CharField()


class ConfirmPayment(serializers.Serializer):
    reference = serializers.CharField(required=False, allow_blank=True, max_length=100)
    provider = serializers.CharField(required=False, allow_blank=True)


class CancelInput(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, max_length=255)


class BookingSerializer(serializers.ModelSerializer):
    """Read-only booking snapshot returned by lookup and every action."""

    room_type = RoomTypeSerializer(read_only=True)
    room = IndividualRoomSerializer(read_only=True)

    class Meta:
        model = Booking
        fields = [
            'booking_number', 'status', 'room_type', 'room', 'check_in', 'check_out', 'nights',
            'guest_name', 'guest_email', 'guest_phone', 'guest_count', 'special_requests',
            'room_price_cents', 'promo_code', 'discount_cents', 'total_cents',
            'payment_provider', 'payment_reference', 'expires_at', 'created_at',
            'confirmed_at', 'checked_in_at', 'checked_out_at', 'cancelled_at', 'cancellation_reason',
        ]
        read_only_fields = fields

    def to_representation(self, instance):
        data = super().to_representation(instance)
        data['total'] = instance.total_cents / 100.0
        data['payment_status'] = payment_status(instance)
        return data
