from django.core.management.base import BaseCommand
from reservation_engine.models import IndividualRoom, PromoCode, RoomType


class Command(BaseCommand):
    help = 'Populate database with sample room types, rooms and promo codes'

    def handle(self, *args, **options):
        catalog = [
            {
                'name': 'Standard Room',
                'price_cents': 120000,  # 1,200 THB
                'monthly_price_cents': 1500000,
                'max_guests': 2,
                'rooms': [('101', 1), ('102', 1), ('103', 1)],
            },
            {
                'name': 'Deluxe Room',
                'price_cents': 180000,
                'monthly_price_cents': 2200000,
                'max_guests': 3,
                'rooms': [('201', 2), ('202', 2)],
            },
            {
                'name': 'Family Suite',
                'price_cents': 280000,
                'monthly_price_cents': 3500000,
                'max_guests': 4,
                'rooms': [('301', 3)],
            },
        ]

        for entry in catalog:
            rooms = entry.pop('rooms')
            room_type, created = RoomType.objects.get_or_create(
                name=entry['name'],
                defaults={**entry, 'total_rooms': len(rooms)},
            )
            if created:
                self.stdout.write(f'Created room type: {room_type.name}')
            else:
                self.stdout.write(f'Room type {room_type.name} already exists')

            for number, floor in rooms:
                room, created = IndividualRoom.objects.get_or_create(
                    number=number,
                    defaults={'room_type': room_type, 'floor': floor},
                )
                if created:
                    self.stdout.write(f'Created room: {room.number} - {room_type.name}')

        promo, created = PromoCode.objects.get_or_create(
            code='WELCOME10',
            defaults={
                'discount_type': PromoCode.DiscountType.PERCENTAGE,
                'discount_value': 10,
                'is_default': True,
            },
        )
        if created:
            self.stdout.write(f'Created promo code: {promo.code}')

        self.stdout.write(
            self.style.SUCCESS('Successfully populated database with sample data')
        )
