"""Read-only view of the room catalog."""
from rest_framework.exceptions import NotFound

from .models import IndividualRoom, RoomType


def get_room_type(room_type_id):
    try:
        return RoomType.objects.get(pk=room_type_id, is_active=True)
    except (RoomType.DoesNotExist, ValueError, TypeError):
        raise NotFound({"error": "Room type not found"})


def active_rooms(room_type_id):
    return IndividualRoom.objects.filter(room_type_id=room_type_id, is_active=True).order_by("number")


def inventory_summary(room_type):
    """Declared inventory versus physical units that can actually be sold."""
    return {
        "declared": room_type.total_rooms,
        "active": active_rooms(room_type.pk).count(),
    }
