"""API views for items and their availability calendar."""

from __future__ import annotations

from django_filters.rest_framework import DjangoFilterBackend  # type: ignore
from rest_framework import filters, permissions, status, viewsets  # type: ignore
from rest_framework.decorators import action  # type: ignore
from rest_framework.response import Response  # type: ignore

from shared.application.bootstrap import get_services
from shared.domain.value_objects import Actor

from .models import Item
from .serializers import (
    AvailabilityWindowCreateSerializer,
    IntervalSerializer,
    ItemSerializer,
    RecurringWindowSerializer,
    booking_to_dict,
    window_to_dict,
)


class IsOwnerOrReadOnly(permissions.BasePermission):
    """Only the owner (or staff) may change an item."""

    def has_object_permission(self, request, view, obj: Item):  # type: ignore
        if request.method in permissions.SAFE_METHODS:
            return True
        user = request.user
        return bool(user.is_staff or obj.owner_id == user.id)


class ItemViewSet(viewsets.ModelViewSet):
    """Listings plus the availability calendar of each item."""

    queryset = Item.objects.select_related("owner").all()
    serializer_class = ItemSerializer
    lookup_value_regex = r"\d+"
    permission_classes = [permissions.IsAuthenticated, IsOwnerOrReadOnly]
    filter_backends = [DjangoFilterBackend, filters.SearchFilter, filters.OrderingFilter]
    filterset_fields = ["category", "is_available", "owner"]
    search_fields = ["title", "description"]
    ordering_fields = ["created_at", "daily_rate", "hourly_rate", "weekly_rate"]

    def perform_create(self, serializer):  # type: ignore
        serializer.save(owner=self.request.user)

    @action(detail=True, methods=["get", "post"], url_path="availability")
    def availability(self, request, pk=None):  # type: ignore
        item_id = int(pk)
        services = get_services()

        if request.method == "GET":
            calendar = services.availability.calendar(item_id)
            return Response({
                "item": item_id,
                "windows": [window_to_dict(window) for window in calendar.windows],
                "bookings": [booking_to_dict(booking) for booking in calendar.bookings],
            })

        serializer = AvailabilityWindowCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        window = services.availability.add_window(
            item_id,
            Actor.from_user(request.user),
            serializer.to_interval(),
            note=serializer.validated_data.get("note", ""),
        )
        return Response(window_to_dict(window), status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"], url_path="availability/recurring")
    def add_recurring_availability(self, request, pk=None):  # type: ignore
        serializer = RecurringWindowSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        windows = get_services().availability.add_recurring_windows(
            int(pk),
            Actor.from_user(request.user),
            serializer.to_interval(),
            serializer.to_recurrence(),
            serializer.validated_data["every"],
            serializer.validated_data["until"],
            note=serializer.validated_data.get("note", ""),
        )
        return Response([window_to_dict(window) for window in windows], status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["delete"], url_path=r"availability/(?P<window_id>\d+)")
    def remove_availability(self, request, pk=None, window_id=None):  # type: ignore
        get_services().availability.remove_window(int(pk), Actor.from_user(request.user), int(window_id))
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=["post"], url_path="availability/check")
    def check_availability(self, request, pk=None):  # type: ignore
        serializer = IntervalSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        report = get_services().availability.check_conflict(int(pk), serializer.to_interval())
        return Response(report.to_dict())
