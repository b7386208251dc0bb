"""API views for the rental domain."""

from __future__ import annotations

from django.db.models import Q  # type: ignore
from django_filters.rest_framework import DjangoFilterBackend  # type: ignore
from rest_framework import mixins, status, viewsets  # type: ignore
from rest_framework.decorators import action  # type: ignore
from rest_framework.response import Response  # type: ignore

from apps.rentals.application.command_handlers import (
    CancelRentalCommand,
    CompleteRentalCommand,
    CreateRentalCommand,
    DecideRentalCommand,
)
from shared.application.bootstrap import get_services
from shared.domain.value_objects import Actor

from .models import Rental
from .serializers import CancelSerializer, DecisionSerializer, RentalCreateSerializer, RentalSerializer


class RentalViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    """
    Renters request rentals; owners decide on them.

    State changes go through the rental command handlers; the viewset only
    translates HTTP to commands and reads rows back for the response.
    """

    queryset = Rental.objects.select_related("item", "renter").all()
    serializer_class = RentalSerializer
    filter_backends = [DjangoFilterBackend]
    filterset_fields = ["status", "item", "rental_type", "settlement_status"]

    def get_queryset(self):  # type: ignore
        user = self.request.user
        qs = super().get_queryset()
        if user.is_staff:
            return qs
        return qs.filter(Q(renter=user) | Q(item__owner=user))

    def _respond(self, rental_id, http_status=status.HTTP_200_OK, **extra):
        row = Rental.objects.select_related("item", "renter").get(pk=rental_id)
        data = dict(RentalSerializer(row, context=self.get_serializer_context()).data)
        data.update(extra)
        return Response(data, status=http_status)

    def create(self, request, *args, **kwargs):  # type: ignore
        serializer = RentalCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        rental = get_services().create_rental.handle(CreateRentalCommand(
            item_id=data["item"],
            renter=Actor.from_user(request.user),
            start=data["start_date"],
            end=data["end_date"],
            rental_type=data["rental_type"],
        ))
        return self._respond(rental.id, status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"])
    def decide(self, request, pk=None):  # type: ignore
        row = self.get_object()
        serializer = DecisionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        get_services().decide_rental.handle(DecideRentalCommand(
            rental_id=row.pk,
            actor=Actor.from_user(request.user),
            decision=serializer.validated_data["decision"],
            reason=serializer.validated_data["reason"],
        ))
        return self._respond(row.pk)

    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):  # type: ignore
        row = self.get_object()
        serializer = CancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        get_services().cancel_rental.handle(CancelRentalCommand(
            rental_id=row.pk,
            actor=Actor.from_user(request.user),
            reason=serializer.validated_data["reason"],
        ))
        return self._respond(row.pk)

    @action(detail=True, methods=["post"])
    def complete(self, request, pk=None):  # type: ignore
        row = self.get_object()
        result = get_services().complete_rental.handle(CompleteRentalCommand(
            rental_id=row.pk,
            actor=Actor.from_user(request.user),
        ))
        return self._respond(
            row.pk,
            deposit_status=result.deposit_status.value,
            deposit_release_eligible=result.deposit_release_eligible,
        )
