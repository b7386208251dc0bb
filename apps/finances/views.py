"""API views for payments, security deposits, payouts and provider webhooks.

Payments are never created or changed through plain CRUD: holds are
opened for a rental, and every later status change comes from a verified
provider notification or an explicit staff action.
"""

from __future__ import annotations

import logging

from django.conf import settings  # type: ignore
from django.db.models import Q  # type: ignore
from rest_framework import permissions, status, viewsets  # type: ignore
from rest_framework.decorators import action  # type: ignore
from rest_framework.response import Response  # type: ignore
from rest_framework.views import APIView  # type: ignore

from shared.application.bootstrap import get_services
from shared.domain.value_objects import Actor, Money

from .models import Payment
from .serializers import (
    AmountSerializer,
    PaymentSerializer,
    RentalReferenceSerializer,
    deposit_to_dict,
    hold_to_dict,
    payout_to_dict,
)

logger = logging.getLogger(__name__)

UUID_REGEX = r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"


class PaymentViewSet(viewsets.ReadOnlyModelViewSet):
    """Payment attempts visible to the renter, the item owner and staff."""

    queryset = Payment.objects.select_related("rental", "rental__item").prefetch_related("ledger_entries")
    serializer_class = PaymentSerializer
    lookup_value_regex = UUID_REGEX

    def get_queryset(self):  # type: ignore
        user = self.request.user
        qs = super().get_queryset()
        if user.is_staff:
            return qs
        return qs.filter(Q(rental__renter=user) | Q(rental__item__owner=user))

    @action(detail=False, methods=["post"])
    def holds(self, request):  # type: ignore
        serializer = RentalReferenceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        hold = get_services().payments.create_hold(
            serializer.validated_data["rental"],
            Actor.from_user(request.user),
        )
        return Response(hold_to_dict(hold), status=status.HTTP_201_CREATED)

    @action(detail=False, methods=["post"])
    def retry(self, request):  # type: ignore
        serializer = RentalReferenceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        hold = get_services().payments.retry_payment(
            serializer.validated_data["rental"],
            Actor.from_user(request.user),
        )
        return Response(hold_to_dict(hold), status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"], permission_classes=[permissions.IsAdminUser])
    def refund(self, request, pk=None):  # type: ignore
        row = self.get_object()
        serializer = AmountSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        get_services().payments.refund(
            row.pk,
            Money(serializer.validated_data["amount"], row.currency),
            Actor.from_user(request.user),
        )
        row.refresh_from_db()
        return Response(PaymentSerializer(row).data)

    @action(detail=False, methods=["post"], permission_classes=[permissions.IsAdminUser])
    def payouts(self, request):  # type: ignore
        serializer = RentalReferenceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        payout = get_services().payouts.pay_owner(
            serializer.validated_data["rental"],
            Actor.from_user(request.user),
        )
        return Response(payout_to_dict(payout), status=status.HTTP_200_OK if payout.already_paid else status.HTTP_201_CREATED)


class DepositViewSet(viewsets.ViewSet):
    """Security deposit of a rental, addressed by the rental id."""

    lookup_field = "rental_id"
    lookup_value_regex = UUID_REGEX

    def retrieve(self, request, rental_id=None):  # type: ignore
        services = get_services()
        rental = services.payments.rentals.get(rental_id)
        if not rental.can_view(Actor.from_user(request.user)):
            return Response({"detail": "Not found.", "code": "not_found"}, status=status.HTTP_404_NOT_FOUND)
        return Response(deposit_to_dict(services.escrow.get(rental.id)))

    @action(detail=True, methods=["post"], permission_classes=[permissions.IsAdminUser])
    def charge(self, request, rental_id=None):  # type: ignore
        serializer = AmountSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        escrow = get_services().escrow
        current = escrow.get(rental_id)
        deposit = escrow.charge(
            current.rental_id,
            Money(serializer.validated_data["amount"], current.currency),
            Actor.from_user(request.user),
        )
        return Response(deposit_to_dict(deposit))

    @action(detail=True, methods=["post"])
    def release(self, request, rental_id=None):  # type: ignore
        deposit = get_services().escrow.release(rental_id, Actor.from_user(request.user))
        return Response(deposit_to_dict(deposit))


class PaymentWebhookView(APIView):
    """
    Provider notifications

    No session or token authentication; the signature header over the raw
    body is the only credential.
    """

    authentication_classes: list = []
    permission_classes = [permissions.AllowAny]

    def post(self, request):  # type: ignore
        header = request.headers.get(settings.PAYMENT_WEBHOOK_SIGNATURE_HEADER)
        result = get_services().webhooks.handle(request.body, header)
        return Response({"status": result.outcome.value}, status=status.HTTP_200_OK)
