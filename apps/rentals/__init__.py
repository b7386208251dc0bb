"""Rentals app package.

This app owns the rental lifecycle: a renter's request for an item,
the owner's decision, payment-driven transitions, cancellation with
compensation and completion with the platform fee split. Requests for
the same item are serialized so two overlapping rentals can never both
be active.
"""
