"""Finances app package.

Payments for rentals (one provider hold covering rent and deposit), the
security deposit escrow, provider webhook reconciliation, refunds and
owner payouts.
"""
