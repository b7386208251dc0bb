"""
Shared kernel

Base entity/aggregate/event types, money and interval value objects, the
unit of work, message bus and data-access helpers used by the items,
rentals and finances contexts.
"""
