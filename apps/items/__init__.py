"""Items app package.

Rentable items, their owner-declared availability windows and the
availability resolver that decides whether a proposed rental interval
conflicts with existing bookings or windows.
"""
