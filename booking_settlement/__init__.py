"""Booking settlement service: Stripe checkout notifications to capacity-limited bookings."""

__version__ = "0.1.0"
