"""Labour market backend: bookings between customers and labourers."""

__version__ = "0.1.0"
