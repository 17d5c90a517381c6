from .models import *

__all__ = [
    "Base",
    "DomainBooking",
    "Payment",
]
