"""Request rate limiting (slowapi)."""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)

# Applied to bid placement; bursts past this are rejected with 429.
BID_RATE_LIMIT = "30/minute"
