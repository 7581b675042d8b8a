"""Routers package."""

from . import (
    health,
    auth,
    credits,
    generation,
    payments,
    subscription,
)
