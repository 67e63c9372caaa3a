"""Routers package."""

from . import (
    health,
    auth,
    billing,
    ai,
    webhooks,
    admin,
)
