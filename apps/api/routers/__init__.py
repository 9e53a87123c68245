"""Routers package."""

from . import (
    health,
    billing,
    connections,
    admin,
)
