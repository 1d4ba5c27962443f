"""Tenant session fleet microservice."""

from .api import create_app
from .fleet import SessionFleet, build_fleet

__all__ = ["create_app", "SessionFleet", "build_fleet"]
