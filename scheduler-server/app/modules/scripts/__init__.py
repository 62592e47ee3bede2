"""Script catalogue module."""

from .models import Script
from .repository import ScriptRepository

__all__ = ["Script", "ScriptRepository"]
