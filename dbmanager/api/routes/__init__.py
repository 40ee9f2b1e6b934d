"""dbmanager API Routes Package."""
from . import exports, health

__all__ = ["exports", "health"]
