from .client import RecipeClient, build_client
from .config import Settings
from .ids import PendingId, PersistedId
from .schemas import Recipe, RecipeRequest

__all__ = [
    "RecipeClient",
    "build_client",
    "Settings",
    "PendingId",
    "PersistedId",
    "Recipe",
    "RecipeRequest",
]
