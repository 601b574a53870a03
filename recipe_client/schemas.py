from __future__ import annotations

from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field as PydField, HttpUrl, field_validator
from pydantic.alias_generators import to_camel

from .ids import RecipeId, PendingId, coerce_id

DEFAULT_CATEGORIES: List[str] = ["Breakfast", "Lunch", "Dinner", "Dessert"]


class CamelModel(BaseModel):
    # el API habla camelCase (imageUrl, createdAt, userId)
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RecipeRequest(CamelModel):
    """Cuerpo de POST/PUT. Mismos límites que valida el backend."""
    title: str = PydField(min_length=1, max_length=200)
    instructions: Optional[str] = PydField(default=None, max_length=5000)
    servings: int = PydField(ge=1, le=100)
    category: Optional[str] = PydField(default=None, max_length=100)
    image_url: Optional[HttpUrl] = None

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def changes(self) -> Dict[str, Any]:
        """Campos enviados, por nombre de atributo, listos para fusionar en un Recipe."""
        return self.model_dump(mode="json", exclude_unset=True)


class Recipe(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: RecipeId
    title: str
    instructions: Optional[str] = None
    servings: int
    category: Optional[str] = None
    image_url: Optional[str] = None
    created_at: datetime
    user_id: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        return coerce_id(v)

    @property
    def is_pending(self) -> bool:
        return isinstance(self.id, PendingId)

    @classmethod
    def optimistic(cls, temp_id: PendingId, request: RecipeRequest) -> "Recipe":
        return cls(
            id=temp_id,
            created_at=datetime.now(timezone.utc),
            user_id=None,
            **request.changes(),
        )

    def merged(self, changes: Dict[str, Any]) -> "Recipe":
        return self.model_copy(update=changes)


class UploadTokenRequest(CamelModel):
    file_name: str = PydField(min_length=1, max_length=255)
    content_type: str
    file_size_bytes: int = PydField(gt=0)


class UploadToken(CamelModel):
    upload_url: str
    public_url: str
    expires_at: Optional[datetime] = None
