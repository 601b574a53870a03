# recipe_client/ids.py
from __future__ import annotations

import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

TEMP_PREFIX = "temp-"


class PersistedId(BaseModel):
    """Identificador emitido por el servidor."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["persisted"] = "persisted"
    value: str

    def __str__(self) -> str:
        return self.value


class PendingId(BaseModel):
    """Identificador local de una receta creada que el servidor aún no ha confirmado."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["pending"] = "pending"
    token: str

    def __str__(self) -> str:
        # solo para mostrar; nunca se envía al servidor
        return f"{TEMP_PREFIX}{self.token}"


RecipeId = Annotated[Union[PersistedId, PendingId], Field(discriminator="kind")]


def new_pending_id() -> PendingId:
    return PendingId(token=uuid.uuid4().hex)


def coerce_id(value: Any) -> Any:
    """
    Los ids que llegan del servidor son strings: siempre PersistedId,
    aunque empiecen por "temp-".
    """
    if isinstance(value, str):
        return PersistedId(value=value)
    return value


def is_pending(value: Any) -> bool:
    return isinstance(value, PendingId)
