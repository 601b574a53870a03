# recipe_client/services/images.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..errors import ClientError, ImageUploadError, MessageError, user_message
from ..schemas import UploadToken, UploadTokenRequest
from ..transport import FetchClient
from .recipes import JSON_HEADERS, ApiResult, Failure, Success

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageFile:
    """Imagen ya comprimida lista para subir."""
    uri: str
    content: bytes

    @property
    def file_name(self) -> str:
        return PurePosixPath(self.uri).name or "image.jpg"

    @property
    def content_type(self) -> str:
        return "image/png" if self.file_name.lower().endswith(".png") else "image/jpeg"

    @property
    def file_size(self) -> int:
        return len(self.content)


class ImageUploadService:
    """
    Subida directa a blob storage: el backend emite un token de escritura
    de corta duración y el cliente sube los bytes con PUT a ``upload_url``.
    """

    def __init__(self, client: FetchClient, cfg: Optional[Settings] = None) -> None:
        self.client = client
        self.settings = cfg or client.settings

    async def get_upload_token(self, file_name: str, content_type: str, file_size_bytes: int) -> ApiResult[UploadToken]:
        url = self.settings.api_url(self.settings.images_endpoint) + "/upload-token"
        try:
            body = UploadTokenRequest(
                file_name=file_name, content_type=content_type, file_size_bytes=file_size_bytes
            ).model_dump(by_alias=True)
            data = await self.client.request("POST", url, headers=JSON_HEADERS, json=body, **self.settings.request_options())
            return Success(UploadToken.model_validate(data))
        except ClientError as e:
            return Failure(e.error)
        except ValidationError as e:
            return Failure(MessageError(text=f"Validation error: {e.error_count()} invalid upload token field(s)"))

    async def upload_image(self, image: ImageFile) -> str:
        """Sube la imagen y devuelve su URL pública. Falla rápido."""
        token = await self.get_upload_token(image.file_name, image.content_type, image.file_size)
        if isinstance(token, Failure):
            raise ImageUploadError(user_message(token.error, fallback="Failed to get upload token"), token.error)

        try:
            response = await self.client.http.put(
                token.data.upload_url,
                content=image.content,
                headers={"x-ms-blob-type": "BlockBlob", "Content-Type": image.content_type},
                timeout=self.settings.request_timeout_s,
            )
        except httpx.HTTPError as e:
            raise ImageUploadError(f"Failed to upload image: {e}") from e
        if response.status_code != 201:
            logger.warning("Blob upload rejected with status %d", response.status_code)
            raise ImageUploadError("Failed to upload image to blob storage")
        return token.data.public_url
