"""
Modulo de esquemas (schemas) de datos de la API.

Define la estructura de los datos que entran y salen de la API usando
Pydantic. Es el "contrato" con el frontend: los nombres en camelCase
(originalName, fileUrl, retryAfter) son los que el frontend ya consume,
asi que los declaramos como alias y en Python usamos snake_case.

`populate_by_name=True` permite construir los modelos con cualquiera de
los dos nombres; al serializar con `by_alias=True` (lo que hace FastAPI y
jsonable_encoder por defecto) sale el alias.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class UploadResponse(BaseModel):
    """
    Respuesta de POST /api/upload.

    Atributos:
        url (str): URL publica del objeto en S3.
        filename (str): Clave de almacenamiento generada (no el nombre original).
        original_name (str): Nombre original sanitizado.
        size (int): Tamano en bytes.
        type (str): Tipo MIME detectado (o declarado si no hubo firma).
    """
    model_config = ConfigDict(populate_by_name=True)

    url: str
    filename: str
    original_name: str = Field(alias="originalName")
    size: int
    type: str


class DeleteRequest(BaseModel):
    """
    Cuerpo de DELETE /api/delete.

    file_url es opcional en el schema para poder responder 400 con nuestro
    propio mensaje en vez del 422 generico de FastAPI.
    """
    model_config = ConfigDict(populate_by_name=True)

    file_url: Optional[str] = Field(default=None, alias="fileUrl")


class DeleteResponse(BaseModel):
    success: bool
    message: str
    details: Optional[dict] = None


class ErrorResponse(BaseModel):
    """
    Schema estandar para respuestas de error.

    Atributos:
        error (str): Resumen corto ("File validation failed").
        details (str | None): Motivo concreto, ej: el mensaje del validador.
    """
    error: str
    details: Optional[str] = None


class RateLimitErrorResponse(BaseModel):
    """Cuerpo de la respuesta 429. retry_after esta en segundos."""
    model_config = ConfigDict(populate_by_name=True)

    error: str
    message: str
    retry_after: int = Field(alias="retryAfter")


class RateLimitInfo(BaseModel):
    """Respuesta de GET /api/dev/rate-limit/{identifier}."""
    requests: list[int]
    config: dict
