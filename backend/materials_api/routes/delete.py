"""
Modulo de ruta para borrar materiales de S3.

Define el endpoint DELETE /api/delete. El frontend envia la URL publica
del archivo (la misma que retorno /api/upload):

    {"fileUrl": "https://bucket.s3.us-east-1.amazonaws.com/1760..._abc.pdf"}

Flujo:
1. Si la URL no es de S3 (ej: materiales antiguos en Firebase Storage),
   no hay nada que borrar aqui: respondemos exito sin tocar S3.
2. Extraemos bucket y key de la URL.
3. HEAD: verificamos que el objeto exista (delete_object de S3 NO falla
   si el objeto no existe, asi que sin este paso un borrado de una URL
   equivocada pareceria exitoso).
4. DELETE.
5. HEAD de nuevo: si el objeto sigue ahi, reportamos el fallo.
"""

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.requests import Request

from materials_api.limiter import RATE_LIMIT_CONFIGS, rate_limit
from materials_api.models.schemas import DeleteRequest, DeleteResponse, ErrorResponse
from materials_api.services.s3 import is_s3_url, parse_s3_url, s3_service

router = APIRouter()


def _error(status_code: int, error: str, details: str = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, details=details).model_dump(exclude_none=True),
    )


@router.delete("/api/delete", response_model=DeleteResponse)
@rate_limit(RATE_LIMIT_CONFIGS["delete"])
async def delete_file(request: Request, body: DeleteRequest):
    """
    Elimina de S3 el archivo referenciado por `fileUrl`.

    Respuestas:
        200: borrado (o URL que no es de S3).
        400: falta fileUrl.
        404: el objeto no existe o no es accesible.
        500: el borrado fallo o el objeto sigue existiendo.
    """
    file_url = (body.file_url or "").strip()
    if not file_url:
        return _error(400, "File URL is required")

    if not is_s3_url(file_url):
        logger.bind(url=file_url).info("Not an S3 URL, skipping S3 deletion")
        return DeleteResponse(success=True, message="Not an S3 URL, skipping S3 deletion")

    url_bucket, key = parse_s3_url(file_url)
    bucket = url_bucket or s3_service.bucket
    log = logger.bind(bucket=bucket, key=key)

    try:
        s3_service.head(key, bucket=bucket)
    except (BotoCoreError, ClientError) as exc:
        log.warning("File does not exist or cannot be accessed: {}", exc)
        return _error(404, "File not found or cannot be accessed", str(exc))

    try:
        s3_service.delete(key, bucket=bucket)
    except (BotoCoreError, ClientError) as exc:
        log.exception("S3 delete command failed")
        return _error(500, "S3 delete failed", str(exc))

    try:
        still_exists = s3_service.exists(key, bucket=bucket)
    except (BotoCoreError, ClientError):
        # Sin permiso para verificar: el DELETE ya respondio sin error.
        still_exists = False

    if still_exists:
        log.error("File still exists after deletion attempt")
        return _error(
            500,
            "File still exists after deletion",
            "Deletion appeared successful but file still exists",
        )

    log.info("S3 file deleted successfully")
    return DeleteResponse(
        success=True,
        message="S3 file deleted successfully",
        details={"bucket": bucket, "key": key},
    )
