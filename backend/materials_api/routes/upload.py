"""
Modulo de ruta para subida de materiales de estudio.

Define el endpoint POST /api/upload. Responsabilidades:

1. Recibir el archivo del cliente (multipart/form-data).
2. Leer como maximo MAX_SIZE + 1 bytes (detecta archivos gigantes sin
   cargarlos completos en memoria).
3. Validar tamano, nombre, extension, tipo declarado y magic bytes.
4. Sanitizar el nombre original y generar una clave de almacenamiento.
5. Subir el archivo a S3 con metadata de trazabilidad.
6. Retornar la URL publica y los datos del archivo.

Seguridad implementada:
-----------------------
- Rate limiting: maximo 10 subidas por minuto por cliente.
- Validacion por magic bytes: no confiamos solo en el Content-Type.
- Clave aleatoria: el nombre original nunca forma parte de la URL.
- ContentDisposition: attachment (ver S3Service.upload).
"""

from datetime import datetime, timezone
from urllib.parse import quote

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter, File, UploadFile
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.requests import Request

from materials_api.limiter import RATE_LIMIT_CONFIGS, rate_limit
from materials_api.models.schemas import ErrorResponse, UploadResponse
from materials_api.services.s3 import s3_service
from materials_api.services.validator import (
    STUDY_MATERIAL_VALIDATION,
    UploadedFile,
    generate_secure_filename,
    log_file_validation,
    sanitize_filename,
    validate_file,
)

router = APIRouter()


@router.post("/api/upload", response_model=UploadResponse)
@rate_limit(RATE_LIMIT_CONFIGS["upload"])
async def upload_file(request: Request, file: UploadFile = File(...)):
    """
    Endpoint para subir un material (apunte o examen anterior).

    Parametros:
        request (Request): Requerido por el rate limiter para identificar
            al cliente. No lo usamos directamente.
        file (UploadFile): Archivo subido. File(...) lo hace obligatorio;
            sin archivo FastAPI responde 422.

    Retorna:
        UploadResponse: url, filename, originalName, size, type.

    Respuestas de error:
        400: {"error": "File validation failed", "details": motivo}
        429: rate limit excedido (lo genera el decorador).
        500: {"error": "Upload failed", "details": ...} si S3 falla.
    """
    config = STUDY_MATERIAL_VALIDATION

    # Leemos un byte de mas: si llega a leerse, el archivo excede el limite
    # y el validador lo rechaza sin haber cargado el resto.
    data = await file.read(config.max_size_bytes + 1)
    uploaded = UploadedFile(
        name=file.filename or "",
        content_type=file.content_type or "",
        data=data,
    )

    result = validate_file(uploaded, config)
    log_file_validation(
        uploaded.name,
        uploaded.size,
        uploaded.content_type,
        result.detected_type,
        result.is_valid,
        result.error,
    )
    if not result.is_valid:
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error="File validation failed", details=result.error).model_dump(),
        )

    original_name = sanitize_filename(uploaded.name)
    storage_key = generate_secure_filename(original_name)

    metadata = {
        # Metadata x-amz-meta-* solo admite ASCII.
        "original-filename": quote(original_name),
        "upload-timestamp": datetime.now(timezone.utc).isoformat(),
        "file-size": str(uploaded.size),
        "content-type": uploaded.content_type,
    }

    try:
        url = s3_service.upload(data, storage_key, uploaded.content_type, metadata=metadata)
    except (BotoCoreError, ClientError) as exc:
        logger.bind(key=storage_key).exception("S3 upload error")
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="Upload failed", details=str(exc)).model_dump(),
        )

    logger.bind(key=storage_key, size=uploaded.size).info("Uploaded {}", original_name)

    return UploadResponse(
        url=url,
        filename=storage_key,
        original_name=original_name,
        size=uploaded.size,
        type=result.detected_type,
    )
