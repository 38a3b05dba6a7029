"""
Rutas de diagnostico, SOLO para desarrollo.

main.py monta este router unicamente si ENABLE_DEV_ROUTES esta activo.
Exponen el estado interno del rate limiter y verifican que las
credenciales de S3 y el bucket configurado funcionen.

El limiter se obtiene de `request.app.state.rate_limiter`, la instancia
que main.py inyecta al construir la app.
"""

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.requests import Request

from materials_api.limiter import RATE_LIMIT_CONFIGS, rate_limit
from materials_api.models.schemas import ErrorResponse, RateLimitInfo
from materials_api.services.s3 import s3_service

router = APIRouter(prefix="/api/dev")


@router.get("/rate-limit/{identifier}", response_model=RateLimitInfo)
@rate_limit(RATE_LIMIT_CONFIGS["test"])
async def rate_limit_info(request: Request, identifier: str):
    """Timestamps recientes de un cliente (ej: "ip:10.0.0.1")."""
    return RateLimitInfo(**request.app.state.rate_limiter.get_info(identifier))


@router.delete("/rate-limit")
@rate_limit(RATE_LIMIT_CONFIGS["test"])
async def clear_rate_limits(request: Request):
    request.app.state.rate_limiter.clear()
    logger.info("Rate limit cache cleared")
    return {"success": True}


@router.get("/storage")
@rate_limit(RATE_LIMIT_CONFIGS["test"])
async def storage_check(request: Request):
    """
    Lista hasta 5 objetos del bucket para comprobar la configuracion de S3.
    """
    try:
        objects = s3_service.list_objects(max_keys=5)
    except (BotoCoreError, ClientError) as exc:
        logger.bind(bucket=s3_service.bucket).exception("Failed to list objects")
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="Failed to list objects", details=str(exc)).model_dump(),
        )

    return {
        "success": True,
        "bucket": s3_service.bucket,
        "region": s3_service.region,
        "objects": objects,
        "totalObjects": len(objects),
    }
