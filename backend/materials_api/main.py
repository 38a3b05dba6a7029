"""
Punto de entrada principal de la aplicacion FastAPI.

Aqui se:
1. Configura el logging (loguru).
2. Crea la instancia de la aplicacion FastAPI.
3. Construye el rate limiter de esta app y lo guarda en app.state.
4. Configura CORS.
5. Registra las rutas (upload, delete y, en desarrollo, dev).
6. Define el endpoint de health check.

Arquitectura de la aplicacion:
------------------------------
    main.py (punto de entrada)
        |
        +-- routes/         (reciben HTTP requests)
        |    +-- upload.py
        |    +-- delete.py
        |    +-- dev.py     (solo con ENABLE_DEV_ROUTES)
        |
        +-- services/       (logica de negocio)
        |    +-- validator.py
        |    +-- s3.py
        |
        +-- models/
        |    +-- schemas.py
        |
        +-- config.py        (configuracion centralizada)
        +-- limiter.py       (rate limiting)
        +-- logging_config.py

El flujo de una peticion HTTP es:
    Cliente -> CORS middleware -> Router -> Rate limiter -> Endpoint -> Respuesta

A diferencia de SlowAPI, nuestro rate limiter no necesita un exception
handler: un cliente limitado es una rama normal del decorador, que
retorna directamente la respuesta 429.
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from materials_api.config import Settings, settings as default_settings
from materials_api.limiter import RateLimiter, build_rate_limiter
from materials_api.logging_config import setup_logging
from materials_api.routes.delete import router as delete_router
from materials_api.routes.dev import router as dev_router
from materials_api.routes.upload import router as upload_router


def create_app(app_settings: Optional[Settings] = None,
               rate_limiter: Optional[RateLimiter] = None) -> FastAPI:
    """
    Construye la aplicacion.

    Parametros:
        app_settings (Settings | None): Configuracion a usar. Los tests
            pasan una instancia propia para activar las rutas de desarrollo.
        rate_limiter (RateLimiter | None): Limiter de esta app. Si no se
            pasa, se construye uno nuevo con el cache dimensionado segun
            `app_settings`. Cada app tiene el suyo: dos apps del mismo
            proceso no comparten cuotas.
    """
    app_settings = app_settings or default_settings
    setup_logging(app_settings.LOG_LEVEL)

    app = FastAPI(title="Study Materials API")

    # El decorador rate_limit y las rutas de diagnostico lo buscan aqui.
    if rate_limiter is None:
        rate_limiter = build_rate_limiter(app_settings)
    app.state.rate_limiter = rate_limiter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
        # Los headers de cuota deben ser legibles desde JavaScript.
        expose_headers=[
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
    )

    @app.get("/api/health")
    async def health_check():
        """Responde {"status": "ok"} si el servidor esta vivo."""
        return {"status": "ok"}

    app.include_router(upload_router)
    app.include_router(delete_router)
    if app_settings.ENABLE_DEV_ROUTES:
        app.include_router(dev_router)

    return app


app = create_app()


def run() -> None:
    """
    Levanta el servidor con uvicorn (script `materials-api`).

    Equivale a `uvicorn materials_api.main:app --host HOST --port PORT`.
    """
    uvicorn.run(app, host=default_settings.HOST, port=default_settings.PORT,
                log_level=default_settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
