"""
Modulo de configuracion centralizada de la aplicacion.

Todas las constantes que el backend necesita (bucket de S3, region de AWS,
origenes CORS, nivel de logging, dimensionamiento del cache del rate
limiter) viven aqui. Cada valor se lee de una variable de entorno con un
valor por defecto razonable para desarrollo, de modo que la misma imagen
corre en desarrollo y produccion sin tocar el codigo.

Patron de diseno utilizado: **Singleton implicito**
La instancia `settings` se crea UNA sola vez al importar este modulo.
Python cachea los modulos importados, asi que cada archivo que haga
`from materials_api.config import settings` recibe la MISMA instancia.

Los valores numericos invalidos (ej: RATE_LIMIT_CACHE_SIZE="abc") hacen
fallar la importacion con ValueError. Es un error de despliegue, no algo
que la app deba tolerar en tiempo de ejecucion.
"""

import os


def _env_bool(name: str, default: bool) -> bool:
    """Interpreta "1", "true", "yes" y "on" (sin importar mayusculas) como True."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_positive_int(name: str, default: int) -> int:
    value = int(os.getenv(name, str(default)))
    if value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value}")
    return value


class Settings:
    """
    Clase que encapsula toda la configuracion de la aplicacion.

    Usamos una clase (en vez de variables globales sueltas) porque en los
    tests podemos crear una instancia nueva despues de modificar el entorno
    con monkeypatch, sin recargar modulos.
    """

    def __init__(self):
        # ---------- AWS S3 ----------

        # Bucket donde se guardan los materiales de estudio (apuntes y
        # examenes anteriores). El nombre de la variable coincide con el
        # que usa el frontend para construir las URLs publicas.
        self.S3_BUCKET_NAME: str = os.getenv("S3_BUCKET_NAME", "study-materials-bucket")

        # Region de AWS del bucket. Se usa tanto para el cliente boto3
        # como para construir la URL publica del objeto subido.
        self.AWS_REGION: str = os.getenv("AWS_REGION", "us-east-1")

        # ---------- HTTP ----------

        # Origenes permitidos por CORS, separados por coma.
        # SEGURIDAD: nunca uses "*" en produccion.
        self.CORS_ORIGINS: list[str] = [
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
            if origin.strip()
        ]

        # Habilita las rutas /api/dev/* (monitoreo del rate limiter y
        # verificacion del bucket). Solo para desarrollo.
        self.ENABLE_DEV_ROUTES: bool = _env_bool("ENABLE_DEV_ROUTES", False)

        # Direccion y puerto donde escucha uvicorn (ver main.run).
        self.HOST: str = os.getenv("HOST", "127.0.0.1")
        self.PORT: int = _env_positive_int("PORT", 8000)

        # ---------- Logging ----------

        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

        # ---------- Rate limiting ----------

        # Numero maximo de clientes distintos que el cache recuerda.
        # Al superarlo se descarta el menos usado recientemente (LRU).
        self.RATE_LIMIT_CACHE_SIZE: int = _env_positive_int("RATE_LIMIT_CACHE_SIZE", 10_000)

        # Tiempo (ms) que una entrada puede quedar sin escrituras antes de
        # considerarse expirada: 5 minutos.
        self.RATE_LIMIT_CACHE_TTL_MS: int = _env_positive_int(
            "RATE_LIMIT_CACHE_TTL_MS", 5 * 60 * 1000
        )

    @property
    def bucket_url(self) -> str:
        """URL base (virtual-hosted style) de los objetos del bucket."""
        return f"https://{self.S3_BUCKET_NAME}.s3.{self.AWS_REGION}.amazonaws.com"


# Instancia unica de configuracion (patron Singleton implicito).
settings = Settings()
