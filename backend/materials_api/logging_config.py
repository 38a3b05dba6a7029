"""
Configuracion del logging de la aplicacion con loguru.

loguru reemplaza la configuracion clasica de `logging` (handlers,
formatters, propagacion) por un unico objeto `logger` listo para usar.
Cualquier modulo hace simplemente:

    from loguru import logger
    logger.bind(identifier="ip:1.2.3.4").warning("Rate limit exceeded")

`bind()` agrega campos estructurados al registro. Con `serialize=True`
esos campos aparecen en la salida JSON, lo cual facilita filtrarlos en
CloudWatch, Datadog o cualquier agregador de logs.
"""

import sys

from loguru import logger


def setup_logging(level: str = "INFO", serialize: bool = False) -> None:
    """
    Reemplaza el sink por defecto de loguru por uno en stderr.

    Parametros:
        level (str): Nivel minimo a emitir ("DEBUG", "INFO", "WARNING", ...).
        serialize (bool): Si es True cada linea es un objeto JSON con el
            mensaje y los campos de `bind()`.
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        serialize=serialize,
        backtrace=True,
        # diagnose imprime los valores de las variables locales en los
        # tracebacks; puede filtrar datos sensibles.
        diagnose=False,
        colorize=False,
    )
