"""
Modulo de limitacion de tasa de peticiones (Rate Limiting).

Restringe cuantas peticiones puede hacer un mismo cliente en una ventana
de tiempo, con limites distintos segun el tipo de endpoint (login, subida,
borrado, etc.).

Como funciona? Ventana deslizante (sliding window)
--------------------------------------------------
Por cada cliente guardamos la lista de timestamps (ms) de sus peticiones
aceptadas. En cada peticion nueva:

    1. Descartamos los timestamps mas viejos que (ahora - ventana).
    2. Si quedan `max_requests` o mas, el cliente esta limitado.
    3. Si no, agregamos "ahora" a la lista (consume una unidad de cuota).

A diferencia de una ventana fija (ej: "de 12:00 a 12:01"), la ventana
deslizante siempre mira los ultimos N milisegundos, asi que un cliente
no puede hacer el doble de peticiones justo en el borde entre dos minutos.

Donde se guardan los timestamps?
--------------------------------
En un `RequestCache`: un diccionario en memoria con capacidad maxima
(descarta el cliente menos usado recientemente, LRU) y expiracion por
inactividad (TTL). Si un cliente deja de hacer peticiones por mas de 5
minutos, su entrada desaparece y recupera la cuota completa.

Limitaciones conocidas:
    - El cache es local al proceso. Con varias instancias detras de un
      load balancer, cada instancia lleva su propio conteo.
    - Leer, recortar y agregar no es atomico. Dos peticiones simultaneas
      del mismo cliente pueden superar el limite por un margen pequeno.
      Para disuadir abusos es aceptable; no es una cuota contable.

Patron de diseno: Inyeccion de dependencias
-------------------------------------------
`RateLimiter` recibe su cache y su reloj en el constructor. No hay una
instancia global: `create_app` construye una por app y la guarda en
`app.state`, y el decorador `rate_limit` la busca ahi en cada peticion.
Los tests construyen la suya con un reloj falso para "viajar en el tiempo".
"""

import functools
import inspect
import math
import threading
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import Response

from materials_api.config import Settings
from materials_api.models.schemas import RateLimitErrorResponse


def now_ms() -> int:
    """Milisegundos desde epoch (el reloj por defecto del limiter)."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitConfig:
    """
    Limite aplicable a una clase de endpoints.

    Atributos:
        interval_ms (int): Largo de la ventana deslizante en milisegundos.
        max_requests (int): Peticiones aceptadas por ventana y por cliente.
        unique_token_per_interval (int): Cantidad estimada de clientes
            distintos por ventana. Solo informativo; no afecta decisiones.
    """
    interval_ms: int
    max_requests: int
    unique_token_per_interval: int = 500

    def __post_init__(self):
        # Una configuracion mal formada es un error del programador:
        # fallamos al importar, no al atender la primera peticion.
        if self.interval_ms <= 0:
            raise ValueError(f"interval_ms must be > 0, got {self.interval_ms}")
        if self.max_requests < 1:
            raise ValueError(f"max_requests must be >= 1, got {self.max_requests}")


# Presets por clase de endpoint. Todos usan una ventana de 1 minuto.
RATE_LIMIT_CONFIGS: dict[str, RateLimitConfig] = {
    # Login/registro: muy restrictivo para frenar fuerza bruta.
    "auth": RateLimitConfig(interval_ms=60 * 1000, max_requests=5, unique_token_per_interval=500),
    "upload": RateLimitConfig(interval_ms=60 * 1000, max_requests=10, unique_token_per_interval=1000),
    "delete": RateLimitConfig(interval_ms=60 * 1000, max_requests=20, unique_token_per_interval=1000),
    "general": RateLimitConfig(interval_ms=60 * 1000, max_requests=100, unique_token_per_interval=2000),
    # Rutas de diagnostico (/api/dev/*).
    "test": RateLimitConfig(interval_ms=60 * 1000, max_requests=50, unique_token_per_interval=1000),
}


@dataclass
class RateLimitDecision:
    """
    Resultado de consultar el limiter para una peticion.

    Atributos:
        is_limited (bool): True si la peticion debe rechazarse con 429.
        remaining (int): Cuota restante ANTES de contar esta peticion,
            siempre en [0, max_requests].
        reset_time (int): Epoch ms. Cota superior del momento en que la
            peticion mas vieja contada sale de la ventana.
    """
    is_limited: bool
    remaining: int
    reset_time: int


class RequestCache:
    """
    Mapa acotado identificador -> lista de timestamps, con LRU y TTL.

    - Capacidad: al insertar una clave nueva con el cache lleno se descarta
      la clave usada hace mas tiempo (la primera del OrderedDict).
    - TTL: cada entrada expira `ttl_ms` despues de su ultima escritura.
      Una entrada expirada se trata como ausente y se elimina al leerla.
    - Las lecturas cuentan como "uso" para el orden LRU.

    El lock protege la estructura del OrderedDict (move_to_end/popitem no
    son seguros con hilos concurrentes). No hace atomica la secuencia
    leer-recortar-escribir del limiter.
    """

    def __init__(self, max_size: int = 10_000, ttl_ms: int = 5 * 60 * 1000,
                 clock: Callable[[], int] = now_ms):
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        if ttl_ms <= 0:
            raise ValueError(f"ttl_ms must be > 0, got {ttl_ms}")
        self.max_size = max_size
        self.ttl_ms = ttl_ms
        self._clock = clock
        # clave -> (expira_en_ms, timestamps)
        self._store: "OrderedDict[str, tuple[int, list[int]]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[list[int]]:
        with self._lock:
            item = self._store.get(key)
            if item is None:
                return None
            expires_at, value = item
            if self._clock() >= expires_at:
                del self._store[key]
                return None
            self._store.move_to_end(key)
            return value

    def set(self, key: str, value: list[int]) -> None:
        with self._lock:
            self._store[key] = (self._clock() + self.ttl_ms, value)
            self._store.move_to_end(key)
            while len(self._store) > self.max_size:
                self._store.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        # Incluye entradas expiradas que todavia no se han leido.
        return len(self._store)


def get_client_identifier(request: Request) -> str:
    """
    Obtiene la clave con la que se cuenta la cuota de un cliente.

    Orden de prioridad:
        1. Primer IP de X-Forwarded-For (lo agregan proxies y load balancers).
        2. X-Real-IP (Nginx).
        3. CF-Connecting-IP (Cloudflare).
        4. IP del socket (get_remote_address de SlowAPI).

    Si no hay una IP util (ausente, "unknown" o loopback, tipico detras de
    un proxy local) usamos los primeros 50 caracteres del User-Agent para
    no meter a todos los clientes en el mismo contador.

    Retorna:
        str: "ip:<direccion>" o "ua:<user agent truncado>".
    """
    forwarded = request.headers.get("x-forwarded-for")
    candidates = [
        forwarded.split(",")[0].strip() if forwarded else None,
        request.headers.get("x-real-ip"),
        request.headers.get("cf-connecting-ip"),
        get_remote_address(request),
    ]
    ip = next((c.strip() for c in candidates if c and c.strip()), "unknown")

    # Direccion IPv4 mapeada en IPv6 (ej: "::ffff:10.0.0.1").
    if ip.startswith("::ffff:"):
        ip = ip[len("::ffff:"):]

    if ip in ("unknown", "127.0.0.1"):
        user_agent = request.headers.get("user-agent") or "unknown"
        return f"ua:{user_agent[:50]}"

    return f"ip:{ip}"


def _find_request(args, kwargs) -> Optional[Request]:
    request = kwargs.get("request")
    if isinstance(request, Request):
        return request
    return next((arg for arg in args if isinstance(arg, Request)), None)

class RateLimiter:
    """
    Limiter de ventana deslizante por cliente.

    Cada app construye su propia instancia (ver `build_rate_limiter` y
    `main.create_app`) y la guarda en `app.state.rate_limiter`. Las rutas
    no la importan: el decorador `rate_limit` la busca en la app de cada
    peticion, asi dos apps del mismo proceso llevan cuotas separadas.
    """

    def __init__(self, cache: Optional[RequestCache] = None,
                 clock: Callable[[], int] = now_ms,
                 key_func: Callable[[Request], str] = get_client_identifier):
        self.cache = cache if cache is not None else RequestCache(clock=clock)
        self._clock = clock
        self.key_func = key_func

    def check_and_consume(self, identifier: str, config: RateLimitConfig) -> RateLimitDecision:
        """
        Decide si `identifier` puede hacer una peticion mas y, si puede,
        la registra.

        Una peticion rechazada NO se agrega a la lista: no consume cuota,
        asi un cliente que insiste no extiende su propio bloqueo.
        """
        now = self._clock()
        window_start = now - config.interval_ms

        existing = self.cache.get(identifier) or []
        valid = [ts for ts in existing if ts > window_start]

        is_limited = len(valid) >= config.max_requests
        remaining = max(0, config.max_requests - len(valid))
        reset_time = now + config.interval_ms

        if not is_limited:
            valid.append(now)
            self.cache.set(identifier, valid)

        return RateLimitDecision(is_limited=is_limited, remaining=remaining, reset_time=reset_time)

    def rejection_response(self, decision: RateLimitDecision, config: RateLimitConfig) -> JSONResponse:
        """Respuesta HTTP 429 con los headers de cuota y Retry-After."""
        retry_after = math.ceil((decision.reset_time - self._clock()) / 1000)
        response = JSONResponse(
            status_code=429,
            content=RateLimitErrorResponse(
                error="Rate limit exceeded",
                message="Too many requests. Please try again later.",
                retry_after=retry_after,
            ).model_dump(by_alias=True),
        )
        inject_rate_limit_headers(response, decision, config)
        response.headers["Retry-After"] = str(retry_after)
        return response

    def get_info(self, identifier: str) -> dict:
        """
        Hook de monitoreo (solo desarrollo): timestamps guardados para
        `identifier` y el preset general.
        """
        requests = self.cache.get(identifier) or []
        return {
            "requests": list(requests),
            "config": asdict(RATE_LIMIT_CONFIGS["general"]),
        }

    def clear(self) -> None:
        """Hook de monitoreo: olvida todos los clientes."""
        self.cache.clear()


def build_rate_limiter(app_settings: Settings) -> RateLimiter:
    """Limiter con el cache dimensionado segun la configuracion."""
    return RateLimiter(
        cache=RequestCache(
            max_size=app_settings.RATE_LIMIT_CACHE_SIZE,
            ttl_ms=app_settings.RATE_LIMIT_CACHE_TTL_MS,
        )
    )


def inject_rate_limit_headers(response: Response, decision: RateLimitDecision,
                              config: RateLimitConfig) -> None:
    response.headers["X-RateLimit-Limit"] = str(config.max_requests)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    response.headers["X-RateLimit-Reset"] = str(decision.reset_time)


def rate_limit(config: RateLimitConfig):
    """
    Decorador que aplica `config` a un endpoint async de FastAPI.

    Uso (igual que `@limiter.limit("10/minute")` de SlowAPI; el endpoint
    DEBE recibir `request: Request`):

        @router.post("/api/upload")
        @rate_limit(RATE_LIMIT_CONFIGS["upload"])
        async def upload_file(request: Request, ...):
            ...

    - Limitado: no ejecuta el endpoint; retorna el 429.
    - No limitado: ejecuta el endpoint y agrega los headers X-RateLimit-*
      a su respuesta. Si el endpoint retorna un dict o un modelo Pydantic,
      se convierte a JSONResponse para poder adjuntar los headers.

    El limiter se resuelve en cada llamada desde `request.app.state.rate_limiter`.

    Ojo: el decorador envuelve al endpoint, y FastAPI valida la peticion
    ANTES de llamarlo. Una peticion malformada (sin archivo, sin body JSON)
    recibe el 422 de FastAPI sin pasar por aqui, asi que no consume cuota.
    """
    def decorator(func):
        # Mismo requisito que SlowAPI: sin `request` no hay a quien limitar.
        if "request" not in inspect.signature(func).parameters:
            raise TypeError(
                f"Endpoint '{func.__name__}' must declare a 'request: Request' "
                "parameter to be rate limited"
            )

        # functools.wraps copia __wrapped__, y FastAPI inspecciona la
        # firma ORIGINAL para resolver parametros (body, query, files...).
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            request = _find_request(args, kwargs)
            limiter = getattr(request.app.state, "rate_limiter", None)
            if limiter is None:
                raise RuntimeError(
                    "app.state.rate_limiter is not set; build the app with create_app()"
                )

            identifier = limiter.key_func(request)
            decision = limiter.check_and_consume(identifier, config)

            if decision.is_limited:
                logger.bind(
                    identifier=identifier,
                    path=request.url.path,
                    limit=config.max_requests,
                ).warning("Rate limit exceeded")
                return limiter.rejection_response(decision, config)

            response = await func(*args, **kwargs)
            if not isinstance(response, Response):
                response = JSONResponse(content=jsonable_encoder(response))
            inject_rate_limit_headers(response, decision, config)
            return response

        return wrapper

    return decorator
