"""
Modulo de servicio para Amazon S3 (Simple Storage Service).

Este modulo encapsula TODA la comunicacion con AWS S3. Ninguna ruta llama
directamente a boto3; todo pasa por este servicio, lo que permite
reemplazarlo por un mock en los tests de rutas y por moto en los tests
de este modulo.

Estructura de keys en nuestro proyecto:
    {epoch_ms}_{aleatorio}{extension}   -> material subido

Las claves no contienen el nombre original del archivo; ese nombre viaja
como metadata del objeto (x-amz-meta-original-filename).

Patron de diseno: Servicio + Singleton implicito + Inyeccion de dependencias
--------------------------------------------------------------------------
- La instancia `s3_service` se crea una vez al importar el modulo.
- El constructor acepta un `client` opcional: en tests pasamos el cliente
  de moto (o un MagicMock) en vez del cliente real de AWS.

Errores: este modulo NO atrapa excepciones de boto3. ClientError y
BotoCoreError suben hasta la ruta, que decide el codigo HTTP.
"""

from typing import Optional
from urllib.parse import quote, unquote, urlparse

import boto3
from botocore.exceptions import ClientError

from materials_api.config import settings


def is_s3_url(url: str) -> bool:
    """
    True si `url` apunta a S3 (virtual-hosted o path-style).

    Ejemplos:
        https://bucket.s3.us-east-1.amazonaws.com/key  -> True
        https://s3.us-east-1.amazonaws.com/bucket/key  -> True
        https://firebasestorage.googleapis.com/...      -> False
    """
    host = (urlparse(url).hostname or "").lower()
    return host.startswith("s3.") or host.startswith("s3-") or ".s3." in host or ".s3-" in host


def parse_s3_url(url: str) -> tuple[Optional[str], str]:
    """
    Extrae (bucket, key) de una URL publica de S3.

    - Virtual-hosted style: el bucket es la primera etiqueta del host.
    - Path-style: el bucket es el primer segmento de la ruta.

    La key se decodifica ("mis%20apuntes.pdf" -> "mis apuntes.pdf").
    El bucket es None si la URL no lo incluye.
    """
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    path = unquote(parsed.path.lstrip("/"))

    if host.startswith("s3.") or host.startswith("s3-"):
        bucket, _, key = path.partition("/")
        return (bucket or None), key

    return (host.split(".")[0] or None), path


class S3Service:
    """
    Servicio que encapsula todas las operaciones con Amazon S3.

    Atributos:
        client: Cliente de boto3 para S3.
        bucket (str): Bucket por defecto.
        region (str): Region del bucket, usada para construir URLs.
    """

    def __init__(self, client=None, bucket: Optional[str] = None, region: Optional[str] = None):
        self.region = region or settings.AWS_REGION
        self.client = client or boto3.client("s3", region_name=self.region)
        self.bucket = bucket or settings.S3_BUCKET_NAME

    def object_url(self, key: str) -> str:
        """URL publica (virtual-hosted style) de `key`."""
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{quote(key)}"

    def upload(self, data: bytes, key: str, content_type: str,
               metadata: Optional[dict] = None) -> str:
        """
        Sube un material a S3 y retorna su URL publica.

        ContentDisposition "attachment" obliga al navegador a descargar
        el archivo en vez de renderizarlo (un HTML disfrazado de .txt no
        se ejecuta en nuestro dominio).

        Parametros:
            data (bytes): Contenido del archivo.
            key (str): Clave generada con generate_secure_filename().
            content_type (str): Tipo MIME que S3 devolvera al descargar.
            metadata (dict | None): Metadata x-amz-meta-*. Las claves y
                valores deben ser strings ASCII.
        """
        params = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
            "ContentDisposition": "attachment",
        }
        if metadata:
            params["Metadata"] = metadata

        self.client.put_object(**params)
        return self.object_url(key)

    def head(self, key: str, bucket: Optional[str] = None) -> dict:
        """
        HEAD del objeto: metadata y tamano sin descargar el contenido.

        Lanza ClientError (404/403) si el objeto no existe o no es accesible.
        """
        return self.client.head_object(Bucket=bucket or self.bucket, Key=key)

    def exists(self, key: str, bucket: Optional[str] = None) -> bool:
        try:
            self.head(key, bucket=bucket)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True

    def delete(self, key: str, bucket: Optional[str] = None) -> dict:
        """
        Elimina un objeto de S3.

        delete_object no falla si el objeto no existe (es idempotente); por
        eso la ruta de borrado verifica existencia antes y despues.
        """
        response = self.client.delete_object(Bucket=bucket or self.bucket, Key=key)
        return response.get("ResponseMetadata", {})

    def list_objects(self, max_keys: int = 5) -> list[dict]:
        """Primeros `max_keys` objetos del bucket (diagnostico de configuracion)."""
        response = self.client.list_objects_v2(Bucket=self.bucket, MaxKeys=max_keys)
        return [
            {
                "key": obj["Key"],
                "size": obj["Size"],
                "lastModified": obj["LastModified"].isoformat(),
            }
            for obj in response.get("Contents", [])
        ]


s3_service = S3Service()
