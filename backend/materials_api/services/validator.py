"""
Modulo de validacion de archivos.

Este servicio es la PRIMERA linea de defensa contra archivos maliciosos
subidos como material de estudio. Antes de tocar S3 verificamos, en este
orden (y cortando en el primer fallo):

    1. Tamano maximo.
    2. Largo del nombre del archivo.
    3. Extension permitida.
    4. Tipo MIME declarado permitido (el Content-Type del multipart).
    5. Contenido real (magic bytes) compatible con la lista blanca.
    6. Nombre sospechoso ("virus", "malware").
    7. Cabecera de ejecutable de Windows ("MZ").

Por que no confiamos en el Content-Type del request HTTP?
---------------------------------------------------------
Porque el cliente puede enviarlo como quiera. Un atacante podria enviar
un ejecutable con Content-Type: application/pdf. Por eso tambien leemos
los primeros bytes del archivo ("magic bytes" o firma del formato):

    - PDF: 25 50 44 46 ("%PDF")
    - JPEG: FF D8 FF
    - PNG: 89 50 4E 47 0D 0A 1A 0A
    - DOCX/PPTX/XLSX: son archivos ZIP, empiezan con 50 4B 03 04 ("PK")

La tabla de firmas es estatica y se recorre en orden fijo, asi que el
resultado es determinista: mismo contenido y mismo nombre, mismo resultado.

Patron de diseno: Resultado como dataclass
------------------------------------------
`validate_file` NUNCA lanza excepciones por un archivo invalido: retorna
un ValidationResult con el motivo. Un archivo rechazado es un caso
normal, no un error del servidor.
"""

import io
import secrets
import string
import time
import zipfile
from dataclasses import dataclass, field
from typing import Optional

from loguru import logger

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
PPTX_MIME = "application/vnd.openxmlformats-officedocument.presentationml.presentation"
XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
EXECUTABLE_MIME = "application/x-executable"

# Nombre que usamos cuando la sanitizacion deja el nombre vacio.
FALLBACK_FILENAME = "uploaded_file"
MAX_SANITIZED_LENGTH = 255

# Tokens que, si aparecen en el nombre, hacen rechazar el archivo.
SUSPICIOUS_NAME_TOKENS = ("virus", "malware")

# Cabecera "MZ" de los ejecutables de Windows (.exe, .dll).
EXECUTABLE_SIGNATURE = b"MZ"

# Caracteres que Windows no permite en nombres de archivo.
_RESERVED_CHARS = str.maketrans({c: "_" for c in '<>:"|?*'})

_BASE36_ALPHABET = string.digits + string.ascii_lowercase


@dataclass(frozen=True)
class FileValidationConfig:
    """
    Reglas de validacion para un contexto de subida.

    Atributos:
        max_size_bytes (int): Tamano maximo permitido (inclusive).
        allowed_mime_types (frozenset[str]): Lista blanca de tipos MIME.
            Se aplica tanto al tipo declarado como al detectado.
        allowed_extensions (frozenset[str]): Extensiones con punto, en
            minusculas (ej: ".pdf").
        max_filename_length (int): Largo maximo del nombre original.
    """
    max_size_bytes: int
    allowed_mime_types: frozenset
    allowed_extensions: frozenset
    max_filename_length: int = 255

    def __post_init__(self):
        if self.max_size_bytes <= 0:
            raise ValueError("max_size_bytes must be > 0")
        if self.max_filename_length <= 0:
            raise ValueError("max_filename_length must be > 0")
        # Normalizamos a frozenset para que la config sea inmutable aunque
        # el caller pase una lista.
        object.__setattr__(self, "allowed_mime_types", frozenset(self.allowed_mime_types))
        object.__setattr__(
            self,
            "allowed_extensions",
            frozenset(ext.lower() for ext in self.allowed_extensions),
        )
        for ext in self.allowed_extensions:
            if not ext.startswith("."):
                raise ValueError(f"Extension '{ext}' must include the leading dot")


# Configuracion para apuntes y examenes anteriores: documentos de Office,
# PDF, texto plano e imagenes (fotos de apuntes escritos a mano).
STUDY_MATERIAL_VALIDATION = FileValidationConfig(
    max_size_bytes=100 * 1024 * 1024,  # 100 MB
    allowed_mime_types=frozenset({
        "application/pdf",
        DOCX_MIME,
        "application/msword",
        PPTX_MIME,
        "application/vnd.ms-powerpoint",
        XLSX_MIME,
        "application/vnd.ms-excel",
        "text/plain",
        "image/jpeg",
        # Algunos navegadores viejos envian este alias no estandar.
        "image/jpg",
        "image/png",
        "image/gif",
        "image/webp",
    }),
    allowed_extensions=frozenset({
        ".pdf", ".docx", ".doc", ".pptx", ".ppt", ".xlsx", ".xls",
        ".txt", ".jpg", ".jpeg", ".png", ".gif", ".webp",
    }),
    max_filename_length=255,
)


# Tabla de firmas: (bytes, tipo MIME), revisada en este orden.
# None es un comodin: en WEBP los bytes 4-7 son el tamano del archivo.
MAGIC_SIGNATURES: tuple = (
    ((0x25, 0x50, 0x44, 0x46), "application/pdf"),
    ((0xFF, 0xD8, 0xFF), "image/jpeg"),
    ((0x89, 0x50, 0x4E, 0x47, 0x0D, 0x0A, 0x1A, 0x0A), "image/png"),
    (tuple(b"GIF87a"), "image/gif"),
    (tuple(b"GIF89a"), "image/gif"),
    ((0x52, 0x49, 0x46, 0x46, None, None, None, None, 0x57, 0x45, 0x42, 0x50), "image/webp"),
    # BOMs de texto: UTF-8, UTF-16 LE, UTF-16 BE.
    ((0xEF, 0xBB, 0xBF), "text/plain"),
    ((0xFF, 0xFE), "text/plain"),
    ((0xFE, 0xFF), "text/plain"),
)

# Firmas de ZIP: cabecera local, fin de directorio central (ZIP vacio) y
# data descriptor (ZIP en streaming). Los formatos OOXML son ZIPs.
ZIP_SIGNATURES: tuple = (
    (0x50, 0x4B, 0x03, 0x04),
    (0x50, 0x4B, 0x05, 0x06),
    (0x50, 0x4B, 0x07, 0x08),
)


@dataclass
class UploadedFile:
    """
    Archivo recibido, ya leido en memoria.

    Atributos:
        name (str): Nombre tal como lo envio el cliente.
        content_type (str): Tipo MIME declarado en el multipart.
        data (bytes): Contenido del archivo.
    """
    name: str
    content_type: str
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class ValidationResult:
    """
    Resultado de la validacion de un archivo.

    Atributos:
        is_valid (bool): True si el archivo paso todas las validaciones.
        error (str): Motivo del rechazo; vacio si is_valid es True.
        detected_type (str): Tipo detectado por magic bytes, o el tipo
            declarado si ninguna firma coincidio. Puede venir informado
            aunque la validacion falle.
    """
    is_valid: bool
    error: str = ""
    detected_type: str = ""


def _matches(data: bytes, signature) -> bool:
    if len(data) < len(signature):
        return False
    return all(expected is None or data[i] == expected for i, expected in enumerate(signature))


def _classify_zip(data: bytes) -> str:
    """
    Distingue DOCX/PPTX/XLSX mirando las carpetas internas del ZIP.

    Si el ZIP no se puede leer o no es un documento de Office conocido,
    retornamos DOCX (el tipo generico del grupo ZIP); la subida sigue
    siendo rechazada o aceptada segun la lista blanca.
    """
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            names = archive.namelist()
    except (zipfile.BadZipFile, ValueError, EOFError):
        return DOCX_MIME

    prefixes = (("word/", DOCX_MIME), ("ppt/", PPTX_MIME), ("xl/", XLSX_MIME))
    for prefix, mime_type in prefixes:
        if any(name.startswith(prefix) for name in names):
            return mime_type
    return DOCX_MIME


def detect_mime_type(data: bytes) -> Optional[str]:
    """
    Detecta el tipo MIME por magic bytes.

    Retorna:
        str | None: El tipo de la primera firma que coincide, o None si el
        contenido no corresponde a ninguna firma conocida (ej: texto plano
        sin BOM, que es lo mas comun).
    """
    for signature, mime_type in MAGIC_SIGNATURES:
        if _matches(data, signature):
            return mime_type
    if any(_matches(data, signature) for signature in ZIP_SIGNATURES):
        return _classify_zip(data)
    return None


def _extension(filename: str) -> str:
    # "apuntes.final.PDF" -> ".pdf"; "README" -> ""
    index = filename.rfind(".")
    return filename[index:].lower() if index != -1 else ""


def _format_mb(size: int) -> str:
    return f"{size / 1024 / 1024:.2f}MB"


def validate_file(file: UploadedFile,
                  config: FileValidationConfig = STUDY_MATERIAL_VALIDATION) -> ValidationResult:
    """
    Valida un archivo subido contra `config`.

    Parametros:
        file (UploadedFile): Nombre, tipo declarado y contenido.
        config (FileValidationConfig): Reglas a aplicar.

    Retorna:
        ValidationResult: is_valid, error y detected_type.

    Ejemplos:
        >>> validate_file(UploadedFile("a.pdf", "application/pdf", b"%PDF\\n"))
        ValidationResult(is_valid=True, error='', detected_type='application/pdf')

        >>> only_png = FileValidationConfig(1024, {"image/png"}, {".pdf", ".png"})
        >>> validate_file(UploadedFile("a.pdf", "image/png", b"%PDF\\n"), only_png).is_valid
        False
    """

    # --- 1: Tamano ---
    if file.size > config.max_size_bytes:
        return ValidationResult(
            is_valid=False,
            error=(
                f"File size ({_format_mb(file.size)}) exceeds maximum allowed size "
                f"({_format_mb(config.max_size_bytes)})"
            ),
        )

    # --- 2: Largo del nombre ---
    if len(file.name) > config.max_filename_length:
        return ValidationResult(
            is_valid=False,
            error=(
                f"Filename is too long ({len(file.name)} characters). "
                f"Maximum allowed: {config.max_filename_length} characters"
            ),
        )

    # --- 3: Extension ---
    if _extension(file.name) not in config.allowed_extensions:
        return ValidationResult(
            is_valid=False,
            error=(
                "File extension not allowed. Allowed extensions: "
                + ", ".join(sorted(config.allowed_extensions))
            ),
        )

    # --- 4: Tipo MIME declarado ---
    if file.content_type not in config.allowed_mime_types:
        return ValidationResult(
            is_valid=False,
            error=(
                f"File type ({file.content_type}) not allowed. Allowed types: "
                + ", ".join(sorted(config.allowed_mime_types))
            ),
        )

    # --- 5: Contenido real (magic bytes) ---
    # Si no reconocemos la firma no rechazamos: texto plano sin BOM o un
    # .doc antiguo no tienen firma en nuestra tabla.
    detected_type = detect_mime_type(file.data)
    if detected_type and detected_type not in config.allowed_mime_types:
        return ValidationResult(
            is_valid=False,
            error=(
                f"File content type ({detected_type}) does not match declared type "
                f"({file.content_type}). This may indicate a malicious file."
            ),
            detected_type=detected_type,
        )

    # --- 6: Nombre sospechoso ---
    lowered = file.name.lower()
    if any(token in lowered for token in SUSPICIOUS_NAME_TOKENS):
        return ValidationResult(is_valid=False, error="Suspicious filename detected")

    # --- 7: Ejecutable de Windows ---
    # Se revisa aunque la extension y el tipo declarado parezcan inocentes.
    if file.data[:2] == EXECUTABLE_SIGNATURE:
        return ValidationResult(
            is_valid=False,
            error="Executable files are not allowed",
            detected_type=EXECUTABLE_MIME,
        )

    return ValidationResult(is_valid=True, detected_type=detected_type or file.content_type)


def sanitize_filename(filename: str) -> str:
    """
    Limpia un nombre de archivo para poder guardarlo como metadata.

    - Elimina separadores de ruta ("/" y "\\") y secuencias "..", lo que
      neutraliza intentos de path traversal ("../../etc/passwd").
    - Reemplaza < > : " | ? * por "_".
    - Si supera 255 caracteres, recorta el nombre base y conserva la
      extension.
    - Si queda vacio o es ".", usa "uploaded_file".

    La funcion es idempotente: sanitize_filename(sanitize_filename(x))
    == sanitize_filename(x).
    """
    sanitized = filename.replace("/", "").replace("\\", "")
    # En bucle: quitar ".." puede juntar dos puntos nuevos ("...." -> "").
    while ".." in sanitized:
        sanitized = sanitized.replace("..", "")

    sanitized = sanitized.translate(_RESERVED_CHARS)

    if len(sanitized) > MAX_SANITIZED_LENGTH:
        dot = sanitized.rfind(".")
        ext = sanitized[dot:] if dot != -1 else ""
        if ext and len(ext) < MAX_SANITIZED_LENGTH:
            # rstrip evita que el recorte deje "..": "nombre." + ".pdf"
            base = sanitized[:dot][:MAX_SANITIZED_LENGTH - len(ext)].rstrip(".")
            sanitized = base + ext
        else:
            sanitized = sanitized[:MAX_SANITIZED_LENGTH]

    if not sanitized or sanitized == ".":
        sanitized = FALLBACK_FILENAME

    return sanitized


def generate_secure_filename(original_name: str) -> str:
    """
    Genera la clave de almacenamiento de un archivo subido.

    Formato: {epoch_ms}_{13 caracteres base36}{extension sanitizada}
    Ejemplo: "1760572800000_k3j9x0a1b2c3d.pdf"

    El nombre original nunca se usa como clave (evita colisiones y no
    expone el nombre en la URL); se guarda aparte como metadata.
    """
    timestamp = int(time.time() * 1000)
    random_part = "".join(secrets.choice(_BASE36_ALPHABET) for _ in range(13))

    dot = original_name.rfind(".")
    ext = original_name[dot:] if dot != -1 else ""
    safe_ext = sanitize_filename(ext) if len(ext) > 1 else ""
    if not safe_ext.startswith("."):
        safe_ext = ""

    return f"{timestamp}_{random_part}{safe_ext}"


def log_file_validation(filename: str, file_size: int, mime_type: str,
                        detected_type: str, is_valid: bool, error: str = "") -> None:
    """Deja constancia de cada validacion para monitoreo de seguridad."""
    bound = logger.bind(
        filename=filename,
        file_size=file_size,
        mime_type=mime_type,
        detected_type=detected_type,
        is_valid=is_valid,
        error=error or None,
    )
    if is_valid:
        bound.info("File validation passed: {}", filename)
    else:
        bound.warning("File validation failed: {} ({})", filename, error)
