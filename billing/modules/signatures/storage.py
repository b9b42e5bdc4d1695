"""
Almacenamiento de la imagen de firma y del PDF firmado en MinIO.

Con SIGNATURE_STORAGE_ENABLED apagado (o si MinIO falla o no responde al subir la imagen)
la firma se guarda tal cual como data URL.
"""
from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError
from io import BytesIO
from typing import Optional, Tuple
from uuid import UUID
import base64
import binascii
import logging
import re

from billing.core.config import settings
from billing.common.exceptions import ValidationError

logger = logging.getLogger(__name__)

# Errores de MinIO o de conexión (servidor caído, DNS, timeout)
_STORAGE_ERRORS = (S3Error, HTTPError)

_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)(?P<params>(;[^,;]+)*),(?P<data>.*)$", re.DOTALL)


def decode_data_url(data_url: str, field: str) -> Tuple[str, bytes]:
    """'data:image/png;base64,AAAA' -> ('image/png', b'...')"""
    match = _DATA_URL.match(data_url)
    if not match or ";base64" not in match.group("params"):
        raise ValidationError.for_field(field, "Formato de data URL inválido")
    try:
        payload = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError.for_field(field, "Contenido base64 inválido") from e
    if not payload:
        raise ValidationError.for_field(field, "El archivo está vacío")
    return match.group("mime"), payload


class SignatureArtifactStore:
    """Sube artefactos de firma con estructura tenant_id/signatures/..."""

    def __init__(self, enabled: Optional[bool] = None, client: Optional[Minio] = None):
        self.enabled = settings.SIGNATURE_STORAGE_ENABLED if enabled is None else enabled
        self.bucket_name = settings.MINIO_BUCKET_NAME
        self._client = client
        self._bucket_checked = False

    @property
    def client(self) -> Minio:
        if self._client is None:
            self._client = Minio(
                settings.minio_endpoint,
                access_key=settings.MINIO_ACCESS_KEY,
                secret_key=settings.MINIO_SECRET_KEY,
                secure=settings.MINIO_USE_SSL
            )
        if not self._bucket_checked:
            if not self._client.bucket_exists(self.bucket_name):
                self._client.make_bucket(self.bucket_name)
                logger.info(f"Created MinIO bucket: {self.bucket_name}")
            self._bucket_checked = True
        return self._client

    def object_url(self, key: str) -> str:
        scheme = "https" if settings.MINIO_USE_SSL else "http"
        return f"{scheme}://{settings.minio_public_endpoint}/{self.bucket_name}/{key}"

    def _put(self, key: str, content_type: str, payload: bytes) -> str:
        self.client.put_object(
            self.bucket_name,
            key,
            BytesIO(payload),
            length=len(payload),
            content_type=content_type
        )
        logger.info(f"Stored signature artifact {key} ({len(payload)} bytes)")
        return self.object_url(key)

    def store_signature_image(self, tenant_id: UUID, token: str, data_url: str) -> str:
        content_type, payload = decode_data_url(data_url, "signature_image")
        if not self.enabled:
            return data_url

        key = f"{tenant_id}/signatures/{token}-signature.png"
        try:
            return self._put(key, content_type, payload)
        except _STORAGE_ERRORS as e:
            logger.error(f"MinIO upload failed for {key}, keeping data URL: {e}")
            return data_url

    def store_signed_pdf(self, tenant_id: UUID, document_number: str, data_url: str) -> Optional[str]:
        content_type, payload = decode_data_url(data_url, "signed_pdf")
        if not self.enabled:
            return None

        key = f"{tenant_id}/signed/{document_number}-signed.pdf"
        try:
            return self._put(key, content_type, payload)
        except _STORAGE_ERRORS as e:
            logger.error(f"MinIO upload failed for {key}, signed PDF not stored: {e}")
            return None
