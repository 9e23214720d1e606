import io, uuid
from minio import Minio
from storefront.core.config import settings

ALLOWED_PROOF_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "application/pdf": ".pdf",
}
MAX_PROOF_BYTES = 5 * 1024 * 1024

def _host():
    return settings.S3_ENDPOINT.replace('http://','').replace('https://','')

def _client():
    return Minio(_host(), access_key=settings.S3_ACCESS_KEY, secret_key=settings.S3_SECRET_KEY, secure=settings.S3_SECURE)

def ensure_bucket(c=None):
    c = c or _client()
    if not c.bucket_exists(settings.PROOF_BUCKET):
        c.make_bucket(settings.PROOF_BUCKET)

def upload_payment_proof(order_number: str, data: bytes, content_type: str, client=None):
    """Store a bank-transfer receipt under ``proofs/<order_number>/`` and return (key, url)."""
    c = client or _client()
    ensure_bucket(c)
    key = f"proofs/{order_number}/{uuid.uuid4().hex}{ALLOWED_PROOF_TYPES.get(content_type, '')}"
    c.put_object(settings.PROOF_BUCKET, key, io.BytesIO(data), length=len(data), content_type=content_type)
    scheme = 'https' if settings.S3_SECURE else 'http'
    url = f"{scheme}://{_host()}/{settings.PROOF_BUCKET}/{key}"
    return key, url
