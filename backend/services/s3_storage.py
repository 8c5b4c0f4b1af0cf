"""
S3 storage service for rendered videos and uploaded scene assets.

Objects are private; clients only ever receive short-lived presigned URLs.
"""

from typing import Optional

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from config import settings
from errors import ExternalServiceError, ValidationError

logger = structlog.get_logger()


def clamp_expiry(expiry: Optional[int], default: int) -> int:
    """Clamp a requested URL lifetime to ``(0, MAX_PRESIGNED_URL_EXPIRY]``"""
    if expiry is None:
        expiry = default
    return max(1, min(int(expiry), settings.MAX_PRESIGNED_URL_EXPIRY))


class S3StorageService:
    """
    Service for issuing presigned S3 URLs.
    """

    def __init__(
        self,
        bucket: Optional[str] = None,
        aws_access_key: Optional[str] = None,
        aws_secret_key: Optional[str] = None,
        region: Optional[str] = None,
    ):
        """Initialize S3 client."""
        self.region = region or settings.AWS_REGION
        self.s3_client = boto3.client(
            's3',
            region_name=self.region,
            aws_access_key_id=aws_access_key or settings.AWS_ACCESS_KEY_ID or None,
            aws_secret_access_key=aws_secret_key or settings.AWS_SECRET_ACCESS_KEY or None,
        )
        self.bucket_name = bucket or settings.STORAGE_BUCKET

        logger.info(
            "s3_storage_initialized",
            bucket=self.bucket_name,
            region=self.region
        )

    def _presign(self, method: str, params: dict, expiry: int, s3_key: str) -> str:
        try:
            url = self.s3_client.generate_presigned_url(
                method,
                Params=params,
                ExpiresIn=expiry
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(
                "s3_presigned_url_failed",
                s3_key=s3_key,
                method=method,
                error=str(e),
                exc_info=True
            )
            raise ExternalServiceError("storage", f"Failed to generate presigned URL: {e}")

        # Never hand out the bare key
        if url == s3_key:
            raise ExternalServiceError("storage", "Storage returned an unsigned URL")

        logger.info(
            "s3_presigned_url_generated",
            s3_key=s3_key,
            method=method,
            expiry_seconds=expiry
        )
        return url

    def generate_presigned_url(self, s3_key: str, expiry: Optional[int] = None) -> str:
        """
        Generate presigned download URL for S3 object.

        Args:
            s3_key: S3 object key
            expiry: URL expiration in seconds, capped at one hour

        Returns:
            Presigned URL string
        """
        s3_key = validate_s3_key(s3_key)
        expiry = clamp_expiry(expiry, settings.PRESIGNED_URL_EXPIRY)
        return self._presign(
            'get_object',
            {'Bucket': self.bucket_name, 'Key': s3_key},
            expiry,
            s3_key,
        )

    def generate_presigned_upload_url(self, s3_key: str, content_type: str, expiry: Optional[int] = None) -> str:
        """
        Generate presigned upload URL for S3 object.

        No ACL is attached, so uploaded objects stay private.

        Args:
            s3_key: S3 object key
            content_type: MIME type the client must upload with
            expiry: URL expiration in seconds, capped at one hour

        Returns:
            Presigned URL string
        """
        s3_key = validate_s3_key(s3_key)
        expiry = clamp_expiry(expiry, settings.UPLOAD_URL_EXPIRY)
        return self._presign(
            'put_object',
            {'Bucket': self.bucket_name, 'Key': s3_key, 'ContentType': content_type},
            expiry,
            s3_key,
        )


def render_output_key(render_job_id: str) -> str:
    """
    S3 key of a finished render.

    Examples:
        >>> render_output_key("123")
        'renders/123.mp4'
    """
    return f"renders/{render_job_id}.mp4"


def asset_upload_key(project_id: str, scene_id: str, asset_id: str, extension: str) -> str:
    """
    S3 key for a user-uploaded scene asset.

    Examples:
        >>> asset_upload_key("p1", "s1", "a1", "png")
        'assets/p1/s1/a1.png'
    """
    return f"assets/{project_id}/{scene_id}/{asset_id}.{extension}"


def validate_s3_key(s3_key: Optional[str], field_name: str = "s3Key") -> str:
    """
    Validate that an S3 key is not a URL.

    S3 keys should be paths like "renders/{id}.mp4", not URLs like
    "https://..." or "s3://...". This ensures we never accidentally save
    presigned URLs or full S3 URLs to the database.

    Raises:
        ValidationError: If s3_key is empty or appears to be a URL
    """
    s3_key = (s3_key or "").strip()
    if not s3_key:
        raise ValidationError(f"{field_name} is required", field_errors={field_name: ["must not be empty"]})

    if s3_key.startswith(("http://", "https://", "s3://")):
        raise ValidationError(
            f"{field_name} must be an S3 key, not a URL",
            field_errors={field_name: ["must be an S3 key, not a URL"]},
        )

    if "?" in s3_key and ("X-Amz-" in s3_key or "AWSAccessKeyId" in s3_key):
        raise ValidationError(
            f"{field_name} must be an S3 key, not a presigned URL",
            field_errors={field_name: ["must not be a presigned URL"]},
        )

    return s3_key


# Singleton instance
_s3_storage_service: Optional[S3StorageService] = None


def get_s3_storage_service() -> S3StorageService:
    """
    Get singleton S3 storage service instance.

    Returns:
        S3StorageService instance
    """
    global _s3_storage_service
    if _s3_storage_service is None:
        _s3_storage_service = S3StorageService()
    return _s3_storage_service
