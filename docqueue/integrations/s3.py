"""S3 integration for document and artifact storage."""

import asyncio
from datetime import datetime
from typing import Optional

import boto3
import structlog
from botocore.exceptions import ClientError

from docqueue.config import settings
from docqueue.errors import ProcessorError

logger = structlog.get_logger()


class S3Service:
    """Service for S3 file operations.

    boto3 is blocking, so every call runs in a worker thread.
    """

    def __init__(self, client=None, bucket: Optional[str] = None, prefix: Optional[str] = None):
        """Initialize S3 client with S3-specific credentials."""
        if client is None:
            client_kwargs = {"region_name": settings.S3_REGION}
            if settings.S3_ACCESS_KEY_ID and settings.S3_SECRET_ACCESS_KEY:
                client_kwargs["aws_access_key_id"] = settings.S3_ACCESS_KEY_ID
                client_kwargs["aws_secret_access_key"] = settings.S3_SECRET_ACCESS_KEY
            client = boto3.client("s3", **client_kwargs)
        self.client = client
        self.bucket = bucket or settings.S3_BUCKET
        self.prefix = settings.S3_PREFIX if prefix is None else prefix

    def _get_key(self, path: str) -> str:
        """Get full S3 key with prefix."""
        if not self.prefix:
            return path.lstrip("/")
        return f"{self.prefix.rstrip('/')}/{path.lstrip('/')}"

    async def upload(
        self,
        content: bytes,
        path: str,
        content_type: str = "application/octet-stream",
        metadata: Optional[dict] = None,
    ) -> str:
        """Upload content to S3.

        Args:
            content: File content as bytes
            path: Path within the bucket (without prefix)
            content_type: MIME type
            metadata: Optional metadata

        Returns:
            Full S3 key
        """
        key = self._get_key(path)

        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType=content_type,
                Metadata=metadata or {},
            )
        except ClientError as e:
            logger.error("S3 upload failed", key=key, error=str(e))
            raise S3Error(f"Upload failed: {str(e)}") from e

        logger.info("File uploaded to S3", bucket=self.bucket, key=key, size=len(content))
        return key

    async def download(self, key: str) -> bytes:
        """Download content from S3 by full key."""
        try:
            response = await asyncio.to_thread(self.client.get_object, Bucket=self.bucket, Key=key)
            content = await asyncio.to_thread(response["Body"].read)
        except ClientError as e:
            logger.error("S3 download failed", key=key, error=str(e))
            raise S3Error(f"Download failed: {str(e)}") from e

        logger.info("File downloaded from S3", bucket=self.bucket, key=key, size=len(content))
        return content

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            logger.error("S3 delete failed", key=key, error=str(e))
            raise S3Error(f"Delete failed: {str(e)}") from e

        logger.info("File deleted from S3", bucket=self.bucket, key=key)

    # Convenience methods for specific artifact types

    async def upload_export(
        self,
        organization_id: str,
        content: bytes,
        export_format: str,
        generated_at: datetime,
    ) -> str:
        """Upload a tenant data export."""
        stamp = generated_at.strftime("%Y%m%dT%H%M%S")
        path = f"exports/{organization_id}/documents-{stamp}.{export_format}"

        return await self.upload(
            content=content,
            path=path,
            content_type=self._get_content_type(path),
        )

    async def upload_audit_report(
        self,
        organization_id: str,
        content: bytes,
        generated_at: datetime,
    ) -> str:
        """Upload an activity audit report."""
        stamp = generated_at.strftime("%Y%m%dT%H%M%S")
        path = f"audit/{organization_id}/audit-{stamp}.json"

        return await self.upload(content=content, path=path, content_type="application/json")

    def _get_content_type(self, filename: str) -> str:
        """Get content type from filename."""
        ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""

        content_types = {
            "pdf": "application/pdf",
            "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            "txt": "text/plain",
            "csv": "text/csv",
            "json": "application/json",
        }

        return content_types.get(ext, "application/octet-stream")


class S3Error(ProcessorError):
    """Raised when S3 operations fail."""

    pass
