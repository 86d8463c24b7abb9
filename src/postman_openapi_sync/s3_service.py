"""
S3 service module for mirroring snapshots offsite.

Every newly written snapshot file is uploaded to an S3 bucket.

The bucket name comes from the ``s3.bucket`` setting. When it is empty, or
when running locally without AWS credentials, S3 operations are skipped
gracefully and snapshots remain local only.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class S3SnapshotMirror:
    """
    Copies snapshot files into ``s3://<bucket>/<prefix><filename>``.

    Uploads are best-effort: a failed upload is logged and reported as
    ``False`` but never fails the snapshot that triggered it.
    """

    def __init__(self, bucket: str, prefix: str = "", client: Any = None) -> None:
        self.bucket = bucket
        self.prefix = prefix
        self._client = client

    def _get_client(self):
        """
        Get or create the S3 client.

        Returns:
            boto3 S3 client or None if bucket is not configured

        Note:
            Credentials are not probed up front; credential errors surface
            during the actual upload.
        """
        if self._client is None:
            if not self.bucket:
                logger.warning("S3 bucket not configured")
                return None
            try:
                self._client = boto3.client("s3")
            except (BotoCoreError, ValueError) as e:
                logger.warning(f"Failed to create S3 client: {e}")
                self._client = None
        return self._client

    def key_for(self, filename: str) -> str:
        return f"{self.prefix}{filename}"

    def upload(self, snapshot_path: Path) -> bool:
        """
        Upload a snapshot file to S3.

        Args:
            snapshot_path: Path to the local snapshot file

        Returns:
            True if upload was successful, False otherwise
        """
        if not self.bucket:
            logger.debug("S3 bucket not configured, skipping snapshot mirror")
            return False

        client = self._get_client()
        if client is None:
            logger.warning("S3 client not available, skipping snapshot mirror")
            return False

        s3_key = self.key_for(snapshot_path.name)
        try:
            logger.info(f"Uploading {snapshot_path} to s3://{self.bucket}/{s3_key}")
            client.upload_file(str(snapshot_path), self.bucket, s3_key)
            logger.info(f"Upload successful: s3://{self.bucket}/{s3_key}")
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 upload failed: {e}")
            return False


def build_mirror(bucket: str, prefix: str) -> Optional[S3SnapshotMirror]:
    """Return a mirror for ``bucket`` or None when mirroring is disabled."""
    if not bucket:
        return None
    return S3SnapshotMirror(bucket=bucket, prefix=prefix)
