"""
Report Blob Store
===================
Fetches raw report bytes through time-limited signed references.
  - http(s) references are fetched as-is
  - anything else is an object key, presigned with boto3 (S3-compatible)
A missing object (404) is an empty result, not an error.
"""

import logging
import os
from urllib.parse import urlparse

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from config import (
    AWS_REGION, BLOB_FETCH_TIMEOUT_SEC, REPORTS_BUCKET, S3_ENDPOINT_URL, SIGNED_URL_TTL_SEC,
)
from errors import ExtractionFailure

logger = logging.getLogger("body_impact")

_EXTENSION_MIME_TYPES = {
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}
DEFAULT_MIME_TYPE = "application/octet-stream"


def detect_mime_type(content_type: str | None, ref: str | None) -> str:
    """Content-type header first, then the reference's file extension."""
    if content_type:
        mime = content_type.split(";")[0].strip().lower()
        if mime and mime != DEFAULT_MIME_TYPE:
            return mime
    if ref:
        path = urlparse(ref).path if "://" in ref else ref
        ext = os.path.splitext(path)[1].lower()
        if ext in _EXTENSION_MIME_TYPES:
            return _EXTENSION_MIME_TYPES[ext]
    return DEFAULT_MIME_TYPE


class BlobStore:
    def __init__(self, bucket: str | None = REPORTS_BUCKET, endpoint_url: str | None = S3_ENDPOINT_URL,
                 session: requests.Session | None = None, s3_client=None):
        self.bucket = bucket
        self.session = session or requests.Session()
        self.s3 = s3_client
        if self.s3 is None and bucket:
            try:
                self.s3 = boto3.client("s3", endpoint_url=endpoint_url, region_name=AWS_REGION)
            except (BotoCoreError, ValueError) as e:
                logger.error(f"Failed to initialize S3 client: {e}")

    def signed_url(self, report_ref: str, expires_in: int = SIGNED_URL_TTL_SEC) -> str:
        if report_ref.startswith(("http://", "https://")):
            return report_ref
        if self.s3 is None or not self.bucket:
            raise ExtractionFailure(f"No bucket configured to sign '{report_ref}'")
        try:
            return self.s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": report_ref},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            raise ExtractionFailure(f"Could not sign '{report_ref}': {e}") from e

    def fetch_with_type(self, report_ref: str) -> tuple[bytes, str] | None:
        """(bytes, mime type) for a reference, None when the object does not exist."""
        url = self.signed_url(report_ref)
        try:
            response = self.session.get(url, timeout=BLOB_FETCH_TIMEOUT_SEC)
        except requests.RequestException as e:
            raise ExtractionFailure(f"Network error fetching '{report_ref}': {e}") from e
        if response.status_code == 404:
            logger.warning(f"Report object not found: {report_ref}")
            return None
        if not response.ok:
            raise ExtractionFailure(
                f"Fetching '{report_ref}' failed with HTTP {response.status_code}"
            )
        mime = detect_mime_type(response.headers.get("Content-Type"), report_ref)
        return response.content, mime

    def fetch(self, report_ref: str) -> bytes | None:
        fetched = self.fetch_with_type(report_ref)
        return fetched[0] if fetched else None
