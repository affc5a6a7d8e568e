"""Bucket-scoped S3 primitives used by the transfer and rotation workflows."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from botocore.exceptions import BotoCoreError, ClientError, ReadTimeoutError
from botocore.exceptions import ConnectionError as BotoConnectionError

from errors import StoreError
from rotation import BucketEntry


logger = logging.getLogger(__name__)

NOISY_LOGGERS = ("boto", "boto3", "botocore", "urllib3", "s3transfer")

# botocore's own connect and read timeout, in seconds.
DEFAULT_SOCKET_TIMEOUT = 60.0

RETRYABLE_CODES = frozenset(
    {
        "RequestTimeout",
        "RequestTimeoutException",
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "InternalError",
        "ServiceUnavailable",
        "503",
        "500",
    }
)


def quiet_external_loggers() -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def normalize_endpoint(endpoint: str) -> str:
    """Accept bare hosts such as ``storage.yandexcloud.net`` by assuming HTTPS."""
    endpoint = endpoint.strip()
    if "://" not in endpoint:
        return f"https://{endpoint}"
    return endpoint


def create_s3_client(
    *,
    aws_profile: Optional[str],
    aws_region: Optional[str],
    endpoint_url: Optional[str] = None,
    credentials_file: Optional[Path] = None,
    max_pool_connections: Optional[int] = None,
    timeout: Optional[float] = None,
):
    import boto3
    import botocore.session
    from botocore.config import Config

    quiet_external_loggers()

    botocore_session = botocore.session.Session()
    if credentials_file:
        botocore_session.set_config_variable("credentials_file", str(credentials_file))
        logger.info("Using shared credentials file %s", credentials_file)

    session_kwargs: Dict[str, Any] = {"botocore_session": botocore_session}
    if aws_profile:
        session_kwargs["profile_name"] = aws_profile
    if aws_region:
        session_kwargs["region_name"] = aws_region
    session = boto3.Session(**session_kwargs)

    client_kwargs: Dict[str, Any] = {}
    if endpoint_url:
        client_kwargs["endpoint_url"] = normalize_endpoint(endpoint_url)
    config_kwargs: Dict[str, Any] = {}
    if max_pool_connections:
        config_kwargs["max_pool_connections"] = max_pool_connections
    if timeout is not None:
        # Keep socket timeouts within the transfer deadline.
        socket_timeout = max(1.0, min(DEFAULT_SOCKET_TIMEOUT, float(timeout)))
        config_kwargs["connect_timeout"] = socket_timeout
        config_kwargs["read_timeout"] = socket_timeout
    if config_kwargs:
        client_kwargs["config"] = Config(**config_kwargs)
    return session.client("s3", **client_kwargs)


@contextmanager
def _translate_errors(operation: str, bucket: str, key: Optional[str] = None) -> Iterator[None]:
    try:
        yield
    except ClientError as error:
        details = error.response.get("Error", {})
        code = details.get("Code")
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        retryable = code in RETRYABLE_CODES or (status is not None and status >= 500)
        raise StoreError(
            operation,
            bucket,
            key,
            code=code,
            status=status,
            message=details.get("Message") or str(error),
            retryable=retryable,
        ) from error
    except BotoCoreError as error:
        raise StoreError(
            operation,
            bucket,
            key,
            message=str(error),
            retryable=isinstance(error, (BotoConnectionError, ReadTimeoutError)),
        ) from error


class S3ObjectStore:
    """Thin wrapper around a boto3 S3 client.

    boto3 clients are safe to share between threads, so one store instance
    serves every transfer worker.
    """

    def __init__(self, client) -> None:
        self._client = client

    def list_objects(self, bucket: str, prefix: str = "") -> List[BucketEntry]:
        entries: List[BucketEntry] = []
        list_kwargs: Dict[str, Any] = {"Bucket": bucket}
        if prefix:
            list_kwargs["Prefix"] = prefix
        with _translate_errors("ListObjects", bucket, prefix or None):
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(**list_kwargs):
                for obj in page.get("Contents", []):
                    entries.append(BucketEntry(key=obj["Key"], last_modified=obj["LastModified"]))
        return entries

    def object_size(self, bucket: str, key: str) -> int:
        with _translate_errors("HeadObject", bucket, key):
            response = self._client.head_object(Bucket=bucket, Key=key)
        return int(response["ContentLength"])

    def get_range(self, bucket: str, key: str, start: int, end: int) -> bytes:
        """Fetch bytes ``start`` through ``end`` inclusive."""
        with _translate_errors("GetObject", bucket, key):
            response = self._client.get_object(
                Bucket=bucket, Key=key, Range=f"bytes={start}-{end}"
            )
            return response["Body"].read()

    def create_multipart_upload(self, bucket: str, key: str) -> str:
        with _translate_errors("CreateMultipartUpload", bucket, key):
            response = self._client.create_multipart_upload(Bucket=bucket, Key=key)
        return response["UploadId"]

    def upload_part(
        self, bucket: str, key: str, upload_id: str, part_number: int, body: bytes
    ) -> str:
        with _translate_errors("UploadPart", bucket, key):
            response = self._client.upload_part(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=body,
            )
        return response["ETag"]

    def complete_multipart_upload(
        self, bucket: str, key: str, upload_id: str, parts: Sequence[Tuple[int, str]]
    ) -> None:
        with _translate_errors("CompleteMultipartUpload", bucket, key):
            self._client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={
                    "Parts": [
                        {"PartNumber": number, "ETag": etag}
                        for number, etag in sorted(parts)
                    ]
                },
            )

    def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        with _translate_errors("AbortMultipartUpload", bucket, key):
            self._client.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id)

    def list_multipart_uploads(self, bucket: str) -> List[Tuple[str, str]]:
        sessions: List[Tuple[str, str]] = []
        with _translate_errors("ListMultipartUploads", bucket):
            paginator = self._client.get_paginator("list_multipart_uploads")
            for page in paginator.paginate(Bucket=bucket):
                for upload in page.get("Uploads", []):
                    sessions.append((upload["Key"], upload["UploadId"]))
        return sessions

    def delete_object(self, bucket: str, key: str) -> None:
        with _translate_errors("DeleteObject", bucket, key):
            self._client.delete_object(Bucket=bucket, Key=key)

    def abort_abandoned_uploads(self, bucket: str, *, dry_run: bool = False) -> int:
        """Abort every open multipart session in ``bucket``.

        Each abort is attempted once. Returns how many sessions were (or, in a
        dry run, would have been) aborted.
        """
        aborted = 0
        for key, upload_id in self.list_multipart_uploads(bucket):
            action = "Would abort" if dry_run else "Aborting"
            logger.info("%s multipart upload %s for s3://%s/%s", action, upload_id, bucket, key)
            if dry_run:
                aborted += 1
                continue
            try:
                self.abort_multipart_upload(bucket, key, upload_id)
            except StoreError as error:
                logger.warning("%s", error)
                continue
            aborted += 1
        return aborted
