from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO

import boto3
from botocore.client import BaseClient
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from app.core.errors import ObjectNotFoundError, StorageError

from .base import ObjectMetadata, PresignedURL, StorageBackend, StoredObject

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def _is_not_found(exc: ClientError) -> bool:
    error = exc.response.get("Error", {})
    return str(error.get("Code")) in _NOT_FOUND_CODES


def _strip_etag(raw: str | None) -> str | None:
    if raw is None:
        return None
    return raw.strip('"')


class S3Backend(StorageBackend):
    """S3-compatible object storage (AWS, MinIO, R2, ...) via boto3."""

    name = "s3"

    def __init__(
        self,
        *,
        bucket: str,
        region: str = "us-east-1",
        endpoint: str = "",
        access_key_id: str = "",
        secret_access_key: str = "",
        use_ssl: bool = True,
        path_prefix: str = "",
        force_path_style: bool = False,
        presigned_url_expiry_s: int = 900,
        client: BaseClient | None = None,
    ):
        self.bucket = bucket
        self.region = region or "us-east-1"
        self.endpoint = endpoint
        self.use_ssl = use_ssl
        self.path_prefix = path_prefix.strip("/")
        self.force_path_style = force_path_style
        self.presigned_url_expiry = timedelta(seconds=presigned_url_expiry_s)
        self.client = client or self._build_client(access_key_id, secret_access_key)

    def _build_client(self, access_key_id: str, secret_access_key: str) -> BaseClient:
        endpoint_url = None
        if self.endpoint:
            scheme = "https" if self.use_ssl else "http"
            endpoint_url = self.endpoint if "://" in self.endpoint else f"{scheme}://{self.endpoint}"
        addressing = "path" if self.force_path_style else "auto"
        return boto3.client(
            "s3",
            region_name=self.region,
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
            use_ssl=self.use_ssl,
            config=BotoConfig(s3={"addressing_style": addressing}, signature_version="s3v4"),
        )

    def object_key(self, path: str) -> str:
        path = path.lstrip("/")
        if self.path_prefix:
            return f"{self.path_prefix}/{path}"
        return path

    def _strip_prefix(self, key: str) -> str:
        if self.path_prefix and key.startswith(self.path_prefix + "/"):
            return key[len(self.path_prefix) + 1 :]
        return key

    def _head(self, op: str, path: str) -> dict[str, Any]:
        try:
            return self.client.head_object(Bucket=self.bucket, Key=self.object_key(path))
        except ClientError as exc:
            if _is_not_found(exc):
                raise ObjectNotFoundError(op, path, self.name, "object not found") from exc
            raise StorageError(op, path, self.name, exc) from exc
        except BotoCoreError as exc:
            raise StorageError(op, path, self.name, exc) from exc

    def upload(self, path: str, stream: BinaryIO, size: int, content_type: str | None) -> None:
        extra: dict[str, str] = {}
        if content_type:
            extra["ContentType"] = content_type
        try:
            # upload_fileobj switches to multipart for large or unknown-length streams
            self.client.upload_fileobj(stream, self.bucket, self.object_key(path), ExtraArgs=extra or None)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError("upload", path, self.name, exc) from exc

    def upload_bytes(self, path: str, data: bytes, content_type: str | None) -> None:
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": self.object_key(path), "Body": data}
        if content_type:
            params["ContentType"] = content_type
        try:
            self.client.put_object(**params)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError("upload bytes", path, self.name, exc) from exc

    def download(self, path: str) -> BinaryIO:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self.object_key(path))
        except ClientError as exc:
            if _is_not_found(exc):
                raise ObjectNotFoundError("download", path, self.name, "object not found") from exc
            raise StorageError("download", path, self.name, exc) from exc
        except BotoCoreError as exc:
            raise StorageError("download", path, self.name, exc) from exc
        return response["Body"]

    def delete(self, path: str) -> None:
        # DeleteObject succeeds for absent keys, so probe first to report not-found
        self._head("delete", path)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self.object_key(path))
        except (ClientError, BotoCoreError) as exc:
            raise StorageError("delete", path, self.name, exc) from exc

    def exists(self, path: str) -> bool:
        try:
            self._head("exists", path)
        except ObjectNotFoundError:
            return False
        return True

    def get_size(self, path: str) -> int:
        return int(self._head("get size", path).get("ContentLength", 0))

    def copy(self, src: str, dst: str) -> None:
        try:
            self.client.copy_object(
                Bucket=self.bucket,
                Key=self.object_key(dst),
                CopySource={"Bucket": self.bucket, "Key": self.object_key(src)},
            )
        except ClientError as exc:
            if _is_not_found(exc):
                raise ObjectNotFoundError("copy", src, self.name, "source object not found") from exc
            raise StorageError("copy", src, self.name, exc) from exc
        except BotoCoreError as exc:
            raise StorageError("copy", src, self.name, exc) from exc

    def move(self, src: str, dst: str) -> None:
        self.copy(src, dst)
        self.delete(src)

    def list(self, prefix: str, recursive: bool = True) -> list[StoredObject]:
        key_prefix = self.object_key(prefix) if prefix else (self.path_prefix + "/" if self.path_prefix else "")
        params: dict[str, Any] = {"Bucket": self.bucket, "Prefix": key_prefix}
        if not recursive:
            if key_prefix and not key_prefix.endswith("/"):
                params["Prefix"] = key_prefix + "/"
            params["Delimiter"] = "/"

        objects: list[StoredObject] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(**params):
                for item in page.get("Contents", []):
                    objects.append(
                        StoredObject(
                            path=self._strip_prefix(item["Key"]),
                            size=int(item.get("Size", 0)),
                            modified_at=item.get("LastModified"),
                            etag=_strip_etag(item.get("ETag")),
                        )
                    )
                for common in page.get("CommonPrefixes", []):
                    objects.append(
                        StoredObject(
                            path=self._strip_prefix(common["Prefix"]).rstrip("/"),
                            size=0,
                            is_dir=True,
                        )
                    )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError("list", prefix, self.name, exc) from exc
        return objects

    def get_metadata(self, path: str) -> ObjectMetadata:
        head = self._head("get metadata", path)
        return ObjectMetadata(
            path=path,
            size=int(head.get("ContentLength", 0)),
            modified_at=head.get("LastModified"),
            content_type=head.get("ContentType"),
            etag=_strip_etag(head.get("ETag")),
            checksum=head.get("ChecksumSHA256"),
            extra=dict(head.get("Metadata") or {}),
        )

    def supports_presigned_urls(self) -> bool:
        return True

    def get_presigned_upload_url(self, path: str, content_type: str | None, ttl: timedelta) -> PresignedURL:
        ttl = ttl or self.presigned_url_expiry
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": self.object_key(path)}
        headers: dict[str, str] = {}
        if content_type:
            params["ContentType"] = content_type
            headers["Content-Type"] = content_type
        try:
            url = self.client.generate_presigned_url(
                "put_object", Params=params, ExpiresIn=int(ttl.total_seconds())
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError("get presigned upload url", path, self.name, exc) from exc
        return PresignedURL(
            url=url,
            method="PUT",
            headers=headers,
            expires_at=datetime.now(timezone.utc) + ttl,
        )

    def get_presigned_download_url(self, path: str, ttl: timedelta) -> PresignedURL:
        ttl = ttl or self.presigned_url_expiry
        try:
            url = self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": self.object_key(path)},
                ExpiresIn=int(ttl.total_seconds()),
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError("get presigned download url", path, self.name, exc) from exc
        return PresignedURL(url=url, method="GET", expires_at=datetime.now(timezone.utc) + ttl)

    def get_public_url(self, path: str) -> str:
        key = self.object_key(path)
        if self.endpoint:
            scheme = "https" if self.use_ssl else "http"
            host = self.endpoint.split("://", 1)[-1].rstrip("/")
            if self.force_path_style:
                return f"{scheme}://{host}/{self.bucket}/{key}"
            return f"{scheme}://{self.bucket}.{host}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def close(self) -> None:
        self.client.close()


__all__ = ["S3Backend"]
