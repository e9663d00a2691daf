"""
Object storage for source documents and rendered page images.

This module provides two interchangeable backends:
- S3ObjectStore: objects in the bucket named by S3_BUCKET_NAME, through boto3
- LocalObjectStore: objects as files under a local directory, for development
  and tests

Every blueprint owns one key prefix; deleting a blueprint's footprint is a
single ``delete_prefix`` call.
"""

from __future__ import annotations

import logging
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.exceptions import ClientError
from omegaconf import DictConfig

from .errors import ObjectNotFound
from .utils import ensure_directory

logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per call
DELETE_BATCH_SIZE = 1000


def _normalize_prefix(prefix: str) -> str:
    if not prefix.strip("/"):
        raise ValueError("Refusing to operate on an empty key prefix")
    return prefix if prefix.endswith("/") else f"{prefix}/"


class ObjectStore(ABC):
    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        """Store ``data`` under ``key``, replacing any previous object."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the object stored under ``key``; raises ObjectNotFound."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove one object; missing keys are ignored."""

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Remove every object under ``prefix/`` and return how many were removed."""


class LocalObjectStore(ObjectStore):
    def __init__(self, root: Path) -> None:
        self.root = ensure_directory(Path(root)).resolve()

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not str(path).startswith(str(self.root) + os.sep):
            raise ValueError(f"Invalid object key: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        path = self._path(key)
        ensure_directory(path.parent)
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise ObjectNotFound(f"No object stored under {key}")
        return path.read_bytes()

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def delete_prefix(self, prefix: str) -> int:
        directory = self._path(_normalize_prefix(prefix).rstrip("/"))
        if not directory.is_dir():
            return 0
        removed = sum(1 for path in directory.rglob("*") if path.is_file())
        shutil.rmtree(directory)
        logger.info(f"Deleted {removed} local objects under {prefix}")
        return removed


class S3ObjectStore(ObjectStore):
    """
    S3-backed store.

    The boto3 client is created lazily unless one is injected, so importing
    this module never needs AWS credentials.
    """

    def __init__(self, bucket: str, client: Optional[Any] = None) -> None:
        if not bucket:
            raise ValueError("S3_BUCKET_NAME not configured")
        self.bucket = bucket
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("s3")
        return self._client

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        logger.debug(f"Uploading {len(data)} bytes to s3://{self.bucket}/{key}")
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)

    def get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise ObjectNotFound(f"No object stored under s3://{self.bucket}/{key}") from e
            raise
        return response["Body"].read()

    def delete(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)

    def delete_prefix(self, prefix: str) -> int:
        prefix = _normalize_prefix(prefix)

        keys = []
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                keys.append({"Key": obj["Key"]})

        for i in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[i : i + DELETE_BATCH_SIZE]
            response = self.client.delete_objects(Bucket=self.bucket, Delete={"Objects": batch})
            errors = response.get("Errors", [])
            if errors:
                raise RuntimeError(f"S3 refused to delete {len(errors)} objects under {prefix}: {errors[0]}")

        logger.info(f"Deleted {len(keys)} objects from s3://{self.bucket}/{prefix}")
        return len(keys)


def build_object_store(config: DictConfig) -> ObjectStore:
    backend = str(config.storage.backend).lower()
    if backend == "s3":
        return S3ObjectStore(bucket=str(config.storage.bucket))
    if backend == "local":
        return LocalObjectStore(Path(str(config.storage.local_root)))
    raise ValueError(f"Unknown storage backend: {backend}")
