import logging
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from fastapi.concurrency import run_in_threadpool

from trainai.errors import StorageError, ObjectExistsError
from trainai.storage.base import ObjectStore, StoredObject

logger = logging.getLogger(__name__)


class S3ObjectStore(ObjectStore):
    def __init__(
            self,
            bucket: str,
            region: Optional[str] = None,
            endpoint_url: Optional[str] = None,
            access_key_id: Optional[str] = None,
            secret_access_key: Optional[str] = None,
            client=None
    ):
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.s3 = client or boto3.client(
            "s3",
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region,
            endpoint_url=endpoint_url,
        )

    def _exists(self, key: str) -> bool:
        try:
            self.s3.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise

    async def put(self, path: str, data: bytes, content_type: str, overwrite: bool = True) -> str:
        def upload() -> None:
            if not overwrite and self._exists(path):
                raise ObjectExistsError(f"Object already exists: '{path}'")

            self.s3.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=content_type or "application/octet-stream",
            )

        try:
            await run_in_threadpool(upload)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to write object '{path}'") from e

        return path

    async def list(self, prefix: str, search: str = "") -> List[StoredObject]:
        key_prefix = f"{prefix.rstrip('/')}/"

        def scan() -> List[StoredObject]:
            objects: List[StoredObject] = []
            paginator = self.s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=key_prefix + search, Delimiter="/"):
                for item in page.get("Contents", []):
                    objects.append(StoredObject(name=item["Key"][len(key_prefix):], size=item["Size"]))

            return objects

        try:
            return await run_in_threadpool(scan)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to list objects under '{prefix}'") from e

    async def get(self, path: str) -> bytes:
        def download() -> bytes:
            obj = self.s3.get_object(Bucket=self.bucket, Key=path)
            return obj["Body"].read()

        try:
            return await run_in_threadpool(download)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to read object '{path}'") from e

    async def delete(self, paths: List[str]) -> None:
        if not paths:
            return

        def remove() -> None:
            # delete_objects accepts at most 1000 keys per call
            for i in range(0, len(paths), 1000):
                response = self.s3.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": p} for p in paths[i:i + 1000]], "Quiet": True},
                )
                if response.get("Errors"):
                    raise StorageError(f"Failed to delete {len(response['Errors'])} object(s)")

        try:
            await run_in_threadpool(remove)
        except (BotoCoreError, ClientError) as e:
            raise StorageError("Failed to delete objects") from e

    def public_url(self, path: str) -> str:
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{path}"

        if self.region:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{path}"

        return f"https://{self.bucket}.s3.amazonaws.com/{path}"
