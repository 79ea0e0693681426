from functools import lru_cache

from trainai.config import config
from trainai.storage.base import ObjectStore
from trainai.storage.local import LocalObjectStore


@lru_cache
def get_object_store() -> ObjectStore:
    if config.STORAGE_BACKEND == "s3":
        from trainai.storage.s3 import S3ObjectStore

        return S3ObjectStore(
            bucket=config.STORAGE_BUCKET,
            region=config.AWS_REGION,
            endpoint_url=config.S3_ENDPOINT_URL,
            access_key_id=config.AWS_ACCESS_KEY_ID,
            secret_access_key=config.AWS_SECRET_ACCESS_KEY,
        )

    return LocalObjectStore(
        root=config.STORAGE_PATH / config.STORAGE_BUCKET,
        public_base_url=config.PUBLIC_BASE_URL,
        max_concurrent_io=config.MAX_CONCURRENT_IO,
    )
