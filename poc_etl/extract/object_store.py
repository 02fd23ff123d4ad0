"""
S3 object store access.

The engine only needs two capabilities from the store: list keys under a
prefix and read one object's bytes.
"""

import os
from contextlib import closing
from dataclasses import dataclass
from typing import Iterator, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from poc_etl.config import Config
from poc_etl.errors import DiscoveryError, FetchError


def get_s3_client():
    """Get S3 client with credentials from environment"""
    aws_profile = os.getenv("AWS_PROFILE")
    aws_access_key = os.getenv("AWS_ACCESS_KEY_ID")
    aws_secret_key = os.getenv("AWS_SECRET_ACCESS_KEY")
    region = Config.AWS_REGION

    # Explicit keys win over a profile
    if aws_access_key and aws_secret_key:
        session = boto3.Session(
            aws_access_key_id=aws_access_key,
            aws_secret_access_key=aws_secret_key,
            region_name=region,
        )
    elif aws_profile:
        session = boto3.Session(profile_name=aws_profile)
    else:
        session = boto3.Session()

    return session.client("s3", region_name=region)


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int


class S3ObjectStore:
    """List and read objects in one bucket."""

    def __init__(self, bucket: Optional[str] = None, client=None):
        self.bucket = bucket or Config.S3_BUCKET_NAME
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_s3_client()
        return self._client

    def list(self, prefix: str, start_after: Optional[str] = None) -> Iterator[ObjectInfo]:
        """
        List objects whose key starts with prefix.

        Args:
            prefix: Key prefix to list
            start_after: Optional key to start listing after (exclusive)

        Yields:
            ObjectInfo for every object on every page

        Raises:
            DiscoveryError: If S3 rejects or fails the listing
        """
        params = {"Bucket": self.bucket, "Prefix": prefix}
        if start_after:
            params["StartAfter"] = start_after

        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(**params):
                for obj in page.get("Contents", []):
                    yield ObjectInfo(key=obj["Key"], size=int(obj.get("Size", 0)))
        except (ClientError, BotoCoreError) as e:
            raise DiscoveryError(
                f"Failed to list s3://{self.bucket}/{prefix}: {e}"
            ) from e

    def get(self, key: str) -> bytes:
        """
        Read one object fully.

        Raises:
            FetchError: If the object cannot be read
        """
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            with closing(response["Body"]) as body:
                return body.read()
        except (ClientError, BotoCoreError) as e:
            raise FetchError(f"Failed to read s3://{self.bucket}/{key}: {e}") from e
