"""
AWS Storage and Functions
=========================

StorageService over S3 and FunctionService over Lambda, both via boto3.
Calls run in worker threads; boto3 errors become StorageError or
FunctionError.

Version: 0.1.0
"""

import asyncio
import json
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from shared.backend.base import FunctionService, StorageService, StoredObject
from shared.backend.errors import FunctionError, StorageError
from shared.logging import get_logger


logger = get_logger(__name__)


def _client(
    service: str,
    region: str,
    access_key_id: str | None,
    secret_access_key: str | None,
) -> Any:
    return boto3.client(
        service,
        region_name=region,
        aws_access_key_id=access_key_id or None,
        aws_secret_access_key=secret_access_key or None,
    )


class S3StorageService(StorageService):
    """S3 object storage with presigned download URLs."""

    def __init__(
        self,
        region: str = "eu-west-2",
        client: Any | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        self._client = client or _client("s3", region, access_key_id, secret_access_key)

    async def _call(self, operation: str, **params: Any) -> Any:
        try:
            return await asyncio.to_thread(getattr(self._client, operation), **params)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            logger.warning("s3_call_failed", operation=operation, error_code=code)
            if code in ("NoSuchKey", "404", "NotFound"):
                raise StorageError(f"Object not found: {params.get('Bucket')}/{params.get('Key')}") from e
            raise StorageError(f"S3 {operation} failed: {code}") from e
        except BotoCoreError as e:
            logger.error("s3_unavailable", operation=operation, error=str(e))
            raise StorageError(f"S3 {operation} failed: {e}") from e

    async def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> StoredObject:
        params: dict[str, Any] = {
            "Bucket": bucket,
            "Key": key,
            "Body": data,
            "ServerSideEncryption": "AES256",
        }
        if content_type:
            params["ContentType"] = content_type
        if metadata:
            params["Metadata"] = metadata

        await self._call("put_object", **params)
        logger.debug("object_stored", bucket=bucket, key=key, size=len(data))
        return StoredObject(
            bucket=bucket,
            key=key,
            size=len(data),
            content_type=content_type,
            metadata=dict(metadata or {}),
        )

    async def download(self, bucket: str, key: str) -> bytes:
        response = await self._call("get_object", Bucket=bucket, Key=key)
        return await asyncio.to_thread(response["Body"].read)

    async def delete(self, bucket: str, key: str) -> None:
        await self._call("delete_object", Bucket=bucket, Key=key)

    async def get_signed_url(self, bucket: str, key: str, expires_in: int = 3600) -> str:
        return await self._call(
            "generate_presigned_url",
            ClientMethod="get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    async def list_objects(self, bucket: str, prefix: str = "") -> list[StoredObject]:
        objects: list[StoredObject] = []
        params: dict[str, Any] = {"Bucket": bucket, "Prefix": prefix}

        while True:
            response = await self._call("list_objects_v2", **params)
            for item in response.get("Contents", []):
                objects.append(
                    StoredObject(
                        bucket=bucket,
                        key=item["Key"],
                        size=item.get("Size", 0),
                        last_modified=item["LastModified"],
                    )
                )
            if not response.get("IsTruncated"):
                break
            params["ContinuationToken"] = response["NextContinuationToken"]

        return objects


class LambdaFunctionService(FunctionService):
    """
    Invokes Lambda functions synchronously.

    Function names are prefixed (e.g. "mindmeasure-") unless already
    qualified.
    """

    def __init__(
        self,
        prefix: str = "",
        region: str = "eu-west-2",
        client: Any | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        self._prefix = prefix
        self._client = client or _client("lambda", region, access_key_id, secret_access_key)

    def _qualified(self, name: str) -> str:
        if not self._prefix or name.startswith(self._prefix) or name.startswith("arn:"):
            return name
        return f"{self._prefix}{name}"

    async def invoke(
        self,
        function_name: str,
        payload: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        name = self._qualified(function_name)
        body = {"body": payload or {}, "headers": headers or {}}

        try:
            response = await asyncio.to_thread(
                self._client.invoke,
                FunctionName=name,
                InvocationType="RequestResponse",
                Payload=json.dumps(body, default=str).encode(),
            )
            raw = await asyncio.to_thread(response["Payload"].read)
        except (ClientError, BotoCoreError) as e:
            logger.error("lambda_invoke_failed", function=name, error=str(e))
            raise FunctionError(f"Invocation of {name} failed") from e

        result = json.loads(raw or b"{}")
        if response.get("FunctionError"):
            logger.error("lambda_function_error", function=name, error=result.get("errorMessage"))
            raise FunctionError(result.get("errorMessage") or f"{name} raised an error")

        # API Gateway style responses carry a JSON string body
        if isinstance(result, dict) and isinstance(result.get("body"), str):
            try:
                return json.loads(result["body"])
            except json.JSONDecodeError:
                return {"body": result["body"]}
        return result
