"""Object Storage Nodes

``object-storage-output`` serializes the input (json, csv, text or binary,
optionally gzipped) and uploads it to S3 with boto3. Bodies larger than
``partSize`` use a multipart upload with up to ``queueSize`` parts in
flight; a failed multipart upload is aborted.

``object-storage`` downloads one object (decoded by content type or
extension) or lists one page of keys. boto3 is synchronous, so every call
runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import base64
import csv
import gzip
import io
import json
import logging
import secrets as _secrets
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .. import settings
from ..engine.context import NodeExecutionContext, NodeResult, utcnow
from ..engine.template import has_placeholders, resolve, stringify, template_context
from ..errors import ConfigurationError
from .data import parse_csv
from .registry import CATEGORY_DATA, CATEGORY_OUTPUT, BaseNodeImpl, ExecutorMetadata, register_node_type

logger = logging.getLogger(__name__)

FORMATS = {
    "json": "application/json",
    "csv": "text/csv",
    "text": "text/plain",
    "binary": "application/octet-stream",
}

ACLS = [
    "private", "public-read", "public-read-write", "authenticated-read",
    "aws-exec-read", "bucket-owner-read", "bucket-owner-full-control",
]

STORAGE_CLASSES = [
    "STANDARD", "REDUCED_REDUNDANCY", "STANDARD_IA", "ONEZONE_IA",
    "INTELLIGENT_TIERING", "GLACIER", "DEEP_ARCHIVE", "GLACIER_IR",
]

MIN_PART_SIZE = 5 * 1024 * 1024


def key_variables(now=None) -> Dict[str, str]:
    """Built-in variables available in key templates."""
    now = now or utcnow()
    return {
        "timestamp": str(int(now.timestamp() * 1000)),
        "date": now.strftime("%Y-%m-%d"),
        "datetime": now.strftime("%Y-%m-%dT%H-%M-%S"),
        "year": now.strftime("%Y"),
        "month": now.strftime("%m"),
        "day": now.strftime("%d"),
        "hour": now.strftime("%H"),
        "minute": now.strftime("%M"),
        "second": now.strftime("%S"),
        "random": _secrets.token_hex(4),
    }


def to_csv(data: Any, delimiter: str = ",", header: bool = True) -> str:
    rows = data if isinstance(data, list) else [data]
    if rows and all(isinstance(row, dict) for row in rows):
        columns: List[str] = []
        for row in rows:
            for column in row:
                if column not in columns:
                    columns.append(column)
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction="ignore", delimiter=delimiter)
        if header:
            writer.writeheader()
        for row in rows:
            writer.writerow({k: v if isinstance(v, (str, int, float)) or v is None else stringify(v)
                             for k, v in row.items()})
        return buffer.getvalue()

    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=delimiter)
    if header:
        writer.writerow(["value"])
    for row in rows:
        writer.writerow([stringify(row)])
    return buffer.getvalue()


def serialize(data: Any, fmt: str) -> bytes:
    """Encode the input for upload in the requested format."""
    if fmt == "csv":
        return to_csv(data).encode("utf-8")
    if fmt == "text":
        return stringify(data).encode("utf-8")
    if fmt == "binary":
        if isinstance(data, bytes):
            return data
        if isinstance(data, dict):
            data = data.get("data") or data.get("content") or ""
        try:
            return base64.b64decode(str(data), validate=True)
        except ValueError as e:
            raise ConfigurationError(f"binary format expects base64 input: {e}", field="format") from e
    return json.dumps(data, ensure_ascii=False, default=str).encode("utf-8")


def _s3_client(options: Dict[str, Any]):
    return boto3.client(
        "s3",
        region_name=options.get("region"),
        aws_access_key_id=options.get("accessKeyId"),
        aws_secret_access_key=options.get("secretAccessKey"),
        endpoint_url=options.get("endpoint") or None,
    )


class ObjectStorageNode(BaseNodeImpl):
    """Credential and key handling shared by the object storage nodes."""

    def _options(self, ctx: NodeExecutionContext) -> Dict[str, Any]:
        options = dict(self.config)
        secrets = ctx.services.secrets
        options.setdefault("region", secrets.get("AWS_REGION", "us-east-1"))
        if not options.get("accessKeyId"):
            options["accessKeyId"] = secrets.get("AWS_ACCESS_KEY_ID")
        if not options.get("secretAccessKey"):
            options["secretAccessKey"] = secrets.get("AWS_SECRET_ACCESS_KEY")
        if not options.get("endpoint"):
            options["endpoint"] = secrets.get("S3_ENDPOINT")
        return options

    def resolve_key(self, ctx: NodeExecutionContext) -> str:
        context = template_context(ctx.input, {**key_variables(), **ctx.identifiers()})
        key = resolve(self.config["key"], context).lstrip("/")
        if has_placeholders(key):
            raise ConfigurationError(f"Object key has unresolved placeholders: {key}", field="key")
        return key


@register_node_type(
    node_type="object-storage-output",
    display_name="Object Storage",
    description="Upload data to S3-compatible object storage",
    category=CATEGORY_OUTPUT,
    config_schema={
        "type": "object",
        "properties": {
            "bucket": {"type": "string", "minLength": 3},
            "key": {"type": "string", "minLength": 1},
            "region": {"type": "string"},
            "endpoint": {"type": "string"},
            "accessKeyId": {"type": "string"},
            "secretAccessKey": {"type": "string"},
            "format": {"type": "string", "enum": list(FORMATS)},
            "compression": {"type": "string", "enum": ["none", "gzip"]},
            "contentType": {"type": "string"},
            "acl": {"type": "string", "enum": ACLS},
            "storageClass": {"type": "string", "enum": STORAGE_CLASSES},
            "serverSideEncryption": {"type": "string", "enum": ["none", "AES256", "aws:kms"]},
            "kmsKeyId": {"type": "string"},
            "cacheControl": {"type": "string"},
            "metadata": {"type": "object", "additionalProperties": {"type": "string"}},
            "tags": {"type": "object", "additionalProperties": {"type": "string"}},
            "partSize": {"type": "integer", "minimum": MIN_PART_SIZE},
            "queueSize": {"type": "integer", "minimum": 1, "maximum": 32},
            "maxVersions": {"type": "integer", "minimum": 1},
            "retryCount": {"type": "integer", "minimum": 0, "maximum": 10},
            "retryDelay": {"type": "integer", "minimum": 0},
            "errorHandling": {"type": "string", "enum": ["fail", "continue", "retry"]},
        },
        "required": ["bucket"],
        "if": {"properties": {"serverSideEncryption": {"const": "aws:kms"}}, "required": ["serverSideEncryption"]},
        "then": {"required": ["kmsKeyId"]},
    },
    output_schema={
        "type": "object",
        "properties": {
            "bucket": {"type": "string"},
            "key": {"type": "string"},
            "location": {"type": "string"},
            "etag": {"type": ["string", "null"]},
            "versionId": {"type": ["string", "null"]},
            "size": {"type": "integer"},
        },
    },
    metadata=ExecutorMetadata(
        allowed_outputs=[],
        max_inputs=1,
        max_outputs=0,
        is_async=True,
        requires_auth=True,
        default_data={
            "key": "workflow-output/{{date}}/{{timestamp}}-{{random}}.json",
            "format": "json",
            "compression": "none",
            "acl": "private",
            "serverSideEncryption": "none",
            "metadata": {},
            "tags": {},
        },
    ),
    icon="cloud-upload",
    color="#F97316",
)
class ObjectStorageOutputNode(ObjectStorageNode):
    """Upload one object per run; optionally prune old versions of the key."""

    def _put_params(self, bucket: str, key: str, content_type: str) -> Dict[str, Any]:
        params: Dict[str, Any] = {"Bucket": bucket, "Key": key, "ContentType": content_type}
        if self.config.get("compression") == "gzip":
            params["ContentEncoding"] = "gzip"
        if self.config.get("acl"):
            params["ACL"] = self.config["acl"]
        if self.config.get("storageClass"):
            params["StorageClass"] = self.config["storageClass"]
        sse = self.config.get("serverSideEncryption", "none")
        if sse != "none":
            params["ServerSideEncryption"] = sse
            if sse == "aws:kms":
                params["SSEKMSKeyId"] = self.config["kmsKeyId"]
        if self.config.get("cacheControl"):
            params["CacheControl"] = self.config["cacheControl"]
        if self.config.get("metadata"):
            params["Metadata"] = dict(self.config["metadata"])
        if self.config.get("tags"):
            params["Tagging"] = urlencode(self.config["tags"])
        return params

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        options = self._options(ctx)
        bucket = self.config["bucket"]
        key = self.resolve_key(ctx)
        fmt = self.config.get("format", "json")

        body = serialize(ctx.input, fmt)
        if self.config.get("compression") == "gzip":
            body = gzip.compress(body)
        content_type = self.config.get("contentType") or FORMATS[fmt]
        params = self._put_params(bucket, key, content_type)

        part_size = int(self.config.get("partSize") or settings.OBJECT_STORAGE_PART_SIZE)
        queue_size = int(self.config.get("queueSize") or settings.OBJECT_STORAGE_QUEUE_SIZE)
        meta = {"bucket": bucket, "key": key, "format": fmt}

        client = _s3_client(options)
        try:
            if len(body) > part_size:
                upload = await self._multipart_upload(client, params, body, part_size, queue_size)
            else:
                upload = await asyncio.to_thread(client.put_object, Body=body, **params)
                upload["Parts"] = 1
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Object storage node {self.node_id}: upload to s3://{bucket}/{key} failed: {e}")
            return NodeResult.fail(f"Upload failed: {e}", details={"exception": type(e).__name__}, **meta)

        pruned = 0
        if self.config.get("maxVersions"):
            pruned = await self._prune_versions(client, bucket, key, int(self.config["maxVersions"]))

        data = {
            "bucket": bucket,
            "key": key,
            "location": f"s3://{bucket}/{key}",
            "url": _object_url(options, bucket, key),
            "etag": (upload.get("ETag") or "").strip('"') or None,
            "versionId": upload.get("VersionId"),
            "size": len(body),
            "contentType": content_type,
            "multipart": upload["Parts"] > 1,
        }
        logger.info(f"Uploaded {len(body)} bytes to s3://{bucket}/{key}")
        return NodeResult.ok(data, size=len(body), parts=upload["Parts"], prunedVersions=pruned, **meta)

    async def _multipart_upload(
        self,
        client,
        params: Dict[str, Any],
        body: bytes,
        part_size: int,
        queue_size: int,
    ) -> Dict[str, Any]:
        created = await asyncio.to_thread(client.create_multipart_upload, **params)
        upload_id = created["UploadId"]
        bucket, key = params["Bucket"], params["Key"]
        chunks = [body[i:i + part_size] for i in range(0, len(body), part_size)]
        semaphore = asyncio.Semaphore(queue_size)

        async def _upload_part(number: int, chunk: bytes) -> Dict[str, Any]:
            async with semaphore:
                part = await asyncio.to_thread(
                    client.upload_part,
                    Bucket=bucket,
                    Key=key,
                    UploadId=upload_id,
                    PartNumber=number,
                    Body=chunk,
                )
                return {"PartNumber": number, "ETag": part["ETag"]}

        try:
            parts = await asyncio.gather(*[_upload_part(i + 1, c) for i, c in enumerate(chunks)])
            completed = await asyncio.to_thread(
                client.complete_multipart_upload,
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": sorted(parts, key=lambda p: p["PartNumber"])},
            )
        except BaseException:
            logger.warning(f"Aborting multipart upload {upload_id} for s3://{bucket}/{key}")
            await asyncio.to_thread(client.abort_multipart_upload, Bucket=bucket, Key=key, UploadId=upload_id)
            raise

        completed["Parts"] = len(chunks)
        return completed

    async def _prune_versions(self, client, bucket: str, key: str, keep: int) -> int:
        """Delete versions of ``key`` beyond the newest ``keep``; failures only warn."""
        try:
            listing = await asyncio.to_thread(client.list_object_versions, Bucket=bucket, Prefix=key)
            versions = [v for v in listing.get("Versions", []) if v.get("Key") == key]
            versions.sort(key=lambda v: v["LastModified"], reverse=True)
            stale = versions[keep:]
            for version in stale:
                await asyncio.to_thread(
                    client.delete_object, Bucket=bucket, Key=key, VersionId=version["VersionId"],
                )
            if stale:
                logger.info(f"Pruned {len(stale)} old version(s) of s3://{bucket}/{key}")
            return len(stale)
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Version pruning for s3://{bucket}/{key} failed: {e}")
            return 0


def _object_url(options: Dict[str, Any], bucket: str, key: str) -> str:
    endpoint: Optional[str] = options.get("endpoint")
    if endpoint:
        return f"{endpoint.rstrip('/')}/{bucket}/{key}"
    return f"https://{bucket}.s3.{options.get('region') or 'us-east-1'}.amazonaws.com/{key}"


def decode_object(body: bytes, key: str, content_type: str, parse_as: str = "auto") -> Tuple[Any, str]:
    """Decode a downloaded object; returns ``(data, format)``."""
    content_type = (content_type or "").split(";")[0].strip().lower()
    extension = key.rsplit(".", 1)[-1].lower() if "." in key else ""
    if parse_as == "auto":
        if content_type == "application/json" or extension in ("json", "geojson"):
            parse_as = "json"
        elif content_type == "text/csv" or extension == "csv":
            parse_as = "csv"
        elif content_type.startswith("text/") or content_type.endswith("xml") or extension in ("txt", "xml", "log"):
            parse_as = "text"
        else:
            parse_as = "binary"

    if parse_as == "binary":
        return base64.b64encode(body).decode("ascii"), "binary"
    text = body.decode("utf-8")
    if parse_as == "json":
        return json.loads(text.lstrip("\ufeff")), "json"
    if parse_as == "csv":
        return parse_csv(text), "csv"
    return text, "text"


@register_node_type(
    node_type="object-storage",
    display_name="Object Storage Read",
    description="Download or list objects in S3-compatible object storage",
    category=CATEGORY_DATA,
    config_schema={
        "type": "object",
        "properties": {
            "operation": {"type": "string", "enum": ["get", "list"]},
            "bucket": {"type": "string", "minLength": 3},
            "key": {"type": "string", "minLength": 1},
            "versionId": {"type": "string"},
            "parseAs": {"type": "string", "enum": ["auto", "json", "csv", "text", "binary"]},
            "prefix": {"type": "string"},
            "delimiter": {"type": "string"},
            "maxKeys": {"type": "integer", "minimum": 1, "maximum": 1000},
            "region": {"type": "string"},
            "endpoint": {"type": "string"},
            "accessKeyId": {"type": "string"},
            "secretAccessKey": {"type": "string"},
            "retryCount": {"type": "integer", "minimum": 0, "maximum": 10},
            "retryDelay": {"type": "integer", "minimum": 0},
            "errorHandling": {"type": "string", "enum": ["fail", "continue", "retry"]},
        },
        "required": ["operation", "bucket"],
        "if": {"properties": {"operation": {"const": "get"}}},
        "then": {"required": ["key"]},
    },
    metadata=ExecutorMetadata(
        is_async=True,
        requires_auth=True,
        default_data={
            "operation": "get",
            "parseAs": "auto",
            "prefix": "",
            "delimiter": "/",
            "maxKeys": 1000,
        },
    ),
    icon="cloud-download",
    color="#FB923C",
)
class ObjectStorageReadNode(ObjectStorageNode):
    """``get`` outputs the decoded object; ``list`` outputs one page of keys."""

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        operation = self.config.get("operation", "get")
        bucket = self.config["bucket"]
        client = _s3_client(self._options(ctx))
        meta: Dict[str, Any] = {"bucket": bucket, "operation": operation}
        try:
            if operation == "list":
                return await self._list(ctx, client, bucket, meta)
            return await self._get(ctx, client, bucket, meta)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            logger.error(f"Object storage read {self.node_id}: {operation} on s3://{bucket} failed: {e}")
            error_type = "not_found" if code in ("NoSuchKey", "NoSuchBucket", "404") else "execution"
            return NodeResult.fail(
                f"{operation} failed: {e}",
                details={"exception": type(e).__name__, "code": code},
                error_type=error_type,
                **meta,
            )
        except BotoCoreError as e:
            logger.error(f"Object storage read {self.node_id}: {operation} on s3://{bucket} failed: {e}")
            return NodeResult.fail(f"{operation} failed: {e}", details={"exception": type(e).__name__}, **meta)

    async def _get(self, ctx, client, bucket, meta) -> NodeResult:
        key = self.resolve_key(ctx)
        params = {"Bucket": bucket, "Key": key}
        if self.config.get("versionId"):
            params["VersionId"] = self.config["versionId"]

        def _download():
            response = client.get_object(**params)
            return response, response["Body"].read()

        response, body = await asyncio.to_thread(_download)
        if response.get("ContentEncoding") == "gzip":
            body = gzip.decompress(body)
        content_type = response.get("ContentType", "")
        try:
            data, fmt = decode_object(body, key, content_type, self.config.get("parseAs", "auto"))
        except (UnicodeDecodeError, ValueError) as e:
            return NodeResult.fail(f"Could not decode s3://{bucket}/{key}: {e}", error_type="parse", key=key, **meta)

        last_modified = response.get("LastModified")
        logger.info(f"Downloaded {len(body)} bytes from s3://{bucket}/{key}")
        return NodeResult.ok(
            data,
            key=key,
            format=fmt,
            size=len(body),
            contentType=content_type,
            etag=(response.get("ETag") or "").strip('"') or None,
            versionId=response.get("VersionId"),
            lastModified=last_modified.isoformat() if last_modified else None,
            objectMetadata=response.get("Metadata") or {},
            **meta,
        )

    async def _list(self, ctx, client, bucket, meta) -> NodeResult:
        context = template_context(ctx.input, {**key_variables(), **ctx.identifiers()})
        params: Dict[str, Any] = {
            "Bucket": bucket,
            "Prefix": resolve(self.config.get("prefix") or "", context).lstrip("/"),
            "MaxKeys": int(self.config.get("maxKeys") or 1000),
        }
        if self.config.get("delimiter"):
            params["Delimiter"] = self.config["delimiter"]

        listing = await asyncio.to_thread(client.list_objects_v2, **params)
        objects = [
            {
                "key": item["Key"],
                "size": item.get("Size", 0),
                "lastModified": item["LastModified"].isoformat() if item.get("LastModified") else None,
                "etag": (item.get("ETag") or "").strip('"') or None,
                "storageClass": item.get("StorageClass"),
            }
            for item in listing.get("Contents", [])
        ]
        data = {
            "objects": objects,
            "commonPrefixes": [p["Prefix"] for p in listing.get("CommonPrefixes", [])],
            "isTruncated": bool(listing.get("IsTruncated")),
            "keyCount": listing.get("KeyCount", len(objects)),
        }
        return NodeResult.ok(data, prefix=params["Prefix"], keyCount=data["keyCount"], **meta)
