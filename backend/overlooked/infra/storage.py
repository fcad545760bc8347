"""S3-compatible object store backed by boto3."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from overlooked.infra.backend import ObjectStore, UploadSession
from overlooked.infra.errors import BackendFailure, Conflict, InvalidRequest, NotFound
from overlooked.settings import settings

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NoSuchUpload", "NotFound"}


def _translate(exc: Exception, *, action: str) -> Exception:
	if isinstance(exc, ClientError):
		code = str(exc.response.get("Error", {}).get("Code", ""))
		if code in _MISSING_CODES:
			return NotFound("object_not_found", detail=f"{action}:{code}")
		return BackendFailure("storage_error", detail=f"{action}:{code}")
	return BackendFailure("storage_unavailable", detail=f"{action}:{exc}")


class S3ObjectStore(ObjectStore):
	"""Buckets map 1:1 to S3 buckets; blocking boto3 calls run in worker threads."""

	def __init__(self, client: Any = None, *, public_base_url: Optional[str] = None, upload_ttl_seconds: Optional[int] = None) -> None:
		self._client = client or boto3.client(
			"s3",
			endpoint_url=settings.s3_endpoint_url,
			region_name=settings.s3_region,
			aws_access_key_id=settings.s3_access_key_id,
			aws_secret_access_key=settings.s3_secret_access_key,
		)
		self._public_base_url = (public_base_url or settings.storage_public_base_url).rstrip("/")
		self._upload_ttl_seconds = upload_ttl_seconds or settings.upload_session_ttl_seconds

	async def _call(self, action: str, **kwargs: Any) -> Any:
		method = getattr(self._client, action)
		try:
			return await asyncio.to_thread(method, **kwargs)
		except (ClientError, BotoCoreError) as exc:
			raise _translate(exc, action=action) from exc

	async def upload(
		self,
		bucket: str,
		path: str,
		data: bytes,
		*,
		content_type: str = "application/octet-stream",
		upsert: bool = False,
	) -> str:
		if not upsert:
			try:
				await self._call("head_object", Bucket=bucket, Key=path)
			except NotFound:
				pass
			else:
				raise Conflict("object_exists", detail=f"{bucket}/{path}")
		await self._call("put_object", Bucket=bucket, Key=path, Body=data, ContentType=content_type)
		return path

	def public_url(self, bucket: str, path: str) -> str:
		return f"{self._public_base_url}/{bucket}/{path}"

	async def signed_url(self, bucket: str, path: str, expires_in: int) -> str:
		return await self._call(
			"generate_presigned_url",
			ClientMethod="get_object",
			Params={"Bucket": bucket, "Key": path},
			ExpiresIn=int(expires_in),
		)

	async def remove(self, bucket: str, paths: Sequence[str]) -> None:
		if not paths:
			return
		response = await self._call(
			"delete_objects",
			Bucket=bucket,
			Delete={"Objects": [{"Key": path} for path in paths], "Quiet": True},
		)
		errors = (response or {}).get("Errors") or []
		if errors:
			logger.warning("storage removal partially failed", extra={"bucket": bucket, "failed": len(errors)})
			raise BackendFailure("storage_remove_failed", detail=f"{bucket}:{len(errors)}")

	async def create_upload_session(
		self, bucket: str, path: str, *, content_type: str = "application/octet-stream"
	) -> UploadSession:
		response = await self._call("create_multipart_upload", Bucket=bucket, Key=path, ContentType=content_type)
		return UploadSession(
			upload_id=str(response["UploadId"]),
			bucket=bucket,
			path=path,
			expires_at=datetime.now(timezone.utc) + timedelta(seconds=self._upload_ttl_seconds),
			content_type=content_type,
		)

	async def upload_part(self, session: UploadSession, part_number: int, data: bytes) -> None:
		if part_number < 1:
			raise InvalidRequest("invalid_part_number")
		response = await self._call(
			"upload_part",
			Bucket=session.bucket,
			Key=session.path,
			UploadId=session.upload_id,
			PartNumber=part_number,
			Body=data,
		)
		session.parts.append({"PartNumber": part_number, "ETag": response["ETag"]})

	async def complete_upload(self, session: UploadSession) -> str:
		if not session.parts:
			raise InvalidRequest("upload_has_no_parts")
		parts = sorted(session.parts, key=lambda part: part["PartNumber"])
		await self._call(
			"complete_multipart_upload",
			Bucket=session.bucket,
			Key=session.path,
			UploadId=session.upload_id,
			MultipartUpload={"Parts": parts},
		)
		return session.path
