"""
Asset storage for pipeline artifacts.

  KieAssetPublisher — Kie.ai file-stream upload (default)
  R2AssetPublisher  — Cloudflare R2 through the S3 API

Artifacts are stored under:
  pipeline/{job_id}/{name}
"""

import asyncio
import logging

import boto3
import httpx
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..config import Settings
from ..kie import KieClient
from .errors import TransientExternalError

logger = logging.getLogger(__name__)


def artifact_key(job_id: str, name: str) -> str:
    return f"pipeline/{job_id}/{name}"


def content_type_for(name: str) -> str:
    lower = name.lower()
    if lower.endswith(".png"):
        return "image/png"
    if lower.endswith(".webp"):
        return "image/webp"
    if lower.endswith(".mp4"):
        return "video/mp4"
    return "image/jpeg"


async def download_image_bytes(http: httpx.AsyncClient, url: str) -> bytes:
    """Download an image from a public URL and return raw bytes."""
    try:
        resp = await http.get(url, follow_redirects=True, timeout=30)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        raise TransientExternalError(f"Could not download {url}: {e}") from e
    return resp.content


class AssetPublisher:
    async def publish(self, data: bytes, name: str) -> str:
        raise NotImplementedError


class KieAssetPublisher(AssetPublisher):

    def __init__(self, kie: KieClient):
        self._kie = kie

    async def publish(self, data: bytes, name: str) -> str:
        url = await self._kie.upload_file(data, name.replace("/", "-"), content_type_for(name))
        logger.info(f"Uploaded to Kie.ai: {url}")
        return url


class R2AssetPublisher(AssetPublisher):

    def __init__(self, settings: Settings, s3_client=None):
        self._bucket = settings.r2_bucket_name
        self._public_url = settings.r2_public_url.rstrip("/")
        self._s3 = s3_client or boto3.client(
            "s3",
            endpoint_url=f"https://{settings.r2_account_id}.r2.cloudflarestorage.com",
            aws_access_key_id=settings.r2_access_key_id,
            aws_secret_access_key=settings.r2_secret_access_key,
            config=BotoConfig(signature_version="s3v4"),
            region_name="auto",
        )

    async def publish(self, data: bytes, name: str) -> str:
        try:
            await asyncio.to_thread(
                self._s3.put_object,
                Bucket=self._bucket,
                Key=name,
                Body=data,
                ContentType=content_type_for(name),
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"R2 upload failed for key={name}: {e}")
            raise TransientExternalError(f"R2 upload failed for {name}: {e}") from e

        public_url = f"{self._public_url}/{name}"
        logger.info(f"Uploaded to R2: {public_url}")
        return public_url


def build_publisher(settings: Settings, kie: KieClient) -> AssetPublisher:
    if settings.asset_backend == "r2":
        return R2AssetPublisher(settings)
    if settings.asset_backend != "kie":
        raise ValueError(f"Unknown ASSET_BACKEND: {settings.asset_backend!r}")
    return KieAssetPublisher(kie)
