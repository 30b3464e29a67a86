"""
Anonymous S3 bucket inspection over the bucket's HTTP listing endpoint.
Lists keys with ListObjectsV2, walking "folders" through CommonPrefixes, and
downloads objects to a local directory preserving the key path.
"""

from __future__ import annotations

import asyncio
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncGenerator, Optional
from urllib.parse import quote

import httpx

from ..config import (
    MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    BACKOFF_MULTIPLIER,
    MAX_PAGES_PER_ENDPOINT,
)

logger = logging.getLogger("m365_admin_toolkit.s3")

DEFAULT_REGION = "us-east-1"
DOWNLOAD_CHUNK_SIZE = 1024 * 1024


class S3Error(Exception):
    """Raised when the bucket endpoint returns an error document."""
    def __init__(self, status_code: int, code: str, message: str, url: str):
        self.status_code = status_code
        self.code = code
        self.url = url
        super().__init__(f"S3 {code or status_code} for {url}: {message}")


@dataclass
class S3Object:
    key: str
    size: int = 0
    last_modified: str = ""
    etag: str = ""
    storage_class: str = ""

    @property
    def is_folder_marker(self) -> bool:
        return self.key.endswith("/")

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "size": self.size,
            "last_modified": self.last_modified,
            "etag": self.etag,
            "storage_class": self.storage_class,
        }


@dataclass
class ListingPage:
    objects: list[S3Object] = field(default_factory=list)
    folders: list[str] = field(default_factory=list)
    next_token: Optional[str] = None


@dataclass
class DownloadSummary:
    downloaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)
    bytes_written: int = 0


def _text(elem: ET.Element, tag: str) -> str:
    found = elem.find(f"{{*}}{tag}")
    return (found.text or "") if found is not None else ""


def parse_listing(xml_text: str) -> ListingPage:
    """Parse a ListObjectsV2 response document."""
    root = ET.fromstring(xml_text)
    page = ListingPage()
    for item in root.findall("{*}Contents"):
        size = _text(item, "Size")
        page.objects.append(S3Object(
            key=_text(item, "Key"),
            size=int(size) if size.isdigit() else 0,
            last_modified=_text(item, "LastModified"),
            etag=_text(item, "ETag").strip('"'),
            storage_class=_text(item, "StorageClass"),
        ))
    for cp in root.findall("{*}CommonPrefixes"):
        prefix = _text(cp, "Prefix")
        if prefix:
            page.folders.append(prefix)
    if _text(root, "IsTruncated").lower() == "true":
        page.next_token = _text(root, "NextContinuationToken") or None
    return page


def _parse_error(response: httpx.Response) -> tuple[str, str]:
    try:
        root = ET.fromstring(response.text)
    except ET.ParseError:
        return "", response.text[:200]
    return _text(root, "Code"), _text(root, "Message")


def local_path_for(dest: Path, key: str, prefix: str = "") -> Path:
    """
    Map an object key to a path under dest. Keys that would land outside
    dest raise ValueError.
    """
    relative = key[len(prefix):] if prefix and key.startswith(prefix) else key
    relative = relative.lstrip("/")
    root = dest.resolve()
    target = (root / relative).resolve()
    if target == root or root not in target.parents:
        raise ValueError(f"Key escapes destination directory: {key}")
    return target


class S3BucketClient:
    """
    Async client for an anonymously readable bucket.
    Usage:
        async with S3BucketClient("my-bucket", region="eu-west-1") as bucket:
            async for obj in bucket.walk("reports/"):
                ...
    """

    def __init__(
        self,
        bucket: str,
        region: str = DEFAULT_REGION,
        endpoint: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bucket = bucket
        self.region = region
        if endpoint:
            # Path-style addressing for custom endpoints
            self.base_url = f"{endpoint.rstrip('/')}/{bucket}"
        else:
            self.base_url = f"https://{bucket}.s3.{region}.amazonaws.com"
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._request_count = 0

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, connect=30.0),
            transport=self._transport,
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()

    def object_url(self, key: str) -> str:
        return f"{self.base_url}/{quote(key, safe='/')}"

    async def list_page(
        self,
        prefix: str = "",
        delimiter: Optional[str] = "/",
        continuation_token: Optional[str] = None,
    ) -> ListingPage:
        params = {"list-type": "2"}
        if prefix:
            params["prefix"] = prefix
        if delimiter:
            params["delimiter"] = delimiter
        if continuation_token:
            params["continuation-token"] = continuation_token
        response = await self._get_with_retry(f"{self.base_url}/", params)
        return parse_listing(response.text)

    async def list_folder(self, prefix: str = "") -> ListingPage:
        """All objects and immediate sub-folders under one prefix."""
        merged = ListingPage()
        token = None
        pages = 0
        while pages < MAX_PAGES_PER_ENDPOINT:
            page = await self.list_page(prefix, "/", token)
            merged.objects.extend(page.objects)
            merged.folders.extend(page.folders)
            pages += 1
            token = page.next_token
            if not token:
                break
        return merged

    async def walk(self, prefix: str = "", recursive: bool = True) -> AsyncGenerator[S3Object, None]:
        """
        Yield every object under prefix, folder by folder, depth first in
        key order. With recursive=False only the top folder is listed.
        """
        pending = [prefix]
        visited: set[str] = set()
        while pending:
            folder = pending.pop()
            if folder in visited:
                continue
            visited.add(folder)
            logger.debug(f"Listing s3://{self.bucket}/{folder}")
            page = await self.list_folder(folder)
            for obj in page.objects:
                yield obj
            if recursive:
                pending.extend(sorted(page.folders, reverse=True))

    async def download(
        self,
        prefix: str,
        dest: Path,
        overwrite: bool = False,
        strip_prefix: bool = False,
    ) -> DownloadSummary:
        """
        Download every object under prefix into dest. A failing object is
        logged and recorded; the remaining objects are still attempted.
        """
        summary = DownloadSummary()
        dest.mkdir(parents=True, exist_ok=True)

        async for obj in self.walk(prefix):
            if obj.is_folder_marker:
                continue
            try:
                target = local_path_for(dest, obj.key, prefix if strip_prefix else "")
            except ValueError as e:
                logger.warning(str(e))
                summary.failed.append((obj.key, str(e)))
                continue

            if target.exists() and not overwrite and target.stat().st_size == obj.size:
                summary.skipped.append(obj.key)
                continue

            try:
                summary.bytes_written += await self.download_object(obj.key, target)
                summary.downloaded.append(obj.key)
            except (S3Error, httpx.HTTPError, OSError) as e:
                logger.error(f"Failed to download {obj.key}: {e}")
                summary.failed.append((obj.key, str(e)))

        return summary

    async def download_object(self, key: str, target: Path) -> int:
        """Stream one object to target. Returns bytes written."""
        if not self._client:
            raise RuntimeError("S3BucketClient not initialized. Use 'async with' context.")
        url = self.object_url(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".part")
        written = 0
        try:
            async with self._client.stream("GET", url) as response:
                self._request_count += 1
                if response.status_code != 200:
                    await response.aread()
                    code, message = _parse_error(response)
                    raise S3Error(response.status_code, code, message, url)
                with open(partial, "wb") as fh:
                    async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                        fh.write(chunk)
                        written += len(chunk)
            partial.replace(target)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        logger.info(f"Downloaded {key} ({written} bytes)")
        return written

    async def _get_with_retry(self, url: str, params: dict) -> httpx.Response:
        if not self._client:
            raise RuntimeError("S3BucketClient not initialized. Use 'async with' context.")

        backoff = INITIAL_BACKOFF_SECONDS
        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await self._client.get(url, params=params)
                self._request_count += 1
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                logger.warning(f"{type(e).__name__} on {url}, attempt {attempt + 1}/{MAX_RETRIES}")
                if attempt == MAX_RETRIES:
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                continue

            if response.status_code == 200:
                return response

            if response.status_code in (500, 503) and attempt < MAX_RETRIES:
                logger.warning(
                    f"S3 returned {response.status_code} on {url}. "
                    f"Retry {attempt + 1}/{MAX_RETRIES} in {backoff:.1f}s"
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                continue

            code, message = _parse_error(response)
            raise S3Error(response.status_code, code, message, url)

        raise S3Error(503, "SlowDown", f"Max retries ({MAX_RETRIES}) exceeded", url)
