"""Source driver reading migrations from an S3 bucket."""

from __future__ import annotations

import errno
import hashlib
import hmac
import os
import posixpath
import urllib.request
import xml.etree.ElementTree as ElementTree
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import BinaryIO, Iterable, Protocol
from urllib.parse import quote, urlsplit

from schemashift.source.driver import Driver, list_drivers, register
from schemashift.source.migrations import Migration, Migrations, ParseError, parse

__all__ = [
    "Config",
    "S3Client",
    "HttpS3Client",
    "S3Source",
    "parse_uri",
    "with_instance",
]

_EMPTY_SHA256 = hashlib.sha256(b"").hexdigest()


@dataclass
class Config:
    """Bucket and key prefix under which migrations live."""

    bucket: str = ""
    prefix: str = ""


class S3Client(Protocol):
    """The two object-store calls the S3 source needs."""

    def list_objects(self, bucket: str, prefix: str, delimiter: str) -> Iterable[str]:
        """Return the keys directly under ``prefix``."""

    def get_object(self, bucket: str, key: str) -> BinaryIO:
        """Return a readable stream of the object's content."""


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode(), hashlib.sha256).digest()


class HttpS3Client:
    """Minimal S3 client over HTTPS, signing requests when keys are given."""

    def __init__(
        self,
        region: str = "us-east-1",
        access_key: str | None = None,
        secret_key: str | None = None,
        session_token: str | None = None,
        endpoint: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.region = region
        self.access_key = access_key
        self.secret_key = secret_key
        self.session_token = session_token
        self.endpoint = endpoint
        self.timeout = timeout

    @classmethod
    def from_environment(cls) -> HttpS3Client:
        """Build a client from the usual AWS environment variables."""
        env = os.environ
        return cls(
            region=env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION") or "us-east-1",
            access_key=env.get("AWS_ACCESS_KEY_ID"),
            secret_key=env.get("AWS_SECRET_ACCESS_KEY"),
            session_token=env.get("AWS_SESSION_TOKEN"),
        )

    def list_objects(self, bucket: str, prefix: str, delimiter: str) -> list[str]:
        query = {"prefix": prefix}
        if delimiter:
            query["delimiter"] = delimiter
        with self._get(bucket, "", query) as response:
            document = ElementTree.fromstring(response.read())
        return [
            key.text or ""
            for key in document.iterfind("{*}Contents/{*}Key")
        ]

    def get_object(self, bucket: str, key: str) -> BinaryIO:
        return self._get(bucket, key, {})

    def _get(self, bucket: str, key: str, query: dict[str, str]):
        if self.endpoint:
            base = urlsplit(self.endpoint)
            scheme, host = base.scheme or "https", base.netloc
            path = f"{base.path.rstrip('/')}/{bucket}/{key}"
        else:
            scheme, host = "https", f"{bucket}.s3.{self.region}.amazonaws.com"
            path = f"/{key}"
        canonical_uri = quote(path, safe="/-_.~")
        canonical_query = "&".join(
            f"{quote(k, safe='-_.~')}={quote(v, safe='-_.~')}"
            for k, v in sorted(query.items())
        )
        now = datetime.now(timezone.utc)
        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        headers = {
            "host": host,
            "x-amz-content-sha256": _EMPTY_SHA256,
            "x-amz-date": amz_date,
        }
        if self.session_token:
            headers["x-amz-security-token"] = self.session_token
        if self.access_key and self.secret_key:
            headers["authorization"] = self._authorization(
                headers, canonical_uri, canonical_query, amz_date
            )
        url = f"{scheme}://{host}{canonical_uri}"
        if canonical_query:
            url += "?" + canonical_query
        request = urllib.request.Request(url, headers=headers, method="GET")
        return urllib.request.urlopen(request, timeout=self.timeout)

    def _authorization(
        self,
        headers: dict[str, str],
        canonical_uri: str,
        canonical_query: str,
        amz_date: str,
    ) -> str:
        names = sorted(headers)
        signed_headers = ";".join(names)
        canonical_headers = "".join(f"{n}:{headers[n].strip()}\n" for n in names)
        canonical_request = "\n".join(
            ["GET", canonical_uri, canonical_query, canonical_headers,
             signed_headers, _EMPTY_SHA256]
        )
        date = amz_date[:8]
        scope = f"{date}/{self.region}/s3/aws4_request"
        string_to_sign = "\n".join(
            ["AWS4-HMAC-SHA256", amz_date, scope,
             hashlib.sha256(canonical_request.encode()).hexdigest()]
        )
        signing_key = ("AWS4" + (self.secret_key or "")).encode()
        for part in (date, self.region, "s3", "aws4_request"):
            signing_key = _hmac(signing_key, part)
        signature = hmac.new(
            signing_key, string_to_sign.encode(), hashlib.sha256
        ).hexdigest()
        return (
            f"AWS4-HMAC-SHA256 Credential={self.access_key}/{scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )


def parse_uri(uri: str) -> Config:
    """Turn ``s3://bucket/prefix`` into a Config."""
    parts = urlsplit(uri)
    prefix = parts.path.strip("/")
    if prefix:
        prefix += "/"
    return Config(bucket=parts.netloc.rpartition("@")[2], prefix=prefix)


def _not_found(op: str) -> FileNotFoundError:
    return FileNotFoundError(errno.ENOENT, op)


class S3Source(Driver):
    """Reads migrations stored as objects under a bucket prefix."""

    def __init__(self, client: S3Client | None = None, config: Config | None = None) -> None:
        self.client = client
        self.config = config if config is not None else Config()
        self.migrations = Migrations()

    def open(self, url: str) -> S3Source:
        return with_instance(HttpS3Client.from_environment(), parse_uri(url))

    def close(self) -> None:
        return None

    def first(self) -> int:
        version = self.migrations.first()
        if version is None:
            raise _not_found("first")
        return version

    def prev(self, version: int) -> int:
        found = self.migrations.prev(version)
        if found is None:
            raise _not_found(f"prev for version {version}")
        return found

    def next(self, version: int) -> int:
        found = self.migrations.next(version)
        if found is None:
            raise _not_found(f"next for version {version}")
        return found

    def read_up(self, version: int) -> tuple[BinaryIO, str]:
        m = self.migrations.up(version)
        if m is None:
            raise _not_found(f"read up for version {version}")
        return self._open(m)

    def read_down(self, version: int) -> tuple[BinaryIO, str]:
        m = self.migrations.down(version)
        if m is None:
            raise _not_found(f"read down for version {version}")
        return self._open(m)

    def _load_migrations(self) -> None:
        if self.client is None:
            raise ValueError("S3 source has no client")
        for key in self.client.list_objects(self.config.bucket, self.config.prefix, "/"):
            file_name = key.rpartition("/")[2]
            try:
                m = parse(file_name)
            except ParseError:
                continue
            if not self.migrations.append(m):
                raise ValueError(f"unable to parse file {key}")

    def _open(self, m: Migration) -> tuple[BinaryIO, str]:
        if self.client is None:
            raise ValueError("S3 source has no client")
        key = posixpath.join(self.config.prefix, m.raw)
        return self.client.get_object(self.config.bucket, key), m.identifier


def with_instance(client: S3Client, config: Config) -> S3Source:
    """Return a source listing migrations through ``client``."""
    driver = S3Source(client=client, config=config)
    driver._load_migrations()
    return driver


if "s3" not in list_drivers():
    register("s3", S3Source())