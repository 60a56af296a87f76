#!/usr/bin/env python3

"""
obvious3 - Async object listing and filtering with chainable NDJSON output

Lists object metadata from a local filesystem or a remote store, filters it by
path, basename, size and modification time, and writes the survivors to stdout
as one JSON object per line. The first line of every stream is a preamble that
names the listing root, so the output of one invocation can be piped straight
into another one without touching the backend again.

Usage:
    ./obvious3.py [--concurrency N] [--verbose] [--progress] find -r <root> [FILTERS]
    ./obvious3.py find [FILTERS] < listing.ndjson

Supported roots:
- Local paths and file:// URLs
- s3://bucket/prefix (boto3 ListObjectsV2, AWS credential chain, honours AWS_ENDPOINT_URL)
- qumulo://host[:port]/path (REST API, bearer token from qq credentials)
- memory:// (always empty, handy for dry runs)

Pipeline properties:
- Bounded concurrency for every per-record filter evaluation
- Single writer task behind a bounded queue, so lines never interleave
- A consumer closing the pipe (e.g. `| head`) ends the run with exit code 0
- Output order is not guaranteed to match the listing order
"""

import argparse
import asyncio
import os
import re
import ssl
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import IO, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, quote, unquote, urlparse

import aiohttp
import boto3
from botocore import UNSIGNED
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

# Try to use ujson for faster parsing
try:
    import ujson as json_parser

    JSON_PARSER_NAME = "ujson"
except ImportError:
    import json as json_parser

    JSON_PARSER_NAME = "json"


DEFAULT_CONCURRENCY = 128
OUTPUT_QUEUE_SIZE = 100

PREAMBLE_TAG_FIELD = "file_type"
PREAMBLE_V0 = "Obvious3_0"

QUMULO_DEFAULT_PORT = 8000
QUMULO_CREDENTIALS_FILE = Path.home() / ".qfsd_cred"
QUMULO_PAGE_LIMIT = 1000


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class Obvious3Error(Exception):
    """Base class for every error this tool reports to the user."""


class InvalidRoot(Obvious3Error):
    """The root is neither a supported URL nor an existing local path."""


class MissingOrMalformedHeader(Obvious3Error):
    """Chained input did not start with a valid preamble line."""


class InvalidPattern(Obvious3Error):
    """A --path-match or --basename-match regex failed to compile."""


class SourceError(Obvious3Error):
    """The backend listing failed part way through."""


class DecodeError(Obvious3Error):
    """An upstream record line could not be decoded."""

    def __init__(self, line_number: int, reason: str):
        super().__init__(f"Invalid record on input line {line_number}: {reason}")
        self.line_number = line_number


class BrokenOutput(Obvious3Error):
    """stdout was closed by the consumer. Not a failure."""


# ---------------------------------------------------------------------------
# JSON and timestamp helpers
# ---------------------------------------------------------------------------


def dumps_line(obj) -> str:
    """Serialize obj as compact single-line JSON (no trailing newline)."""
    if JSON_PARSER_NAME == "ujson":
        return json_parser.dumps(obj, ensure_ascii=False, escape_forward_slashes=False)
    return json_parser.dumps(obj, ensure_ascii=False, separators=(",", ":"))


_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_timestamp(value: str) -> datetime:
    """
    Parse an RFC3339 timestamp into an aware UTC datetime.

    Accepts a trailing 'Z' and any number of fractional digits (anything past
    microseconds is truncated, Qumulo reports nanoseconds). Timestamps without
    an offset are rejected.

    Raises:
        ValueError: if the value is not a valid RFC3339 timestamp
    """
    if not isinstance(value, str):
        raise ValueError(f"Expected timestamp string, got {type(value).__name__}")

    text = value.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(
        lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1
    )

    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError(f"Timestamp has no UTC offset: {value}")
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format an aware datetime as RFC3339 in UTC with a 'Z' suffix."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_size_to_bytes(size_str: str) -> int:
    """Parse size string (e.g., '100MB', '1.5GiB') to bytes."""
    match = re.match(r"^([0-9]+\.?[0-9]*)([A-Za-z]*)$", size_str.strip())
    if not match:
        raise ValueError(f"Invalid size format: {size_str}")

    size_num = float(match.group(1))
    size_unit = match.group(2).lower()

    multipliers = {
        "": 1,
        "b": 1,
        "kb": 1000,
        "mb": 1000000,
        "gb": 1000000000,
        "tb": 1000000000000,
        "pb": 1000000000000000,
        "kib": 1024,
        "mib": 1048576,
        "gib": 1073741824,
        "tib": 1099511627776,
        "pib": 1125899906842624,
    }

    if size_unit not in multipliers:
        raise ValueError(f"Unknown size unit: {size_unit}")

    if not size_unit and "." not in match.group(1):
        return int(match.group(1))
    return int(size_num * multipliers[size_unit])


def format_time(seconds: float) -> str:
    """
    Format elapsed time in human-friendly format with total seconds.

    Examples:
        5.2s (5.2s)
        72.3s -> 1m 12s (72.3s)
        3665.7s -> 1h 1m 5s (3665.7s)
    """
    total_seconds = seconds

    if seconds < 60:
        return f"{seconds:.1f}s"

    hours = int(seconds // 3600)
    seconds = seconds % 3600
    minutes = int(seconds // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    friendly = " ".join(parts)
    return f"{friendly} ({total_seconds:.1f}s)"


# ---------------------------------------------------------------------------
# Preamble (stream header)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Preamble:
    """
    Header line for each object listing.

    Names the store the records refer to, so a chained invocation can carry
    it forward without resolving the root again. Only protocol version 0
    (tag "Obvious3_0") exists.
    """

    root: str
    file_type: str = PREAMBLE_V0

    def to_json(self) -> str:
        return dumps_line({PREAMBLE_TAG_FIELD: self.file_type, "root": self.root})

    @classmethod
    def from_json(cls, line: str) -> "Preamble":
        """
        Decode a preamble line.

        Raises:
            MissingOrMalformedHeader: on invalid JSON, an unknown tag or a bad root
        """
        hint = "Reading first JSON line as a preamble. (Remember to include one)"
        try:
            data = json_parser.loads(line)
        except ValueError as e:
            raise MissingOrMalformedHeader(f"{hint}: {e}") from e

        if not isinstance(data, dict):
            raise MissingOrMalformedHeader(f"{hint}: expected a JSON object")

        tag = data.get(PREAMBLE_TAG_FIELD)
        if tag != PREAMBLE_V0:
            raise MissingOrMalformedHeader(
                f"{hint}: unrecognized {PREAMBLE_TAG_FIELD} {tag!r}"
            )

        root = data.get("root")
        if not isinstance(root, str) or not is_absolute_url(root):
            raise MissingOrMalformedHeader(f"{hint}: root must be an absolute URL")

        return cls(root=root)


def is_absolute_url(value: str) -> bool:
    # Single-letter schemes are Windows drive letters, not URLs
    return len(urlparse(value).scheme) > 1


def resolve_root_url(root: str) -> str:
    """
    Turn a root argument into an absolute URL.

    URLs are returned unchanged. Anything else is treated as a local path,
    canonicalized and converted to a file:// URL.
    """
    if is_absolute_url(root):
        return root

    if not root:
        raise InvalidRoot("Root must not be empty")

    try:
        path = Path(root).expanduser().resolve(strict=True)
    except (OSError, RuntimeError) as e:
        raise InvalidRoot(f"Cannot resolve root '{root}': {e}") from e

    return path.as_uri()


def resolve_preamble(root: Optional[str], stream: Optional[IO[bytes]] = None) -> Preamble:
    """
    Build a fresh preamble from root, or read one from the first line of stream.

    stream is a binary stream, defaults to stdin and is only read when no root
    is given. The line must be valid UTF-8 whatever the locale says.
    """
    if root is not None:
        return Preamble(root=resolve_root_url(root))

    stream = stream if stream is not None else sys.stdin.buffer
    try:
        line = stream.readline().decode("utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise MissingOrMalformedHeader(f"Failed to read preamble from stdin: {e}") from e

    if not line.strip():
        raise MissingOrMalformedHeader(
            "No preamble on stdin. Pass --root or pipe in the output of another find"
        )

    return Preamble.from_json(line)


# ---------------------------------------------------------------------------
# Record model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ObjectMeta:
    """The metadata that describes an object."""

    location: str
    last_modified: datetime
    size: int
    e_tag: Optional[str] = None
    version: Optional[str] = None

    def __post_init__(self):
        if not self.location:
            raise ValueError("location must not be empty")
        if self.size < 0:
            raise ValueError(f"size must not be negative: {self.size}")
        if self.last_modified.tzinfo is None:
            raise ValueError("last_modified must be timezone aware")
        for name in ("location", "e_tag", "version"):
            value = getattr(self, name)
            if value is None:
                continue
            try:
                value.encode("utf-8")
            except UnicodeEncodeError:
                # Lone surrogates, e.g. an undecodable filename
                raise ValueError(f"{name} is not valid UTF-8: {value!r}") from None

    @property
    def filename(self) -> str:
        """Final path segment of the location, empty if there is none."""
        return self.location.split("/")[-1]

    def to_export(self) -> Dict:
        """Wire form of this record."""
        return {
            "location": self.location,
            "last_modified": format_timestamp(self.last_modified),
            "size": self.size,
            "etag": self.e_tag,
            "version": self.version,
        }

    @classmethod
    def from_export(cls, data: Dict) -> "ObjectMeta":
        """
        Build a record from its wire form.

        Raises:
            ValueError: if a field is missing or has the wrong type
        """
        if not isinstance(data, dict):
            raise ValueError("expected a JSON object")

        missing = [key for key in ("location", "last_modified", "size") if key not in data]
        if missing:
            raise ValueError(f"missing field(s): {', '.join(missing)}")

        location = data["location"]
        if not isinstance(location, str):
            raise ValueError("location must be a string")

        size = data["size"]
        if isinstance(size, bool) or not isinstance(size, int):
            raise ValueError("size must be an unsigned integer")

        # "e_tag" is the field name used by older releases
        e_tag = data.get("etag", data.get("e_tag"))
        version = data.get("version")
        for name, value in (("etag", e_tag), ("version", version)):
            if value is not None and not isinstance(value, str):
                raise ValueError(f"{name} must be a string or null")

        return cls(
            location=location,
            last_modified=parse_timestamp(data["last_modified"]),
            size=size,
            e_tag=e_tag,
            version=version,
        )


def encode_record(meta: ObjectMeta) -> str:
    return dumps_line(meta.to_export())


def decode_record(line: str) -> ObjectMeta:
    """Decode one NDJSON record line. Raises ValueError on bad input."""
    return ObjectMeta.from_export(json_parser.loads(line))


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FindOptions:
    """Everything the find command was invoked with."""

    root: Optional[str] = None
    path_match: Optional[str] = None
    basename_match: Optional[str] = None
    invert: bool = False
    min_size: Optional[int] = None
    max_size: Optional[int] = None
    after_absolute: Optional[datetime] = None
    before_absolute: Optional[datetime] = None
    after: Optional[int] = None
    before: Optional[int] = None
    concurrency: int = DEFAULT_CONCURRENCY
    verbose: bool = False
    progress: bool = False

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "FindOptions":
        return cls(
            root=args.root,
            path_match=args.path_match,
            basename_match=args.basename_match,
            invert=args.invert,
            min_size=args.min_size,
            max_size=args.max_size,
            after_absolute=args.after_absolute,
            before_absolute=args.before_absolute,
            after=args.after,
            before=args.before,
            concurrency=args.concurrency,
            verbose=args.verbose,
            progress=args.progress,
        )


@dataclass(frozen=True)
class FilterConfig:
    """Compiled filter criteria. Shared read-only by every concurrent unit."""

    path_regex: Optional[re.Pattern] = None
    basename_regex: Optional[re.Pattern] = None
    invert: bool = False
    min_size: Optional[int] = None
    max_size: Optional[int] = None
    after_absolute: Optional[datetime] = None
    before_absolute: Optional[datetime] = None
    after: Optional[int] = None
    before: Optional[int] = None

    @classmethod
    def from_options(cls, options: FindOptions) -> "FilterConfig":
        """Compile regexes once. Raises InvalidPattern on a bad regex."""
        return cls(
            path_regex=compile_pattern(options.path_match, "--path-match"),
            basename_regex=compile_pattern(options.basename_match, "--basename-match"),
            invert=options.invert,
            min_size=options.min_size,
            max_size=options.max_size,
            after_absolute=options.after_absolute,
            before_absolute=options.before_absolute,
            after=options.after,
            before=options.before,
        )


def compile_pattern(pattern: Optional[str], option: str) -> Optional[re.Pattern]:
    if pattern is None:
        return None
    try:
        return re.compile(pattern)
    except re.error as e:
        raise InvalidPattern(f"Invalid {option} pattern '{pattern}': {e}") from e


def _matches_all(meta: ObjectMeta, config: FilterConfig) -> bool:
    if config.path_regex is not None and not config.path_regex.search(meta.location):
        return False
    if config.basename_regex is not None and not config.basename_regex.search(
        meta.filename
    ):
        return False

    if config.min_size is not None and meta.size < config.min_size:
        return False
    if config.max_size is not None and meta.size > config.max_size:
        return False

    if config.after_absolute is not None and meta.last_modified < config.after_absolute:
        return False
    if config.before_absolute is not None and meta.last_modified > config.before_absolute:
        return False

    # "now" is sampled per comparison, not pinned for the whole run
    if config.after is not None and meta.last_modified < datetime.now(
        timezone.utc
    ) - timedelta(seconds=config.after):
        return False
    if config.before is not None and meta.last_modified > datetime.now(
        timezone.utc
    ) - timedelta(seconds=config.before):
        return False

    return True


def matches(meta: ObjectMeta, config: FilterConfig) -> bool:
    """True if the record should be written, after applying --not."""
    return _matches_all(meta, config) != config.invert


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class ObjectStore:
    """A backend that can lazily list the objects under a prefix."""

    def list(self, prefix: str) -> AsyncIterator[ObjectMeta]:
        raise NotImplementedError

    async def close(self):
        """Release any connections held by the store."""


class MemoryStore(ObjectStore):
    """In-memory store keyed by location."""

    def __init__(self, objects=()):
        self.objects: Dict[str, ObjectMeta] = {}
        for meta in objects:
            self.put(meta)

    def put(self, meta: ObjectMeta):
        self.objects[meta.location] = meta

    async def list(self, prefix: str) -> AsyncIterator[ObjectMeta]:
        prefix = prefix.strip("/")
        for location, meta in list(self.objects.items()):
            if not prefix or location == prefix or location.startswith(prefix + "/"):
                yield meta

    def __repr__(self):
        return "MemoryStore"


def _meta_from_stat(path: str, st: os.stat_result) -> ObjectMeta:
    mtime_micros = st.st_mtime_ns // 1000
    return ObjectMeta(
        location=path.lstrip("/"),
        last_modified=datetime(1970, 1, 1, tzinfo=timezone.utc)
        + timedelta(microseconds=mtime_micros),
        size=st.st_size,
        e_tag=f"{st.st_ino:x}-{mtime_micros:x}-{st.st_size:x}",
    )


def _scan_directory(path: str) -> Tuple[List[ObjectMeta], List[str]]:
    """List one directory. Runs in a worker thread."""
    files = []
    subdirs = []
    with os.scandir(path) as entries:
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                subdirs.append(entry.path)
            elif entry.is_file():
                try:
                    st = entry.stat()
                except FileNotFoundError:
                    # Deleted between scandir and stat
                    continue
                files.append(_meta_from_stat(entry.path, st))
    return files, subdirs


class LocalFileStore(ObjectStore):
    """
    Lists a local directory tree.

    Locations are absolute paths without the leading '/', e.g. 'tmp/data/a.csv'.
    Directory symlinks are not followed, file symlinks report their target.
    A name that is not valid UTF-8 fails the listing.
    Each directory is scanned in a worker thread so the event loop keeps
    serving the filter units while the disk is busy.
    """

    async def list(self, prefix: str) -> AsyncIterator[ObjectMeta]:
        root = "/" + prefix.strip("/")

        if await asyncio.to_thread(os.path.isfile, root):
            yield _meta_from_stat(root, await asyncio.to_thread(os.stat, root))
            return

        pending = [root]
        while pending:
            directory = pending.pop()
            files, subdirs = await asyncio.to_thread(_scan_directory, directory)
            for meta in files:
                yield meta
            pending.extend(subdirs)

    def __repr__(self):
        return "LocalFileStore"


class S3Store(ObjectStore):
    """
    S3 ListObjectsV2 listing through boto3.

    Credentials come from the usual AWS chain (environment, shared config,
    instance role). With none available the requests go out unsigned, so
    public buckets still list. Each page is fetched in a worker thread.
    """

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        max_pool_connections: int = DEFAULT_CONCURRENCY,
        client=None,
    ):
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.region = region
        self.max_pool_connections = max_pool_connections
        self._client = client

    def create_client(self):
        session = boto3.session.Session(region_name=self.region)
        config = BotoConfig(
            max_pool_connections=self.max_pool_connections,
            retries={"max_attempts": 5, "mode": "standard"},
        )
        if session.get_credentials() is None:
            config = config.merge(BotoConfig(signature_version=UNSIGNED))
        return session.client("s3", endpoint_url=self.endpoint_url, config=config)

    @property
    def client(self):
        if self._client is None:
            self._client = self.create_client()
        return self._client

    @staticmethod
    def object_to_meta(obj: dict) -> ObjectMeta:
        return ObjectMeta(
            location=obj["Key"],
            last_modified=obj["LastModified"].astimezone(timezone.utc),
            size=obj.get("Size", 0),
            e_tag=obj.get("ETag"),
            version=obj.get("VersionId"),
        )

    async def list(self, prefix: str) -> AsyncIterator[ObjectMeta]:
        prefix = prefix.strip("/")
        list_params = {"Bucket": self.bucket}
        if prefix:
            list_params["Prefix"] = prefix + "/"

        while True:
            try:
                response = await asyncio.to_thread(self.client.list_objects_v2, **list_params)
            except (BotoCoreError, ClientError) as e:
                raise SourceError(f"Listing s3://{self.bucket}/{prefix} failed: {e}") from e

            for obj in response.get("Contents", []):
                yield self.object_to_meta(obj)

            token = response.get("NextContinuationToken")
            if not response.get("IsTruncated", False) or not token:
                break
            list_params["ContinuationToken"] = token

    async def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None

    def __repr__(self):
        return f"S3Store(bucket={self.bucket})"


def extract_pagination_token(api_response: dict) -> Optional[str]:
    """Extract the pagination token from Qumulo API response."""
    if "paging" not in api_response:
        return None

    next_url = api_response["paging"].get("next")
    if not next_url:
        return None

    query_params = parse_qs(urlparse(next_url).query)
    if "after" in query_params:
        return query_params["after"][0]
    return None


def load_bearer_token(credentials_file: Optional[Path] = None) -> Optional[str]:
    """Bearer token from $QUMULO_BEARER_TOKEN or the qq credentials file."""
    token = os.environ.get("QUMULO_BEARER_TOKEN")
    if token:
        return token

    credentials_file = credentials_file or QUMULO_CREDENTIALS_FILE
    if not credentials_file.exists():
        return None
    try:
        with open(credentials_file, "r") as f:
            return json_parser.load(f).get("bearer_token")
    except (OSError, ValueError, AttributeError) as e:
        print(f"[WARN] Failed to read {credentials_file}: {e}", file=sys.stderr)
        return None


class QumuloStore(ObjectStore):
    """Walks a Qumulo directory tree through the REST API."""

    def __init__(
        self,
        base_url: str,
        bearer_token: str,
        connector_limit: int = DEFAULT_CONCURRENCY,
        verify_ssl: bool = False,
    ):
        self.base_url = base_url.rstrip("/")
        self.connector_limit = connector_limit
        self.headers = {
            "accept": "application/json",
            "Authorization": f"Bearer {bearer_token}",
        }

        self.ssl_context = None
        if not verify_ssl:
            # Clusters usually serve self-signed certificates
            self.ssl_context = ssl.create_default_context()
            self.ssl_context.check_hostname = False
            self.ssl_context.verify_mode = ssl.CERT_NONE

        self._session: Optional[aiohttp.ClientSession] = None

    def create_session(self) -> aiohttp.ClientSession:
        """Create optimized ClientSession with connection pooling."""
        connector = aiohttp.TCPConnector(
            limit=self.connector_limit,
            limit_per_host=self.connector_limit,
            ttl_dns_cache=300,
            ssl=self.ssl_context if self.ssl_context is not None else True,
        )
        return aiohttp.ClientSession(connector=connector, headers=self.headers)

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = self.create_session()
        return self._session

    async def close(self):
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def get_directory_page(self, path: str, after_token: Optional[str] = None) -> dict:
        """
        Fetch a single page of directory contents from Qumulo API.

        Args:
            path: Directory path (must start with '/')
            after_token: Pagination token from previous response

        Returns:
            Dictionary containing 'files' and 'paging' metadata
        """
        if not path.startswith("/"):
            path = "/" + path

        encoded_path = quote(path, safe="")
        url = f"{self.base_url}/v1/files/{encoded_path}/entries/"

        params = {"limit": QUMULO_PAGE_LIMIT}
        if after_token:
            params["after"] = after_token

        async with self.session.get(url, params=params) as response:
            response.raise_for_status()
            return await response.json(loads=json_parser.loads)

    @staticmethod
    def entry_to_meta(entry: dict) -> ObjectMeta:
        return ObjectMeta(
            location=entry["path"].lstrip("/"),
            last_modified=parse_timestamp(entry["modification_time"]),
            size=int(entry.get("size") or 0),
        )

    async def list(self, prefix: str) -> AsyncIterator[ObjectMeta]:
        pending = ["/" + prefix.strip("/")]

        while pending:
            path = pending.pop()
            after_token = None
            while True:
                response = await self.get_directory_page(path, after_token=after_token)
                for entry in response.get("files", []):
                    if entry.get("type") == "FS_FILE_TYPE_DIRECTORY":
                        pending.append(entry["path"])
                    else:
                        yield self.entry_to_meta(entry)

                after_token = extract_pagination_token(response)
                if not after_token:
                    break

    def __repr__(self):
        return f"QumuloStore({self.base_url})"


def parse_url(url: str, concurrency: int = DEFAULT_CONCURRENCY) -> Tuple[ObjectStore, str]:
    """
    Resolve a root URL into a store and the path prefix to list.

    Raises:
        InvalidRoot: for unsupported schemes or missing credentials
    """
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    path = unquote(parsed.path).strip("/")

    if scheme == "file":
        if parsed.netloc not in ("", "localhost"):
            raise InvalidRoot(f"file:// URLs must not name a host: {url}")
        return LocalFileStore(), path

    if scheme == "memory":
        return MemoryStore(), path

    if scheme == "s3":
        if not parsed.netloc:
            raise InvalidRoot(f"s3:// URL has no bucket: {url}")
        store = S3Store(
            parsed.netloc,
            endpoint_url=os.environ.get("AWS_ENDPOINT_URL") or None,
            region=os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION"),
            max_pool_connections=concurrency,
        )
        return store, path

    if scheme == "qumulo":
        if not parsed.hostname:
            raise InvalidRoot(f"qumulo:// URL has no host: {url}")
        bearer_token = load_bearer_token()
        if not bearer_token:
            raise InvalidRoot(
                "No Qumulo credentials found. Please run 'qq --host <cluster> login' "
                "first or set QUMULO_BEARER_TOKEN."
            )
        port = parsed.port or QUMULO_DEFAULT_PORT
        store = QumuloStore(
            f"https://{parsed.hostname}:{port}",
            bearer_token,
            connector_limit=concurrency,
        )
        return store, path

    raise InvalidRoot(f"Unsupported root URL scheme '{parsed.scheme}': {url}")


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class RecordSource:
    """A lazy, non-restartable sequence of records."""

    def records(self) -> AsyncIterator[ObjectMeta]:
        raise NotImplementedError


class ListingSource(RecordSource):
    """Records listed from a store. Backend failures become SourceError."""

    def __init__(self, store: ObjectStore, prefix: str):
        self.store = store
        self.prefix = prefix

    async def records(self) -> AsyncIterator[ObjectMeta]:
        try:
            async for meta in self.store.list(self.prefix):
                yield meta
        except Obvious3Error:
            raise
        except Exception as e:
            raise SourceError(f"Listing {self.store!r} at '{self.prefix}' failed: {e}") from e


class DecodeSource(RecordSource):
    """
    Records decoded from a binary NDJSON stream, one per line.

    The preamble must already have been consumed from the stream. Lines are
    read in a worker thread and decoded as strict UTF-8; the first bad line
    ends the stream with DecodeError.
    """

    def __init__(self, stream: Optional[IO[bytes]] = None, first_line_number: int = 2):
        self.stream = stream if stream is not None else sys.stdin.buffer
        self.first_line_number = first_line_number

    async def records(self) -> AsyncIterator[ObjectMeta]:
        line_number = self.first_line_number
        while True:
            try:
                raw = await asyncio.to_thread(self.stream.readline)
            except OSError as e:
                raise DecodeError(line_number, str(e)) from e
            if not raw:
                break

            try:
                # UnicodeDecodeError is a ValueError
                meta = decode_record(raw.decode("utf-8"))
            except (ValueError, TypeError) as e:
                raise DecodeError(line_number, str(e)) from e

            yield meta
            line_number += 1


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


class StdoutWriter:
    """
    A queue that writes record lines to stdout.

    Many filter units forward records concurrently, but only the single drain
    task ever touches the output:
    * only whole lines are written, never interleaved
    * a full queue blocks the forwarding unit instead of buffering without bound
    * writes go through one buffered stream
    * a closed pipe stops the writer without raising inside the drain task
    * any other failure is kept in `error` and re-raised to the producers

    The writes themselves are blocking IO on the event loop thread. That can
    cause a momentary pause in the stream, which is fine for this use case.
    """

    def __init__(self, output: Optional[IO[bytes]] = None, queue_size: int = OUTPUT_QUEUE_SIZE):
        self.output = output if output is not None else sys.stdout.buffer
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.closed = False
        self.error: Optional[Exception] = None
        self.lines_written = 0
        self._task: Optional[asyncio.Task] = None

    def start(self, preamble: Preamble):
        """Write the preamble and start the drain task."""
        self._write_bytes((preamble.to_json() + "\n").encode("utf-8"))
        self._task = asyncio.create_task(self._drain())

    async def write(self, meta: ObjectMeta):
        """Queue a record for output, waiting while the queue is full."""
        if self.error is not None:
            raise self.error
        if self.closed:
            raise BrokenOutput("Output closed by consumer")
        if self._task is not None and self._task.done():
            raise Obvious3Error("Output writer stopped unexpectedly")
        await self.queue.put(meta)

    async def close(self):
        """Write everything still queued, then flush."""
        if self._task is not None and not self._task.done():
            await self.queue.put(None)
            await self._task
        self._task = None
        self._flush()

    async def _drain(self):
        while True:
            meta = await self.queue.get()
            if meta is None:
                break
            if self.closed:
                # Keep draining so blocked producers wake up and see the closed flag
                continue

            try:
                if self._write_bytes((encode_record(meta) + "\n").encode("utf-8")):
                    self.lines_written += 1
                if self.queue.empty():
                    self._flush()
            except Exception as e:
                self.closed = True
                self.error = e

    def _write_bytes(self, data: bytes) -> bool:
        if self.closed:
            return False
        try:
            self.output.write(data)
            return True
        except BrokenPipeError:
            self.closed = True
        except OSError as e:
            self.closed = True
            self.error = e
        return False

    def _flush(self):
        if self.closed:
            return
        try:
            self.output.flush()
        except BrokenPipeError:
            self.closed = True
        except OSError as e:
            self.closed = True
            self.error = e


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


class ProgressTracker:
    """Track progress of the record stream with real-time updates on stderr."""

    def __init__(self):
        self.total_objects = 0
        self.matches = 0
        self.start_time = time.time()
        self.last_update = time.time()
        self.lock = asyncio.Lock()

    async def update(self, objects: int, matches: int = 0):
        """Update progress counters."""
        async with self.lock:
            self.total_objects += objects
            self.matches += matches

            # Print progress every 0.5 seconds
            if time.time() - self.last_update > 0.5:
                elapsed = time.time() - self.start_time
                rate = self.total_objects / elapsed if elapsed > 0 else 0
                print(
                    f"\r[PROGRESS] {self.total_objects:,} objects processed | "
                    f"{self.matches:,} matches | "
                    f"{rate:.1f} obj/sec | "
                    f"Run time: {format_time(elapsed)}",
                    end="",
                    file=sys.stderr,
                    flush=True,
                )
                self.last_update = time.time()

    def final_report(self):
        """Print final progress report."""
        elapsed = time.time() - self.start_time
        rate = self.total_objects / elapsed if elapsed > 0 else 0
        print(
            f"\r[PROGRESS] FINAL: {self.total_objects:,} objects processed | "
            f"{self.matches:,} matches | "
            f"{rate:.1f} obj/sec | "
            f"Run time: {format_time(elapsed)}",
            file=sys.stderr,
        )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


async def for_each_concurrent(
    records: AsyncIterator[ObjectMeta],
    handler: Callable[[ObjectMeta], Awaitable[None]],
    concurrency: int,
):
    """
    Run handler for every record with at most `concurrency` calls in flight.

    Stops pulling records on the first failure (from the source or from a
    handler), waits for the calls already running, then re-raises that
    failure. Handlers complete in no particular order.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be positive: {concurrency}")

    semaphore = asyncio.Semaphore(concurrency)
    pending = set()
    failure: Optional[BaseException] = None

    def on_done(task: asyncio.Task):
        nonlocal failure
        pending.discard(task)
        semaphore.release()
        if not task.cancelled() and task.exception() is not None and failure is None:
            failure = task.exception()

    iterator = records.__aiter__()
    try:
        while True:
            await semaphore.acquire()
            if failure is not None:
                semaphore.release()
                break
            try:
                meta = await iterator.__anext__()
            except StopAsyncIteration:
                semaphore.release()
                break
            if failure is not None:
                semaphore.release()
                break

            task = asyncio.create_task(handler(meta))
            pending.add(task)
            task.add_done_callback(on_done)
    finally:
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()

    if failure is not None:
        raise failure


async def run_pipeline(
    source: RecordSource,
    config: FilterConfig,
    writer: StdoutWriter,
    concurrency: int = DEFAULT_CONCURRENCY,
    progress: Optional[ProgressTracker] = None,
):
    """Filter every record from source and forward the matches to writer."""

    async def print_matches(meta: ObjectMeta):
        valid = matches(meta, config)
        if progress:
            await progress.update(1, 1 if valid else 0)
        if valid:
            await writer.write(meta)

    await for_each_concurrent(source.records(), print_matches, concurrency)


async def run_find(
    options: FindOptions,
    stdin: Optional[IO[bytes]] = None,
    stdout: Optional[IO[bytes]] = None,
):
    """
    Run the find command end to end.

    Raises:
        BrokenOutput: if the consumer closed stdout, after shutting down cleanly
        Obvious3Error: for every other failure
    """
    # Compile filters before any I/O so a bad regex fails fast
    config = FilterConfig.from_options(options)
    preamble = resolve_preamble(options.root, stdin)

    store: Optional[ObjectStore] = None
    if options.root is not None:
        store, prefix = parse_url(preamble.root, options.concurrency)
        source: RecordSource = ListingSource(store, prefix)
        mode = "listing"
    else:
        source = DecodeSource(stdin)
        mode = "decode"

    if options.verbose:
        print("=" * 70, file=sys.stderr)
        print("obvious3 find", file=sys.stderr)
        print("=" * 70, file=sys.stderr)
        print(f"Root:             {preamble.root}", file=sys.stderr)
        print(f"Mode:             {mode}", file=sys.stderr)
        print(f"JSON parser:      {JSON_PARSER_NAME}", file=sys.stderr)
        print(f"Max concurrent:   {options.concurrency}", file=sys.stderr)
        print("=" * 70, file=sys.stderr)

    progress = ProgressTracker() if options.progress else None
    writer = StdoutWriter(stdout)
    writer.start(preamble)

    try:
        if not writer.closed:
            await run_pipeline(source, config, writer, options.concurrency, progress)
    finally:
        await writer.close()
        if store is not None:
            await store.close()
        if progress:
            progress.final_report()

    if writer.error is not None:
        raise writer.error
    if writer.closed:
        raise BrokenOutput("Output closed by consumer")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _size_arg(value: str) -> int:
    try:
        return parse_size_to_bytes(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def _timestamp_arg(value: str) -> datetime:
    try:
        return parse_timestamp(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid RFC3339 timestamp '{value}': {e}")


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Not an integer: {value}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"Must be at least 1: {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="obvious3",
        description="List object metadata and filter it. Output can be piped into another obvious3 find.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Parquet files under a local directory
  obvious3 find -r /data -b '.*\\.parquet$'

  # ...of those, the ones not modified in the last 3 seconds
  obvious3 find -r /data -b '.*\\.parquet$' | obvious3 find --not --after 3

  # Large objects in a public bucket
  obvious3 find -r s3://bucket/logs --min-size 1GiB

  # Files on a Qumulo cluster changed since the start of 2024
  obvious3 find -r qumulo://cluster.example.com/home --after-absolute 2024-01-01T00:00:00Z
        """,
    )
    parser.add_argument("--verbose", action="store_true", help="Show detailed logging")
    parser.add_argument(
        "--progress", action="store_true", help="Show real-time progress stats"
    )
    parser.add_argument(
        "--concurrency",
        type=_positive_int,
        default=DEFAULT_CONCURRENCY,
        help=f"Maximum records evaluated concurrently (default: {DEFAULT_CONCURRENCY})",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    find = subparsers.add_parser(
        "find",
        help="List objects recursively, and filter them by various criteria. Can be chained.",
        description="List objects recursively, and filter them by various criteria. Can be chained.",
    )
    find.add_argument(
        "-r",
        "--root",
        help="Path or URL to recurse from. If omitted, a listing is read from stdin.",
    )
    find.add_argument(
        "-p",
        "--path-match",
        help="Objects' full paths must match this regex. Case sensitive, use (?i) to ignore case.",
    )
    find.add_argument(
        "-b",
        "--basename-match",
        help="Objects' basenames must match this regex. Same syntax as --path-match.",
    )
    find.add_argument(
        "--not",
        dest="invert",
        action="store_true",
        help="Invert all criteria: only show objects that don't match",
    )
    find.add_argument(
        "--min-size",
        type=_size_arg,
        help="Objects should be at least this size (e.g., 1024, 100MB, 1.5GiB)",
    )
    find.add_argument(
        "--max-size", type=_size_arg, help="Objects should be at most this size"
    )
    find.add_argument(
        "--after-absolute",
        type=_timestamp_arg,
        help="Objects should have been modified after this RFC3339 time",
    )
    find.add_argument(
        "--before-absolute",
        type=_timestamp_arg,
        help="Objects should have been modified before this RFC3339 time",
    )
    find.add_argument(
        "--after",
        type=int,
        help="Objects should have been modified after this many seconds ago",
    )
    find.add_argument(
        "--before",
        type=int,
        help="Objects should have been modified before this many seconds ago",
    )
    return parser


def redirect_stdout_to_devnull():
    """Point stdout at /dev/null so the interpreter's final flush can't fail."""
    try:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
    except (OSError, ValueError):
        # stdout has no file descriptor (e.g. replaced in tests)
        pass


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help(sys.stderr)
        sys.exit(2)

    options = FindOptions.from_args(args)

    try:
        asyncio.run(run_find(options))
    except BrokenOutput:
        redirect_stdout_to_devnull()
        sys.exit(0)
    except KeyboardInterrupt:
        print("\n[INFO] Interrupted by user", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        if args.verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
