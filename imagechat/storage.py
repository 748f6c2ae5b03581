"""Object storage for generated and active images."""

import base64
import hashlib
import logging
import re
from io import BytesIO
from pathlib import Path
from typing import Optional, Protocol

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel

from .errors import InputValidationError, UpstreamServiceError

LOGGER = logging.getLogger(__name__)

_PROTOCOL = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9\-_.]")


class ObjectStore(Protocol):
    """Content addressed by URL. Puts are idempotent."""

    def head(self, url: str) -> bool: ...

    def get(self, url: str) -> bytes: ...

    def put(self, key: str, data: bytes) -> str: ...


class ImagePackage(BaseModel):
    """Image bytes plus what a vision call needs to embed them."""

    url: str
    data: bytes
    image_format: str

    @property
    def mime_type(self) -> str:
        fmt = "jpeg" if self.image_format == "jpg" else self.image_format
        return f"image/{fmt}"

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("utf-8")

    def to_data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"


def safe_filename_from_url(url: str) -> str:
    """Turn a URL into a string usable as a file name."""
    return _UNSAFE_FILENAME_CHARS.sub("_", _PROTOCOL.sub("", url))


class LocalObjectStore:
    """Object store rooted in a local directory."""

    def __init__(self, root: Path, base_url: Optional[str] = None):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = (base_url or self.root.resolve().as_uri()).rstrip("/")

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{key.lstrip('/')}"

    def key_for(self, url: str) -> Optional[str]:
        prefix = self.base_url + "/"
        if not url.startswith(prefix):
            return None
        key = url[len(prefix):]
        if not key or ".." in Path(key).parts:
            return None
        return key

    def _path_for(self, url: str) -> Optional[Path]:
        key = self.key_for(url)
        return self.root / key if key else None

    def head(self, url: str) -> bool:
        path = self._path_for(url)
        return path is not None and path.is_file()

    def get(self, url: str) -> bytes:
        path = self._path_for(url)
        if path is None or not path.is_file():
            raise UpstreamServiceError(f"Object not found: {url}")
        return path.read_bytes()

    def put(self, key: str, data: bytes) -> str:
        """Store ``data`` under ``key`` unless an object already exists there.

        Returns:
            URL of the stored object.
        """
        url = self.url_for(key)
        if self.head(url):
            LOGGER.debug("Object already stored, skipping upload: %s", url)
            return url
        path = self.root / key.lstrip("/")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return url

    def put_content_addressed(self, data: bytes, prefix: str, extension: str) -> str:
        """Store ``data`` under a key derived from its sha256 digest."""
        digest = hashlib.sha256(data).hexdigest()
        return self.put(f"{prefix.strip('/')}/{digest}.{extension.lstrip('.')}", data)


def detect_image_format(data: bytes, url: str = "") -> str:
    """Image format from the bytes, falling back to the URL's extension."""
    try:
        with Image.open(BytesIO(data)) as image:
            if image.format:
                return image.format.lower()
    except UnidentifiedImageError:
        LOGGER.debug("PIL could not identify image at %s", url)
    suffix = Path(url.split("?", 1)[0]).suffix.lstrip(".").lower()
    return suffix or "png"


def fetch_image_package(store: ObjectStore, url: str) -> ImagePackage:
    """Fetch an image that must already exist in the object store.

    Raises:
        InputValidationError: If no object exists at ``url``.
    """
    if not url or not store.head(url):
        raise InputValidationError(f"Active image does not exist in object storage: {url!r}")
    data = store.get(url)
    return ImagePackage(url=url, data=data, image_format=detect_image_format(data, url))
