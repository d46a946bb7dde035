from dataclasses import dataclass
import logging
import os
import uuid

from werkzeug.security import safe_join
from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
}


def content_type_for(key):
    _, ext = os.path.splitext(key)
    return CONTENT_TYPES.get(ext.lower(), "image/png")


def is_owned_by(key, account_id):
    """Keys are namespaced ``<account id>/<name>``; only that account owns them."""
    if not key or not account_id:
        return False
    owner, sep, name = key.partition("/")
    return bool(sep) and owner == str(account_id) and bool(name) and ".." not in name.split("/")


@dataclass(frozen=True)
class StoredImage:
    key: str
    url: str


class LocalImageStore:
    """Account-namespaced blob store on the local filesystem."""

    def __init__(self, root, public_base_url=""):
        self.root = os.path.abspath(root)
        self.public_base_url = public_base_url.rstrip("/")
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key):
        if not key or key.startswith("/") or "\\" in key:
            return None
        return safe_join(self.root, *key.split("/"))

    def public_url(self, key):
        return f"{self.public_base_url}/api/image/{key}"

    def new_key(self, account_id, prefix="coloring-page", extension="png"):
        name = secure_filename(f"{prefix}-{uuid.uuid4()}.{extension}")
        return f"{account_id}/{name}"

    def save(self, key, data):
        path = self._path(key)
        if path is None:
            raise ValueError(f"Invalid storage key: {key!r}")
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        return StoredImage(key=key, url=self.public_url(key))

    def read(self, key):
        path = self._path(key)
        if path is None or not os.path.isfile(path):
            return None
        with open(path, "rb") as f:
            return f.read()

    def delete(self, key):
        path = self._path(key)
        if path is None or not os.path.isfile(path):
            return False
        os.remove(path)
        logger.info("Deleted image %s", key)
        return True
