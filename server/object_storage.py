'''Object storage collaborators.

Receipts and generated reports are addressed by a logical path. Two stores are
shipped: a local directory (the default ``UPLOAD_DIR`` layout) and Cloudinary.
Paths that are absolute http(s) URLs are fetched directly, which is how
Airtable attachment URLs and Cloudinary ``secure_url`` values are stored.
``ScopedObjectStore`` wraps either store when the paths themselves are
untrusted input.
'''

from __future__ import annotations

import hashlib
import logging
import mimetypes
import os
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Protocol
from urllib.error import HTTPError
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

FETCH_TIMEOUT_SECONDS = 15
RECEIPTS_PREFIX = 'receipts'


class ObjectNotFoundError(LookupError):
    '''The logical path does not resolve to a stored object.'''


@dataclass(frozen=True)
class StoredObject:
    data: bytes
    content_type: str | None = None


class ObjectStore(Protocol):
    def load_object(self, path: str) -> StoredObject:  # pragma: no cover - interface
        ...

    def store_object(self, data: bytes, path: str, content_type: str | None = None) -> str:  # pragma: no cover
        ...


def is_remote(path: str) -> bool:
    return path.startswith('http://') or path.startswith('https://')


def fetch_url(url: str, timeout: float = FETCH_TIMEOUT_SECONDS) -> StoredObject:
    '''GET ``url``; a 404/410 becomes ``ObjectNotFoundError``.'''
    try:
        req = Request(url, headers={'User-Agent': 'coparent-ledger/1.0'})
        with urlopen(req, timeout=timeout) as resp:  # nosec: stored receipt URL
            content_type = resp.headers.get_content_type() if resp.headers.get('Content-Type') else None
            return StoredObject(data=resp.read(), content_type=content_type)
    except HTTPError as exc:
        if exc.code in (404, 410):
            raise ObjectNotFoundError(url) from exc
        raise


class LocalObjectStore:
    '''Objects stored as files below ``root``; logical paths are relative.'''

    def __init__(self, root: str | os.PathLike):
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        relative = path.lstrip('/')
        if relative.startswith('uploads/'):
            relative = relative[len('uploads/'):]
        target = (self.root / relative).resolve()
        if target != self.root and self.root not in target.parents:
            raise ObjectNotFoundError(path)
        return target

    def load_object(self, path: str) -> StoredObject:
        if is_remote(path):
            return fetch_url(path)
        target = self._resolve(path)
        if not target.is_file():
            raise ObjectNotFoundError(path)
        content_type, _ = mimetypes.guess_type(target.name)
        return StoredObject(data=target.read_bytes(), content_type=content_type)

    def store_object(self, data: bytes, path: str, content_type: str | None = None) -> str:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, 'wb') as fh:
            fh.write(data)
        logger.debug('Stored %d bytes at %s', len(data), target)
        return target.relative_to(self.root).as_posix()


class CloudinaryObjectStore:
    '''Cloudinary-backed store. ``cloudinary.config`` must already be set.'''

    def __init__(self, folder: str):
        self.folder = folder.strip('/')

    def load_object(self, path: str) -> StoredObject:
        if is_remote(path):
            return fetch_url(path)
        from cloudinary.utils import cloudinary_url

        resource_type = 'raw' if path.lower().endswith('.pdf') else 'image'
        url, _options = cloudinary_url(self._public_id(path), resource_type=resource_type, secure=True)
        return fetch_url(url)

    def _public_id(self, path: str) -> str:
        relative = path.lstrip('/')
        if self.folder and not relative.startswith(self.folder + '/'):
            return f'{self.folder}/{relative}'
        return relative

    def store_object(self, data: bytes, path: str, content_type: str | None = None) -> str:
        from cloudinary import uploader as cld_uploader

        public_id = self._public_id(path)
        resource_type = 'image' if (content_type or '').startswith('image/') else 'raw'
        try:
            upload_res = cld_uploader.upload(
                BytesIO(data),
                public_id=public_id,
                resource_type=resource_type,
                overwrite=True,
            )
        except Exception as exc:  # pragma: no cover - depends on external service
            raise RuntimeError(f'Cloudinary upload failed: {exc}') from exc
        logger.debug('Uploaded %s to Cloudinary (%s)', public_id, upload_res.get('secure_url'))
        return path.lstrip('/')


def user_namespace(user_id: str) -> str:
    '''Storage folder for a user; derived from the id so it is always path-safe.'''
    return hashlib.sha256(user_id.encode('utf-8')).hexdigest()[:24]


def receipts_prefix(user_id: str) -> str:
    return f'{RECEIPTS_PREFIX}/{user_namespace(user_id)}'


class ScopedObjectStore:
    '''Restricts another store to local paths below ``prefix``.

    Used where receipt paths come straight from a request body: remote URLs,
    ``..`` segments and paths outside the prefix are all reported as missing.
    '''

    def __init__(self, store: ObjectStore, prefix: str):
        self.store = store
        self.prefix = prefix.strip('/') + '/'

    def _check(self, path: str) -> str:
        relative = path.strip().lstrip('/')
        if relative.startswith('uploads/'):
            relative = relative[len('uploads/'):]
        if is_remote(path.strip()) or '..' in relative.split('/') or not relative.startswith(self.prefix):
            logger.warning('Refusing object path outside %s: %s', self.prefix, path)
            raise ObjectNotFoundError(path)
        return relative

    def load_object(self, path: str) -> StoredObject:
        return self.store.load_object(self._check(path))

    def store_object(self, data: bytes, path: str, content_type: str | None = None) -> str:
        return self.store.store_object(data, self._check(path), content_type)
