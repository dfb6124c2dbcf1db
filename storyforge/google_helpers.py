# storyforge/google_helpers.py

import logging
import os
import threading
from pathlib import Path

from google.api_core import exceptions as google_exceptions
from google.auth import default as google_auth_default
from google.cloud import storage
from google.oauth2 import service_account

from storyforge.asset_cache import AssetFetchError, RateLimitedError

logger = logging.getLogger("storyforge")


def build_creds():
    key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    scopes = ["https://www.googleapis.com/auth/cloud-platform"]
    if key_path and os.path.exists(key_path):
        return service_account.Credentials.from_service_account_file(key_path, scopes=scopes)
    creds, _ = google_auth_default(scopes=scopes)
    return creds


class AssetFetcher:
    """
    Default fetcher behind AssetCache:
      - gs://bucket/path  -> Cloud Storage (client built on first use)
      - file:///path, /path or relative path -> local file
    Anything else is refused; remote download mechanics live outside this package.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._storage_client = None

    def _client(self) -> storage.Client:
        with self._lock:
            if self._storage_client is None:
                self._storage_client = storage.Client(credentials=build_creds())
            return self._storage_client

    def __call__(self, locator: str) -> bytes:
        locator = (locator or "").strip()
        if locator.startswith("gs://"):
            return self._fetch_gcs(locator)
        if locator.startswith("file://"):
            locator = locator[len("file://"):]
        if "://" in locator:
            raise AssetFetchError(f"unsupported asset locator '{locator}'")
        path = Path(locator)
        try:
            return path.read_bytes()
        except OSError as e:
            raise AssetFetchError(f"cannot read '{locator}': {e}") from e

    def _fetch_gcs(self, locator: str) -> bytes:
        bucket_name, _, blob_path = locator[len("gs://"):].partition("/")
        if not bucket_name or not blob_path:
            raise AssetFetchError(f"malformed gs:// locator '{locator}'")
        try:
            blob = self._client().bucket(bucket_name).blob(blob_path)
            return blob.download_as_bytes()
        except google_exceptions.TooManyRequests as e:
            raise RateLimitedError(f"storage rate limit on '{locator}'") from e
        except google_exceptions.GoogleAPICallError as e:
            raise AssetFetchError(f"storage error on '{locator}': {e}") from e
