# storyforge/asset_cache.py

import hashlib
import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable

logger = logging.getLogger("storyforge")


class AssetFetchError(Exception):
    pass


class RateLimitedError(AssetFetchError):
    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    fetches: int = 0
    rate_limit_waits: int = 0


class AssetCache:
    """
    Content-hash cache for screenshots and documents referenced by seeds.

    Layout under cache_dir:
        metadata.json          locator -> {"sha256": ..., "size": ...}
        blobs/<sha256>         raw bytes, shared by every locator with the same content

    - writes are atomic (temp file + os.replace)
    - a corrupt metadata.json is moved aside and the cache starts empty
    - a blob whose hash no longer matches is treated as a miss and refetched
    - rate-limited fetches back off on their own schedule, independent of the
      model retry policy
    """

    def __init__(
        self,
        cache_dir: str | Path,
        fetcher: Callable[[str], bytes],
        *,
        max_attempts: int = 5,
        base_delay: float = 2.0,
        max_delay: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._lock = threading.Lock()
        self._dir = Path(cache_dir)
        self._blob_dir = self._dir / "blobs"
        self._meta_path = self._dir / "metadata.json"
        self._fetcher = fetcher
        self._max_attempts = max(1, max_attempts)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep
        self.stats = CacheStats()

        self._blob_dir.mkdir(parents=True, exist_ok=True)
        self._entries: dict[str, dict] = self._load_metadata()

    # -----------------------
    # Public API
    # -----------------------

    def get(self, locator: str) -> bytes:
        data = self._read_cached(locator)
        if data is not None:
            with self._lock:
                self.stats.hits += 1
            return data

        with self._lock:
            self.stats.misses += 1
        data = self._fetch_with_backoff(locator)
        digest = hashlib.sha256(data).hexdigest()

        blob_path = self._blob_dir / digest
        if not blob_path.exists():
            self._atomic_write(blob_path, data)

        with self._lock:
            self._entries[locator] = {"sha256": digest, "size": len(data)}
            self._save_metadata_unlocked()
        return data

    def __call__(self, locator: str) -> bytes:
        return self.get(locator)

    def stats_snapshot(self) -> dict:
        with self._lock:
            return asdict(self.stats)

    # -----------------------
    # Internals
    # -----------------------

    def _read_cached(self, locator: str) -> bytes | None:
        with self._lock:
            entry = self._entries.get(locator)
        if not entry:
            return None
        blob_path = self._blob_dir / entry.get("sha256", "")
        try:
            data = blob_path.read_bytes()
        except OSError:
            return None
        if hashlib.sha256(data).hexdigest() != entry.get("sha256"):
            logger.warning(f"AssetCache: blob for '{locator}' does not match its hash, refetching")
            return None
        return data

    def _fetch_with_backoff(self, locator: str) -> bytes:
        for attempt in range(1, self._max_attempts + 1):
            with self._lock:
                self.stats.fetches += 1
            try:
                return self._fetcher(locator)
            except RateLimitedError as e:
                if attempt >= self._max_attempts:
                    raise AssetFetchError(
                        f"'{locator}' still rate limited after {self._max_attempts} attempts"
                    ) from e
                delay = e.retry_after if e.retry_after is not None else self._base_delay * (2 ** (attempt - 1))
                delay = min(self._max_delay, delay)
                with self._lock:
                    self.stats.rate_limit_waits += 1
                logger.info(f"AssetCache: rate limited on '{locator}', waiting {delay:.1f}s (attempt {attempt})")
                self._sleep(delay)
        raise AssetFetchError(f"could not fetch '{locator}'")

    def _load_metadata(self) -> dict[str, dict]:
        if not self._meta_path.exists():
            return {}
        try:
            with self._meta_path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            entries = data.get("entries", {})
            if not isinstance(entries, dict):
                raise ValueError("entries is not an object")
            return entries
        except (OSError, ValueError, AttributeError) as e:
            corrupt = self._meta_path.with_name("metadata.json.corrupt")
            logger.warning(f"AssetCache: metadata unreadable ({e}), moved to {corrupt.name}, starting empty")
            os.replace(self._meta_path, corrupt)
            return {}

    def _save_metadata_unlocked(self) -> None:
        payload = json.dumps({"version": 1, "entries": self._entries}, indent=2, sort_keys=True)
        self._atomic_write(self._meta_path, payload.encode("utf-8"))

    def _atomic_write(self, path: Path, data: bytes) -> None:
        tmp = path.with_name(f"{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        with tmp.open("wb") as f:
            f.write(data)
        os.replace(tmp, path)
