from __future__ import annotations

import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse

import segno
from redis.exceptions import RedisError


logger = logging.getLogger(__name__)

DEFAULT_QR_SIZE = 300
DEFAULT_QR_FORMAT = "svg"
DEFAULT_QR_ERROR_CORRECTION_LEVEL = "M"
DEFAULT_QR_MARGIN = 4
DEFAULT_QR_CACHE_TTL_SECONDS = 3600

QR_FORMATS = ("svg", "png")
QR_ERROR_CORRECTION_LEVELS = ("L", "M", "Q", "H")
QR_MIN_SIZE = 64
QR_MAX_SIZE = 2048
QR_MAX_MARGIN = 32
QR_URL_SCHEMES = ("http", "https", "exp")

QR_DARK_COLOR = "#000000"
QR_LIGHT_COLOR = "#ffffff"


class QRCodeOptionsError(ValueError):
    pass


@dataclass(frozen=True)
class QRCodeOptions:
    size: int = DEFAULT_QR_SIZE
    format: str = DEFAULT_QR_FORMAT
    error_correction_level: str = DEFAULT_QR_ERROR_CORRECTION_LEVEL
    margin: int = DEFAULT_QR_MARGIN

    @classmethod
    def from_values(
        cls,
        *,
        size: Optional[int] = None,
        format: Optional[str] = None,
        error_correction_level: Optional[str] = None,
        margin: Optional[int] = None,
    ) -> "QRCodeOptions":
        """Fill unset values with defaults. Validation happens at generation time."""
        return cls(
            size=DEFAULT_QR_SIZE if size is None else size,
            format=(format or DEFAULT_QR_FORMAT).strip().lower(),
            error_correction_level=(error_correction_level or DEFAULT_QR_ERROR_CORRECTION_LEVEL).strip().upper(),
            margin=DEFAULT_QR_MARGIN if margin is None else margin,
        )

    def validate(self) -> None:
        if isinstance(self.size, bool) or not isinstance(self.size, int):
            raise QRCodeOptionsError("size must be an integer")
        if not QR_MIN_SIZE <= self.size <= QR_MAX_SIZE:
            raise QRCodeOptionsError(f"size must be between {QR_MIN_SIZE} and {QR_MAX_SIZE}")
        if isinstance(self.margin, bool) or not isinstance(self.margin, int):
            raise QRCodeOptionsError("margin must be an integer")
        if not 0 <= self.margin <= QR_MAX_MARGIN:
            raise QRCodeOptionsError(f"margin must be between 0 and {QR_MAX_MARGIN}")
        if self.format not in QR_FORMATS:
            raise QRCodeOptionsError(f"format must be one of: {', '.join(QR_FORMATS)}")
        if self.error_correction_level not in QR_ERROR_CORRECTION_LEVELS:
            raise QRCodeOptionsError(
                f"errorCorrectionLevel must be one of: {', '.join(QR_ERROR_CORRECTION_LEVELS)}"
            )


@dataclass(frozen=True)
class QRCodeResult:
    url: str
    format: str
    size: int
    error_correction_level: str
    margin: int
    generated_at: datetime
    data: str = ""
    svg: Optional[str] = None
    data_url: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.data_url)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["generated_at"] = self.generated_at.isoformat()
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "QRCodeResult":
        values = dict(payload)
        generated_at = values.get("generated_at")
        if isinstance(generated_at, str):
            values["generated_at"] = datetime.fromisoformat(generated_at)
        return cls(**values)


def validate_bundler_url(url: str) -> str:
    candidate = str(url or "").strip()
    if not candidate:
        raise QRCodeOptionsError("url is required")
    parsed = urlparse(candidate)
    if parsed.scheme.lower() not in QR_URL_SCHEMES:
        raise QRCodeOptionsError(f"Unsupported url scheme: {parsed.scheme or '<none>'}")
    if not parsed.netloc:
        raise QRCodeOptionsError("url must include a host")
    return candidate


def _module_scale(qr: segno.QRCode, size: int, margin: int) -> int:
    width, _ = qr.symbol_size(scale=1, border=margin)
    return max(1, size // max(1, width))


def generate_qr_code(url: str, options: Optional[QRCodeOptions] = None) -> QRCodeResult:
    """Encode ``url`` as a QR artifact.

    Never raises for bad input: a malformed URL, out-of-range option or
    encoder failure comes back as a result with ``error`` set and an empty
    payload, so callers can fall back to showing the URL as text.
    """
    opts = options or QRCodeOptions()
    generated_at = datetime.now(timezone.utc)
    failed = QRCodeResult(
        url=str(url or ""),
        format=str(opts.format),
        size=opts.size if isinstance(opts.size, int) else DEFAULT_QR_SIZE,
        error_correction_level=str(opts.error_correction_level),
        margin=opts.margin if isinstance(opts.margin, int) else DEFAULT_QR_MARGIN,
        generated_at=generated_at,
    )
    try:
        validated_url = validate_bundler_url(url)
        opts.validate()
    except QRCodeOptionsError as exc:
        return replace(failed, error=str(exc))

    try:
        qr = segno.make(
            validated_url,
            error=opts.error_correction_level.lower(),
            micro=False,
            boost_error=False,
        )
        scale = _module_scale(qr, opts.size, opts.margin)
        if opts.format == "svg":
            svg = qr.svg_inline(scale=scale, border=opts.margin, dark=QR_DARK_COLOR, light=QR_LIGHT_COLOR)
            data_url = qr.svg_data_uri(scale=scale, border=opts.margin, dark=QR_DARK_COLOR, light=QR_LIGHT_COLOR)
            data = svg
        else:
            svg = None
            data_url = qr.png_data_uri(scale=scale, border=opts.margin, dark=QR_DARK_COLOR, light=QR_LIGHT_COLOR)
            data = data_url.split(",", 1)[1]
    except (ValueError, segno.DataOverflowError) as exc:
        logger.warning("QR encoding failed for %s: %s", validated_url, exc)
        return replace(failed, error=f"QR encoding failed: {exc}")

    return replace(
        failed,
        url=validated_url,
        data=data,
        svg=svg,
        data_url=data_url,
    )


def build_qr_cache_key(task_id: str, format: str = DEFAULT_QR_FORMAT, size: int = DEFAULT_QR_SIZE) -> str:
    return f"{task_id}:{format}:{size}"


def default_qr_cache_keys(task_id: str) -> Tuple[str, ...]:
    return tuple(build_qr_cache_key(task_id, fmt, DEFAULT_QR_SIZE) for fmt in QR_FORMATS)


class QRCodeCache(ABC):
    """TTL cache for generated artifacts. Losing entries only costs regeneration."""

    default_ttl_seconds: int = DEFAULT_QR_CACHE_TTL_SECONDS

    @abstractmethod
    async def get(self, key: str) -> Optional[QRCodeResult]:
        raise NotImplementedError

    @abstractmethod
    async def set(self, key: str, value: QRCodeResult, ttl_seconds: Optional[int] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def clear(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def size(self) -> int:
        raise NotImplementedError

    async def get_or_generate(
        self,
        key: str,
        generate: Callable[[], Awaitable[QRCodeResult]],
        ttl_seconds: Optional[int] = None,
    ) -> Tuple[QRCodeResult, bool]:
        """Return ``(result, cached)``. Error results are handed back but never stored."""
        existing = await self.get(key)
        if existing is not None:
            return existing, True
        generated = await generate()
        if generated.error is None:
            await self.set(key, generated, ttl_seconds)
        return generated, False

    async def invalidate_task(self, task_id: str) -> None:
        for key in default_qr_cache_keys(task_id):
            await self.delete(key)


class InMemoryQRCodeCache(QRCodeCache):
    def __init__(
        self,
        *,
        default_ttl_seconds: int = DEFAULT_QR_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[QRCodeResult, float]] = {}

    async def get(self, key: str) -> Optional[QRCodeResult]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() > expires_at:
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: QRCodeResult, ttl_seconds: Optional[int] = None) -> None:
        if value.error is not None:
            return
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[key] = (value, self._clock() + ttl)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self) -> None:
        self._entries.clear()

    async def size(self) -> int:
        now = self._clock()
        for key in [key for key, (_, expires_at) in self._entries.items() if now > expires_at]:
            self._entries.pop(key, None)
        return len(self._entries)


class RedisQRCodeCache(QRCodeCache):
    """Shared cache for multi-process deployments. Redis outages degrade to misses."""

    def __init__(
        self,
        redis_client: Any,
        *,
        prefix: str = "mobile-preview:qr:",
        default_ttl_seconds: int = DEFAULT_QR_CACHE_TTL_SECONDS,
    ):
        self._redis = redis_client
        self._prefix = prefix
        self.default_ttl_seconds = default_ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Optional[QRCodeResult]:
        try:
            raw = await self._redis.get(self._key(key))
        except RedisError as exc:
            logger.warning("QR cache read failed for %s: %s", key, exc)
            return None
        if not raw:
            return None
        try:
            return QRCodeResult.from_dict(json.loads(raw))
        except (TypeError, ValueError) as exc:
            logger.warning("Discarding unreadable QR cache entry %s: %s", key, exc)
            await self.delete(key)
            return None

    async def set(self, key: str, value: QRCodeResult, ttl_seconds: Optional[int] = None) -> None:
        if value.error is not None:
            return
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        try:
            await self._redis.setex(self._key(key), max(1, int(ttl)), json.dumps(value.to_dict()))
        except RedisError as exc:
            logger.warning("QR cache write failed for %s: %s", key, exc)

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(self._key(key))
        except RedisError as exc:
            logger.warning("QR cache delete failed for %s: %s", key, exc)

    async def clear(self) -> None:
        try:
            keys = [key async for key in self._redis.scan_iter(match=f"{self._prefix}*")]
            if keys:
                await self._redis.delete(*keys)
        except RedisError as exc:
            logger.warning("QR cache clear failed: %s", exc)

    async def size(self) -> int:
        try:
            return len([key async for key in self._redis.scan_iter(match=f"{self._prefix}*")])
        except RedisError as exc:
            logger.warning("QR cache size lookup failed: %s", exc)
            return 0


def qr_cache_ttl_from_env() -> int:
    return max(1, int(os.getenv("MOBILE_QR_CACHE_TTL_SECONDS", str(DEFAULT_QR_CACHE_TTL_SECONDS))))


def build_qr_code_cache_from_env(redis_client: Any = None) -> QRCodeCache:
    ttl = qr_cache_ttl_from_env()
    if redis_client is not None:
        return RedisQRCodeCache(redis_client, default_ttl_seconds=ttl)
    return InMemoryQRCodeCache(default_ttl_seconds=ttl)
