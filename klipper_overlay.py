import os
import asyncio
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional, Dict, Any, Set, Tuple, Callable, Awaitable, Iterable
from urllib.parse import quote

import aiohttp
from fastapi import FastAPI, APIRouter, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
import uvicorn
from prometheus_client import (
    REGISTRY,
    generate_latest,
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    CollectorRegistry,
)  # type: ignore[import-not-found]

# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
MOONRAKER_URL = os.getenv("MOONRAKER_URL", "http://192.168.1.155:7125").rstrip("/")
# Realtime channel lives on the same host unless overridden (http -> ws, https -> wss).
MOONRAKER_WS_URL = os.getenv(
    "MOONRAKER_WS_URL", MOONRAKER_URL.replace("http", "ws", 1)
).rstrip("/")

PORT = int(os.getenv("PORT", "8080"))
CORS_ENABLED = os.getenv("CORS_ENABLED", "false") in {"1", "true", "True"}

BROADCAST_INTERVAL_SECONDS = float(os.getenv("BROADCAST_INTERVAL_SECONDS", "0.5"))
# A push that takes longer drops the observer.
OBSERVER_SEND_TIMEOUT_SECONDS = float(os.getenv("OBSERVER_SEND_TIMEOUT_SECONDS", "2"))
STATUS_TIMEOUT_SECONDS = float(os.getenv("STATUS_TIMEOUT_SECONDS", "5"))
METADATA_TIMEOUT_SECONDS = float(os.getenv("METADATA_TIMEOUT_SECONDS", "3"))
THUMBNAIL_TIMEOUT_SECONDS = float(os.getenv("THUMBNAIL_TIMEOUT_SECONDS", "5"))
GCODE_TIMEOUT_SECONDS = float(os.getenv("GCODE_TIMEOUT_SECONDS", "5"))
RECONNECT_DELAY_SECONDS = float(os.getenv("RECONNECT_DELAY_SECONDS", "5"))

METADATA_CACHE_TTL_SECONDS = float(os.getenv("METADATA_CACHE_TTL_SECONDS", "30"))
# 0 disables the LRU cap.
METADATA_CACHE_MAX_ENTRIES = int(os.getenv("METADATA_CACHE_MAX_ENTRIES", "256"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Local route that proxies gcode thumbnails from Moonraker.
THUMBNAIL_ROUTE = "/thumbnail"

STATE_PRINTING = "printing"
STATE_PAUSED = "paused"
STATE_IDLE = "idle"
STATE_ERROR = "error"
STATE_DISCONNECTED = "disconnected"

STATES = (STATE_PRINTING, STATE_PAUSED, STATE_IDLE, STATE_ERROR, STATE_DISCONNECTED)
ACTIVE_STATES = {STATE_PRINTING, STATE_PAUSED}

# Klipper objects queried over HTTP and subscribed on the realtime channel.
TELEMETRY_OBJECTS = (
    "heater_bed",
    "extruder",
    "print_stats",
    "display_status",
    "virtual_sdcard",
)

_STATE_MAP = {
    "printing": STATE_PRINTING,
    "paused": STATE_PAUSED,
    "complete": STATE_IDLE,
    "standby": STATE_IDLE,
    "ready": STATE_IDLE,
    "cancelled": STATE_IDLE,
    "error": STATE_ERROR,
    "shutdown": STATE_ERROR,
}

# Substring fallback order, only consulted when no exact match exists.
_STATE_SUBSTRINGS = (
    "printing",
    "paused",
    "error",
    "shutdown",
    "standby",
    "ready",
    "complete",
    "cancelled",
)

CHANNEL_DISCONNECTED = "disconnected"
CHANNEL_CONNECTING = "connecting"
CHANNEL_SUBSCRIBED = "subscribed"

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("klipper-overlay")


# -----------------------------------------------------------------------------
# Prometheus Exporter
# -----------------------------------------------------------------------------
def _unregister_metric_if_exists(
    metric_name: str, registry: CollectorRegistry = REGISTRY
):
    if metric_name in registry._names_to_collectors:
        registry.unregister(registry._names_to_collectors[metric_name])


_unregister_metric_if_exists("klipper_printer_connected")
KLIPPER_PRINTER_CONNECTED = Gauge(
    "klipper_printer_connected",
    "Moonraker reachable on the last acquisition (1=connected,0=disconnected)",
)
_unregister_metric_if_exists("klipper_print_state")
KLIPPER_PRINT_STATE = Gauge(
    "klipper_print_state",
    "Normalized printer state (1 for the current state, 0 otherwise)",
    ["state"],
)
_unregister_metric_if_exists("klipper_progress_percent")
KLIPPER_PROGRESS_PERCENT = Gauge(
    "klipper_progress_percent", "Print progress percent (0-100)"
)
_unregister_metric_if_exists("klipper_time_remaining_seconds")
KLIPPER_TIME_REMAINING_SECONDS = Gauge(
    "klipper_time_remaining_seconds", "Estimated remaining print time in seconds"
)
_unregister_metric_if_exists("klipper_extruder_temperature_celsius")
KLIPPER_EXTRUDER_TEMP = Gauge(
    "klipper_extruder_temperature_celsius", "Extruder temperature in Celsius"
)
_unregister_metric_if_exists("klipper_extruder_target_temperature_celsius")
KLIPPER_EXTRUDER_TARGET_TEMP = Gauge(
    "klipper_extruder_target_temperature_celsius",
    "Extruder target temperature in Celsius",
)
_unregister_metric_if_exists("klipper_bed_temperature_celsius")
KLIPPER_BED_TEMP = Gauge("klipper_bed_temperature_celsius", "Bed temperature in Celsius")
_unregister_metric_if_exists("klipper_bed_target_temperature_celsius")
KLIPPER_BED_TARGET_TEMP = Gauge(
    "klipper_bed_target_temperature_celsius", "Bed target temperature in Celsius"
)
_unregister_metric_if_exists("klipper_last_status_timestamp_seconds")
KLIPPER_LAST_STATUS_TIMESTAMP = Gauge(
    "klipper_last_status_timestamp_seconds",
    "Unix timestamp of the last status acquisition",
)
_unregister_metric_if_exists("klipper_realtime_connected")
KLIPPER_REALTIME_CONNECTED = Gauge(
    "klipper_realtime_connected",
    "Realtime channel subscribed (1=subscribed,0=otherwise)",
)
_unregister_metric_if_exists("klipper_realtime_messages")
KLIPPER_REALTIME_MESSAGES = Counter(
    "klipper_realtime_messages", "JSON messages received on the realtime channel"
)
_unregister_metric_if_exists("klipper_observers_connected")
KLIPPER_OBSERVERS = Gauge(
    "klipper_observers_connected", "Display clients connected to the push channel"
)
_unregister_metric_if_exists("klipper_metadata_cache_entries")
KLIPPER_METADATA_CACHE_ENTRIES = Gauge(
    "klipper_metadata_cache_entries", "File metadata entries held in cache"
)
_unregister_metric_if_exists("klipper_metadata_lookups")
KLIPPER_METADATA_LOOKUPS = Counter(
    "klipper_metadata_lookups",
    "File metadata lookups by outcome (hit, fetched, missing, error)",
    ["outcome"],
)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
class MoonrakerError(Exception):
    """Moonraker answered, but not with something usable."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


# Failures of a single upstream call; anything else is a bug and is logged as such.
TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, MoonrakerError, ValueError)


def now_ms() -> int:
    return int(time.time() * 1000)


def safe_get(d: Optional[Dict[str, Any]], *path, default=None):
    cur = d or {}
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return default
        cur = cur[key]
    return cur


def _maybe_parse_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _temperature(raw: Dict[str, Any], obj: str, field: str) -> float:
    value = _maybe_parse_number(safe_get(raw, obj, field))
    if value is None:
        return 0.0
    return max(0.0, value)


# -----------------------------------------------------------------------------
# Normalized status model
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class NormalizedStatus:
    state: str
    progress: int = 0
    filename: Optional[str] = None
    extruder_temp: float = 0.0
    extruder_target: float = 0.0
    bed_temp: float = 0.0
    bed_target: float = 0.0
    print_duration: Optional[float] = None
    time_remaining: Optional[int] = None
    thumbnail: Optional[str] = None
    timestamp: int = 0

    @classmethod
    def disconnected(cls, timestamp: int) -> "NormalizedStatus":
        # Sentinel: every measurement is zeroed, never a partial reading.
        return cls(state=STATE_DISCONNECTED, timestamp=timestamp)

    @property
    def is_connected(self) -> bool:
        return self.state != STATE_DISCONNECTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "progress": self.progress,
            "filename": self.filename,
            "extruderTemp": self.extruder_temp,
            "extruderTarget": self.extruder_target,
            "bedTemp": self.bed_temp,
            "bedTarget": self.bed_target,
            "timeRemaining": self.time_remaining,
            "printDuration": self.print_duration,
            "thumbnail": self.thumbnail,
            "timestamp": self.timestamp,
        }


def status_message(status: NormalizedStatus) -> str:
    return json.dumps({"type": "status", "data": status.to_dict()})


_warned_states: Set[str] = set()


def normalize_state(raw: Optional[str]) -> str:
    """Map a Klipper ``print_stats.state`` string onto one of STATES.

    Unknown values fail open to idle so a display never shows a spurious
    alarm; each distinct unknown value is logged once.
    """
    key = str(raw or "").strip().lower()
    if not key:
        return STATE_IDLE
    mapped = _STATE_MAP.get(key)
    if mapped is not None:
        return mapped
    for token in _STATE_SUBSTRINGS:
        if token in key:
            return _STATE_MAP[token]
    if key not in _warned_states:
        _warned_states.add(key)
        logger.warning("Unrecognized printer state %r; reporting idle.", raw)
    return STATE_IDLE


def estimate_time_remaining(
    elapsed: Optional[float],
    progress: Optional[float],
    estimated_total: Optional[float] = None,
) -> Optional[int]:
    """Remaining seconds from the slicer estimate, else linear extrapolation.

    Args:
        elapsed: Seconds printed so far.
        progress: Completed fraction in [0, 1].
        estimated_total: Slicer ``estimated_time`` from file metadata.

    Returns:
        Whole seconds, never negative, or None when nothing can be estimated.
    """
    elapsed_s = _maybe_parse_number(elapsed)
    total = _maybe_parse_number(estimated_total)
    if total is None or total <= 0:
        fraction = _maybe_parse_number(progress)
        if elapsed_s is None or fraction is None or not 0 < fraction < 1:
            return None
        total = elapsed_s / fraction
    return max(0, int(round(total - (elapsed_s or 0.0))))


def resolve_thumbnail(
    metadata: Optional[Dict[str, Any]], filename: Optional[str]
) -> Optional[str]:
    thumbnails = safe_get(metadata, "thumbnails")
    if not isinstance(thumbnails, list) or not thumbnails:
        return None
    # Slicers list thumbnails smallest first.
    best = thumbnails[-1]
    if not isinstance(best, dict):
        return None
    data = best.get("data")
    if data:
        return str(data)
    relative_path = best.get("relative_path")
    if not relative_path:
        return None
    directory = (filename or "").rpartition("/")[0]
    path = f"{directory}/{relative_path}" if directory else str(relative_path)
    return f"{THUMBNAIL_ROUTE}/{quote(path, safe='/')}"


def is_safe_gcode_path(path: Optional[str]) -> bool:
    """True when ``path`` stays inside the gcodes root.

    Rejects absolute paths, backslashes and any empty, ``.`` or ``..`` segment.
    """
    if not path or path.startswith("/") or "\\" in path:
        return False
    return all(segment not in ("", ".", "..") for segment in path.split("/"))


# -----------------------------------------------------------------------------
# Moonraker HTTP client
# -----------------------------------------------------------------------------
class MoonrakerClient:
    """The handful of Moonraker HTTP endpoints the bridge consumes.

    Every call raises on failure (see TRANSPORT_ERRORS); callers decide
    how a failure degrades.
    """

    def __init__(
        self,
        base_url: str,
        get_session: Callable[[], Awaitable[aiohttp.ClientSession]],
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._get_session = get_session

    async def _get_json(
        self, path: str, params: Dict[str, str], timeout: float
    ) -> Dict[str, Any]:
        session = await self._get_session()
        req_timeout = aiohttp.ClientTimeout(total=timeout)
        async with session.get(
            f"{self.base_url}{path}", params=params, timeout=req_timeout
        ) as resp:
            if resp.status != 200:
                body = await resp.text()
                raise MoonrakerError(
                    f"HTTP {resp.status} from {path}: {body[:300]}", resp.status
                )
            data = await resp.json(content_type=None)
        if not isinstance(data, dict):
            raise MoonrakerError(f"Unexpected payload type from {path}: {type(data)}")
        return data

    async def query_objects(
        self,
        objects: Iterable[str] = TELEMETRY_OBJECTS,
        timeout: float = STATUS_TIMEOUT_SECONDS,
    ) -> Dict[str, Any]:
        data = await self._get_json(
            "/printer/objects/query", {name: "" for name in objects}, timeout
        )
        status = safe_get(data, "result", "status")
        if not isinstance(status, dict):
            raise MoonrakerError("Object query response has no result.status")
        return status

    async def file_metadata(
        self, filename: str, timeout: float = METADATA_TIMEOUT_SECONDS
    ) -> Optional[Dict[str, Any]]:
        data = await self._get_json(
            "/server/files/metadata", {"filename": filename}, timeout
        )
        result = data.get("result")
        if not isinstance(result, dict) or not result:
            return None
        return result

    async def fetch_file(
        self, path: str, timeout: float = THUMBNAIL_TIMEOUT_SECONDS
    ) -> Tuple[bytes, str]:
        if not is_safe_gcode_path(path):
            raise MoonrakerError(f"Refusing file path outside gcodes root: {path!r}")
        session = await self._get_session()
        url = f"{self.base_url}/server/files/gcodes/{quote(path, safe='/')}"
        req_timeout = aiohttp.ClientTimeout(total=timeout)
        async with session.get(url, timeout=req_timeout) as resp:
            if resp.status != 200:
                raise MoonrakerError(f"HTTP {resp.status} for file {path}", resp.status)
            body = await resp.read()
            content_type = resp.headers.get("Content-Type", "application/octet-stream")
        return body, content_type

    async def run_gcode(self, script: str, timeout: float = GCODE_TIMEOUT_SECONDS) -> None:
        session = await self._get_session()
        req_timeout = aiohttp.ClientTimeout(total=timeout)
        async with session.post(
            f"{self.base_url}/printer/gcode/script",
            params={"script": script},
            timeout=req_timeout,
        ) as resp:
            if resp.status != 200:
                body = await resp.text()
                raise MoonrakerError(
                    f"HTTP {resp.status} running gcode: {body[:300]}", resp.status
                )


# -----------------------------------------------------------------------------
# File metadata cache
# -----------------------------------------------------------------------------
class MetadataCache:
    """Per-file Moonraker metadata, kept for ``ttl`` seconds after each fetch.

    Expired entries are refetched lazily on the next lookup. Failed lookups
    are not cached. Concurrent lookups of one filename may both fetch.
    """

    def __init__(
        self,
        client: MoonrakerClient,
        ttl: float = METADATA_CACHE_TTL_SECONDS,
        max_entries: int = METADATA_CACHE_MAX_ENTRIES,
        timeout: float = METADATA_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self.ttl = ttl
        self.max_entries = max_entries
        self.timeout = timeout
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[Dict[str, Any], float]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, filename: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(filename)
        if entry is None:
            return None
        metadata, fetched_at = entry
        if self._clock() - fetched_at >= self.ttl:
            return None
        return metadata

    async def get(self, filename: Optional[str]) -> Optional[Dict[str, Any]]:
        if not filename:
            return None
        cached = self.peek(filename)
        if cached is not None:
            self._entries.move_to_end(filename)
            KLIPPER_METADATA_LOOKUPS.labels(outcome="hit").inc()
            return cached

        try:
            metadata = await self._client.file_metadata(filename, timeout=self.timeout)
        except TRANSPORT_ERRORS as e:
            logger.info("Metadata unavailable for %s: %s", filename, e)
            KLIPPER_METADATA_LOOKUPS.labels(outcome="error").inc()
            return None
        if metadata is None:
            logger.debug("Moonraker has no metadata for %s", filename)
            KLIPPER_METADATA_LOOKUPS.labels(outcome="missing").inc()
            return None

        KLIPPER_METADATA_LOOKUPS.labels(outcome="fetched").inc()
        self._store(filename, metadata)
        return metadata

    def _store(self, filename: str, metadata: Dict[str, Any]) -> None:
        self._entries[filename] = (metadata, self._clock())
        self._entries.move_to_end(filename)
        if self.max_entries > 0:
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted metadata for %s", evicted)
        KLIPPER_METADATA_CACHE_ENTRIES.set(len(self._entries))


# -----------------------------------------------------------------------------
# Status acquisition
# -----------------------------------------------------------------------------
def _record_status_metrics(status: NormalizedStatus) -> None:
    try:
        KLIPPER_PRINTER_CONNECTED.set(1 if status.is_connected else 0)
        for name in STATES:
            KLIPPER_PRINT_STATE.labels(state=name).set(1 if name == status.state else 0)
        KLIPPER_PROGRESS_PERCENT.set(status.progress)
        KLIPPER_EXTRUDER_TEMP.set(status.extruder_temp)
        KLIPPER_EXTRUDER_TARGET_TEMP.set(status.extruder_target)
        KLIPPER_BED_TEMP.set(status.bed_temp)
        KLIPPER_BED_TARGET_TEMP.set(status.bed_target)
        KLIPPER_TIME_REMAINING_SECONDS.set(status.time_remaining or 0)
        KLIPPER_LAST_STATUS_TIMESTAMP.set(status.timestamp / 1000.0)
    except Exception as e:
        logger.warning("Failed to update status metrics: %s", e)


class StatusAcquirer:
    """Turns one Moonraker object query into one NormalizedStatus.

    ``fetch()`` never raises: any failure yields the disconnected sentinel.
    """

    def __init__(
        self,
        client: MoonrakerClient,
        metadata_cache: MetadataCache,
        timeout: float = STATUS_TIMEOUT_SECONDS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._client = client
        self._metadata = metadata_cache
        self.timeout = timeout
        self._clock = clock
        self._last_timestamp = 0
        self.last_status: Optional[NormalizedStatus] = None

    @property
    def connected(self) -> bool:
        # Liveness flag only; the stored snapshot goes stale between fetches.
        return self.last_status is not None and self.last_status.is_connected

    def _next_timestamp(self) -> int:
        ts = max(self._clock(), self._last_timestamp)
        self._last_timestamp = ts
        return ts

    async def fetch(self) -> NormalizedStatus:
        try:
            raw = await self._client.query_objects(timeout=self.timeout)
        except TRANSPORT_ERRORS as e:
            logger.warning("Moonraker status query failed: %s", e)
            return self._remember(NormalizedStatus.disconnected(self._next_timestamp()))

        try:
            status = await self._normalize(raw)
        except Exception as e:
            logger.exception("Failed to normalize Moonraker status: %s", e)
            status = NormalizedStatus.disconnected(self._next_timestamp())
        return self._remember(status)

    async def _normalize(self, raw: Dict[str, Any]) -> NormalizedStatus:
        print_stats = raw.get("print_stats") or {}
        state = normalize_state(print_stats.get("state"))

        fraction = _maybe_parse_number(safe_get(raw, "virtual_sdcard", "progress"))
        if fraction is None:
            fraction = _maybe_parse_number(safe_get(raw, "display_status", "progress"))
        progress = 0
        if state != STATE_IDLE and fraction is not None:
            progress = min(100, max(0, int(round(fraction * 100))))

        filename = print_stats.get("filename") or None
        duration = _maybe_parse_number(print_stats.get("print_duration"))
        print_duration = max(0.0, duration) if duration else None

        estimated_total = None
        thumbnail = None
        if filename:
            metadata = await self._metadata.get(filename)
            if metadata:
                estimated_total = metadata.get("estimated_time")
                thumbnail = resolve_thumbnail(metadata, filename)

        return NormalizedStatus(
            state=state,
            progress=progress,
            filename=filename,
            extruder_temp=_temperature(raw, "extruder", "temperature"),
            extruder_target=_temperature(raw, "extruder", "target"),
            bed_temp=_temperature(raw, "heater_bed", "temperature"),
            bed_target=_temperature(raw, "heater_bed", "target"),
            print_duration=print_duration,
            time_remaining=estimate_time_remaining(
                print_duration, fraction, estimated_total
            ),
            thumbnail=thumbnail,
            timestamp=self._next_timestamp(),
        )

    def _remember(self, status: NormalizedStatus) -> NormalizedStatus:
        self.last_status = status
        _record_status_metrics(status)
        return status


# -----------------------------------------------------------------------------
# Realtime channel with auto-reconnect
# -----------------------------------------------------------------------------
class RealtimeChannelSupervisor:
    """Keeps a Moonraker websocket subscription warm.

    Advisory only: HTTP polling stays authoritative and incoming updates are
    counted then dropped. The loop never gives up; ``stop()`` tears down the
    channel and any pending reconnect delay.
    """

    def __init__(
        self,
        ws_url: str,
        get_session: Callable[[], Awaitable[aiohttp.ClientSession]],
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        objects: Iterable[str] = TELEMETRY_OBJECTS,
    ) -> None:
        self.ws_url = ws_url.rstrip("/")
        self._get_session = get_session
        self.reconnect_delay = reconnect_delay
        self.objects = tuple(objects)
        self.state = CHANNEL_DISCONNECTED
        self.connect_attempts = 0
        self.messages_received = 0
        self._request_id = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._set_state(CHANNEL_DISCONNECTED)

    def _set_state(self, new_state: str) -> None:
        self.state = new_state
        KLIPPER_REALTIME_CONNECTED.set(1 if new_state == CHANNEL_SUBSCRIBED else 0)

    async def run(self) -> None:
        while True:
            try:
                await self._connect_once()
            except asyncio.CancelledError:
                logger.info("Realtime channel loop cancelled.")
                break
            except Exception as e:
                logger.warning("Realtime channel connection failed: %s", e)
            finally:
                self._set_state(CHANNEL_DISCONNECTED)

            logger.info(
                "Realtime channel reconnecting in %.1f seconds...", self.reconnect_delay
            )
            try:
                await asyncio.sleep(self.reconnect_delay)
            except asyncio.CancelledError:
                logger.info("Realtime channel loop cancelled.")
                break

        logger.info("Realtime channel loop exited.")

    async def _connect_once(self) -> None:
        session = await self._get_session()
        url = f"{self.ws_url}/websocket"
        self.connect_attempts += 1
        self._set_state(CHANNEL_CONNECTING)
        logger.info("Connecting to realtime channel: %s", url)
        async with session.ws_connect(url, heartbeat=30) as ws:
            await self._subscribe(ws)
            self._set_state(CHANNEL_SUBSCRIBED)
            logger.info("Realtime channel connected and subscribed.")

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_text(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    logger.debug(
                        "Received binary realtime frame (%d bytes).", len(msg.data)
                    )
                elif msg.type in (
                    aiohttp.WSMsgType.CLOSE,
                    aiohttp.WSMsgType.CLOSING,
                    aiohttp.WSMsgType.CLOSED,
                ):
                    break
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error("Realtime channel error: %s", ws.exception())
                    break
        logger.warning("Realtime channel closed.")

    async def _subscribe(self, ws) -> None:
        # Fire-and-forget: the subscription counts as active once sent.
        self._request_id += 1
        request = {
            "jsonrpc": "2.0",
            "method": "printer.objects.subscribe",
            "params": {"objects": {name: None for name in self.objects}},
            "id": self._request_id,
        }
        await ws.send_str(json.dumps(request))

    def _handle_text(self, data: str) -> Optional[Dict[str, Any]]:
        try:
            payload = json.loads(data)
        except (TypeError, ValueError):
            logger.warning("Skipping non-JSON realtime frame of length %d", len(data))
            return None
        self.messages_received += 1
        KLIPPER_REALTIME_MESSAGES.inc()
        if isinstance(payload, dict):
            logger.debug(
                "Realtime message: %s", payload.get("method") or payload.get("id")
            )
        return payload


# -----------------------------------------------------------------------------
# Push channel fan-out
# -----------------------------------------------------------------------------
class Broadcaster:
    """Sends one shared snapshot per tick to every connected observer.

    An observer is anything with an async ``send_text(str)``. With no
    observers a tick does nothing, not even the upstream query.
    """

    def __init__(
        self,
        acquirer: StatusAcquirer,
        interval: float = BROADCAST_INTERVAL_SECONDS,
        send_timeout: float = OBSERVER_SEND_TIMEOUT_SECONDS,
    ) -> None:
        self._acquirer = acquirer
        self.interval = interval
        self.send_timeout = send_timeout
        self.observers: Set[Any] = set()
        self._task: Optional[asyncio.Task] = None

    @property
    def observer_count(self) -> int:
        return len(self.observers)

    async def connect(self, observer: Any) -> bool:
        self.observers.add(observer)
        KLIPPER_OBSERVERS.set(len(self.observers))
        logger.info("Observer connected (%d total).", len(self.observers))
        status = await self._acquirer.fetch()
        return await self._deliver(observer, status_message(status))

    def disconnect(self, observer: Any) -> None:
        if observer in self.observers:
            self.observers.discard(observer)
            logger.info("Observer disconnected (%d left).", len(self.observers))
        KLIPPER_OBSERVERS.set(len(self.observers))

    async def tick(self) -> int:
        if not self.observers:
            return 0
        status = await self._acquirer.fetch()
        message = status_message(status)
        # Sends run concurrently so one slow observer cannot hold up the rest.
        results = await asyncio.gather(
            *(self._deliver(observer, message) for observer in list(self.observers)),
            return_exceptions=True,
        )
        return sum(1 for ok in results if ok is True)

    async def _deliver(self, observer: Any, message: str) -> bool:
        try:
            await asyncio.wait_for(observer.send_text(message), self.send_timeout)
        except asyncio.TimeoutError:
            logger.info("Dropping observer that stalled for %.1fs", self.send_timeout)
            self.disconnect(observer)
            return False
        except Exception as e:
            logger.debug("Dropping observer after send failure: %s", e)
            self.disconnect(observer)
            return False
        return True

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def run(self) -> None:
        logger.info("Broadcast loop starting with %.2fs interval", self.interval)
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.tick()
            except Exception as e:
                logger.exception("Broadcast loop error: %s", e)


# -----------------------------------------------------------------------------
# App State
# -----------------------------------------------------------------------------
class AppState:
    def __init__(self) -> None:
        # Shared HTTP session, created lazily inside the running loop
        self.http_session: Optional[aiohttp.ClientSession] = None

        self.moonraker = MoonrakerClient(MOONRAKER_URL, self.ensure_http_session)
        self.metadata_cache = MetadataCache(self.moonraker)
        self.acquirer = StatusAcquirer(self.moonraker, self.metadata_cache)
        self.realtime = RealtimeChannelSupervisor(
            MOONRAKER_WS_URL, self.ensure_http_session
        )
        self.broadcaster = Broadcaster(self.acquirer)

    async def ensure_http_session(self) -> aiohttp.ClientSession:
        if self.http_session is None or self.http_session.closed:
            timeout = aiohttp.ClientTimeout(total=None, connect=30, sock_read=None)
            self.http_session = aiohttp.ClientSession(timeout=timeout)
        return self.http_session

    async def close(self) -> None:
        await self.broadcaster.stop()
        await self.realtime.stop()
        if self.http_session and not self.http_session.closed:
            await self.http_session.close()
        self.http_session = None


state = AppState()

app = FastAPI(title="Klipper Overlay Bridge", version="1.0.0")
if CORS_ENABLED:
    app.add_middleware(
        CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"]
    )
router = APIRouter(prefix="/api")


# -----------------------------------------------------------------------------
# API Routes (all under /api prefix)
# -----------------------------------------------------------------------------
@router.get("/", response_class=PlainTextResponse)
async def root():
    return "OK"


@router.get("/status")
async def get_status():
    # A disconnected printer is still a successful answer carrying the sentinel.
    try:
        status = await state.acquirer.fetch()
        return JSONResponse({"success": True, "data": status.to_dict()})
    except Exception as e:
        logger.exception("Status request failed: %s", e)
        return JSONResponse(
            {"success": False, "error": "Failed to fetch printer status"},
            status_code=500,
        )


@router.get("/health")
async def health():
    return JSONResponse(
        {
            "status": "ok",
            "moonraker": "connected" if state.acquirer.connected else "disconnected",
            "realtime": state.realtime.state,
            "observers": state.broadcaster.observer_count,
            "timestamp": now_ms(),
        }
    )


@router.post("/gcode")
async def send_gcode(request: Request):
    """Run a single G-code command (e.g. a light macro) on the printer."""
    try:
        body = await request.json()
    except ValueError:
        body = None
    command = body.get("command") if isinstance(body, dict) else None
    if not isinstance(command, str) or not command.strip():
        return JSONResponse(
            {"success": False, "error": "Missing G-code command"}, status_code=400
        )
    command = command.strip()
    try:
        await state.moonraker.run_gcode(command)
    except TRANSPORT_ERRORS as e:
        logger.warning("G-code %r failed: %s", command, e)
        return JSONResponse({"success": False, "error": str(e)}, status_code=502)
    logger.info("G-code sent: %s", command)
    return JSONResponse({"success": True})


app.include_router(router)


@app.get(THUMBNAIL_ROUTE + "/{path:path}")
async def get_thumbnail(path: str):
    if not is_safe_gcode_path(path):
        logger.warning("Rejected thumbnail path %r", path)
        return JSONResponse({"error": "Thumbnail not found"}, status_code=404)
    try:
        body, content_type = await state.moonraker.fetch_file(path)
    except TRANSPORT_ERRORS as e:
        logger.info("Thumbnail %s unavailable: %s", path, e)
        return JSONResponse({"error": "Thumbnail not found"}, status_code=404)
    headers = {"Cache-Control": "public, max-age=300"}
    return Response(content=body, media_type=content_type, headers=headers)


@app.websocket("/ws")
async def status_feed(websocket: WebSocket):
    await websocket.accept()
    await state.broadcaster.connect(websocket)
    try:
        # Clients never send anything meaningful; reading detects the disconnect.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        state.broadcaster.disconnect(websocket)


# Expose /metrics for Prometheus scrapes
@app.get("/metrics")
async def metrics_endpoint():
    content = generate_latest(REGISTRY)
    return Response(content=content, media_type=CONTENT_TYPE_LATEST)


# -----------------------------------------------------------------------------
# Lifecycle
# -----------------------------------------------------------------------------
@app.on_event("startup")
async def on_startup():
    logger.info(
        "Starting app. MOONRAKER_URL=%s | MOONRAKER_WS_URL=%s | BROADCAST_INTERVAL_SECONDS=%s",
        MOONRAKER_URL,
        MOONRAKER_WS_URL,
        BROADCAST_INTERVAL_SECONDS,
    )
    logger.info(
        "Metadata cache: TTL=%ss | MAX_ENTRIES=%s | CORS=%s",
        METADATA_CACHE_TTL_SECONDS,
        METADATA_CACHE_MAX_ENTRIES,
        CORS_ENABLED,
    )
    state.realtime.start()
    state.broadcaster.start()


@app.on_event("shutdown")
async def on_shutdown():
    logger.info("Shutting down...")
    await state.close()


# -----------------------------------------------------------------------------
# Entrypoint
# -----------------------------------------------------------------------------
def main() -> None:
    uvicorn.run("klipper_overlay:app", host="0.0.0.0", port=PORT, reload=False)


if __name__ == "__main__":
    main()
