import os
import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, List, Iterable, Mapping, Callable, Deque

import aiohttp

# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
OVERLAY_URL = os.getenv("OVERLAY_URL", "http://localhost:8080").rstrip("/")
# "push" keeps the bridge websocket open; "poll" hits /api/status periodically.
OVERLAY_MODE = os.getenv("OVERLAY_MODE", "push")
REFRESH_INTERVAL_SECONDS = int(os.getenv("REFRESH_INTERVAL", "1000")) / 1000.0
POLL_TIMEOUT_SECONDS = float(os.getenv("POLL_TIMEOUT_SECONDS", "3"))
RECONNECT_DELAY_SECONDS = float(os.getenv("RECONNECT_DELAY_SECONDS", "5"))
HISTORY_MAX_ENTRIES = int(os.getenv("HISTORY_MAX_ENTRIES", "50"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

ACTIVE_STATES = {"printing", "paused"}
UNKNOWN_FILENAME = "Unknown"

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_CANCELLED = "cancelled"
OUTCOMES = (OUTCOME_COMPLETED, OUTCOME_FAILED, OUTCOME_CANCELLED)

EVENT_STARTED = "started"
EVENT_FINISHED = "finished"

logger = logging.getLogger("overlay-client")


# -----------------------------------------------------------------------------
# History
# -----------------------------------------------------------------------------
@dataclass
class LifecycleRecord:
    id: str
    filename: str
    start_time: int
    end_time: int
    duration: int
    state: str = OUTCOME_COMPLETED
    timestamp: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "duration": self.duration,
            "state": self.state,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LifecycleRecord":
        state = data.get("state", OUTCOME_COMPLETED)
        if state not in OUTCOMES:
            raise ValueError(f"unknown outcome {state!r}")
        return cls(
            id=str(data["id"]),
            filename=str(data.get("filename") or UNKNOWN_FILENAME),
            start_time=int(data.get("startTime") or 0),
            end_time=int(data.get("endTime") or 0),
            duration=int(data.get("duration") or 0),
            state=state,
            timestamp=str(data.get("timestamp") or ""),
        )


@dataclass(frozen=True)
class LifecycleEvent:
    kind: str
    filename: Optional[str]
    record: Optional[LifecycleRecord] = None


class PrintHistory:
    """Finished prints, newest first, capped at ``max_entries``.

    Storage is somebody else's job: hand ``to_records()`` to it and rebuild
    with ``from_records()``.
    """

    def __init__(
        self,
        max_entries: int = HISTORY_MAX_ENTRIES,
        records: Iterable[LifecycleRecord] = (),
    ) -> None:
        self.max_entries = max_entries
        # appendleft on a full deque drops the oldest entry from the right.
        self._items: Deque[LifecycleRecord] = deque(
            list(records)[:max_entries], maxlen=max_entries
        )

    def __len__(self) -> int:
        return len(self._items)

    @property
    def items(self) -> List[LifecycleRecord]:
        return list(self._items)

    def add(self, record: LifecycleRecord) -> None:
        self._items.appendleft(record)

    def clear(self) -> None:
        self._items.clear()

    def stats(self) -> Dict[str, Any]:
        total = len(self._items)
        counts = {outcome: 0 for outcome in OUTCOMES}
        for item in self._items:
            counts[item.state] = counts.get(item.state, 0) + 1
        return {
            "total": total,
            "completed": counts[OUTCOME_COMPLETED],
            "failed": counts[OUTCOME_FAILED],
            "cancelled": counts[OUTCOME_CANCELLED],
            # Half-up rounding, so 12.5 reports as 13.
            "success_rate": int(counts[OUTCOME_COMPLETED] / total * 100 + 0.5) if total else 0,
            "total_print_time": sum(item.duration for item in self._items),
        }

    def to_records(self) -> List[Dict[str, Any]]:
        return [item.to_dict() for item in self._items]

    @classmethod
    def from_records(
        cls, data: Iterable[Mapping[str, Any]], max_entries: int = HISTORY_MAX_ENTRIES
    ) -> "PrintHistory":
        records = []
        for entry in data or []:
            try:
                records.append(LifecycleRecord.from_dict(entry))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed history entry: %s", e)
        return cls(max_entries=max_entries, records=records)


# -----------------------------------------------------------------------------
# Lifecycle detection
# -----------------------------------------------------------------------------
def _as_seconds(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return max(0.0, float(value))


class PrintLifecycleTracker:
    """Edge detector over the status snapshots one display client receives.

    A record is written only on the printing/paused -> idle edge. The
    snapshots carry no terminal outcome, so every record is ``completed``.
    Disconnected snapshots are ignored: losing the bridge does not end a print.
    The first snapshot only seeds the state, so joining mid-print emits no
    ``started`` event.
    """

    def __init__(
        self, history: PrintHistory, clock: Callable[[], float] = time.time
    ) -> None:
        self.history = history
        self._clock = clock
        self.last_state: Optional[str] = None
        self.last_filename: Optional[str] = None

    def observe(self, status: Mapping[str, Any]) -> Optional[LifecycleEvent]:
        new_state = status.get("state")
        if not new_state or new_state == "disconnected":
            return None
        filename = status.get("filename") or None

        event = None
        if new_state != self.last_state:
            logger.debug("State: %s -> %s", self.last_state, new_state)
            if self.last_state in ACTIVE_STATES and new_state == "idle":
                record = self._record_finish(status, filename)
                event = LifecycleEvent(EVENT_FINISHED, record.filename, record)
            elif (
                self.last_state is not None
                and self.last_state not in ACTIVE_STATES
                and new_state == "printing"
            ):
                event = LifecycleEvent(EVENT_STARTED, filename)
            self.last_state = new_state

        if new_state in ACTIVE_STATES and filename:
            self.last_filename = filename
        return event

    def _record_finish(
        self, status: Mapping[str, Any], filename: Optional[str]
    ) -> LifecycleRecord:
        now = self._clock()
        end_ms = int(now * 1000)
        duration = int(round(_as_seconds(status.get("printDuration")) * 1000))
        record = LifecycleRecord(
            id=f"print_{end_ms}",
            filename=self.last_filename or filename or UNKNOWN_FILENAME,
            start_time=end_ms - duration,
            end_time=end_ms,
            duration=duration,
            state=OUTCOME_COMPLETED,
            timestamp=datetime.fromtimestamp(now).strftime("%d/%m/%Y %H:%M:%S"),
        )
        self.history.add(record)
        self.last_filename = None
        return record


# -----------------------------------------------------------------------------
# Display session
# -----------------------------------------------------------------------------
class DisplaySession:
    """One display client: its own tracker and history, fed by the bridge."""

    def __init__(
        self,
        base_url: str = OVERLAY_URL,
        history: Optional[PrintHistory] = None,
        mode: str = OVERLAY_MODE,
        poll_interval: float = REFRESH_INTERVAL_SECONDS,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.history = history if history is not None else PrintHistory()
        self.tracker = PrintLifecycleTracker(self.history)
        self.mode = mode
        self.poll_interval = poll_interval
        self.reconnect_delay = reconnect_delay
        self.last_status: Optional[Dict[str, Any]] = None

    @property
    def ws_url(self) -> str:
        return self.base_url.replace("http", "ws", 1) + "/ws"

    def handle_status(self, status: Dict[str, Any]) -> Optional[LifecycleEvent]:
        self.last_status = status
        event = self.tracker.observe(status)
        if event is not None and event.kind == EVENT_FINISHED and event.record:
            logger.info(
                "Print saved: %s (%d s, %s)",
                event.record.filename,
                event.record.duration // 1000,
                event.record.state,
            )
        elif event is not None:
            logger.info("Print started: %s", event.filename or UNKNOWN_FILENAME)
        return event

    def handle_message(self, payload: Any) -> Optional[LifecycleEvent]:
        if not isinstance(payload, dict) or payload.get("type") != "status":
            logger.debug("Ignoring push message: %s", payload)
            return None
        data = payload.get("data")
        if not isinstance(data, dict):
            return None
        return self.handle_status(data)

    async def poll_once(self, session: aiohttp.ClientSession) -> Optional[LifecycleEvent]:
        req_timeout = aiohttp.ClientTimeout(total=POLL_TIMEOUT_SECONDS)
        try:
            async with session.get(
                f"{self.base_url}/api/status", timeout=req_timeout
            ) as resp:
                if resp.status != 200:
                    logger.warning("Status poll answered HTTP %d", resp.status)
                    return None
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning("Status poll failed: %s", e)
            return None
        if not isinstance(body, dict) or not body.get("success"):
            return None
        data = body.get("data")
        if not isinstance(data, dict):
            return None
        return self.handle_status(data)

    async def watch_poll(self, session: aiohttp.ClientSession) -> None:
        while True:
            await self.poll_once(session)
            await asyncio.sleep(self.poll_interval)

    async def watch_push(self, session: aiohttp.ClientSession) -> None:
        while True:
            try:
                async with session.ws_connect(self.ws_url, heartbeat=30) as ws:
                    logger.info("Push channel connected: %s", self.ws_url)
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            try:
                                payload = json.loads(msg.data)
                            except ValueError:
                                logger.warning(
                                    "Skipping non-JSON frame of length %d",
                                    len(msg.data),
                                )
                                continue
                            self.handle_message(payload)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            logger.error("Push channel error: %s", ws.exception())
                            break
                logger.warning("Push channel closed.")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("Push channel connection failed: %s", e)
            logger.info("Reconnecting in %.1f seconds...", self.reconnect_delay)
            await asyncio.sleep(self.reconnect_delay)

    async def watch(self) -> None:
        async with aiohttp.ClientSession() as session:
            if self.mode == "poll":
                await self.watch_poll(session)
            else:
                await self.watch_push(session)


# -----------------------------------------------------------------------------
# Entrypoint
# -----------------------------------------------------------------------------
def main() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    session = DisplaySession()
    logger.info("Watching %s in %s mode", session.base_url, session.mode)
    try:
        asyncio.run(session.watch())
    except KeyboardInterrupt:
        pass
    logger.info("History: %s", session.history.stats())


if __name__ == "__main__":
    main()
