"""Controller notice handling for the tunnel memory stress test.

Notices are newline-delimited JSON objects emitted by the controller:

    {"noticeType": "Tunnels", "data": {"count": 1}, "timestamp": "..."}

The dispatcher runs on whatever thread the controller emits from. It only
touches the progress counter and the capacity-1 action slots, so it never
waits on the orchestration loop.
"""

from __future__ import annotations

import enum
import json
import random
import threading
import time
from typing import Any, Callable, Optional

from tunnel_memstats import ProgressTracker


NOTICE_TUNNELS = "Tunnels"
NOTICE_INFO = "Info"

PEAK_ESTABLISH_MARKER = "peak concurrent establish tunnels"
PEAK_MEEK_ESTABLISH_MARKER = "peak concurrent meek establish tunnels"


class NoticeError(ValueError):
    pass


class TestMode(enum.Enum):
    RECONNECT_TUNNEL = "reconnect"
    RESTART_CONTROLLER = "restart"
    RECONNECT_AND_RESTART = "reconnect-and-restart"


class PendingAction(enum.Enum):
    RECONNECT = "reconnect"
    RESTART = "restart"


def get_notice(notice: bytes | str) -> tuple[str, dict[str, Any]]:
    """Decode one notice line into (notice_type, payload)."""
    try:
        obj = json.loads(notice)
    except (ValueError, UnicodeDecodeError) as e:
        raise NoticeError(f"invalid notice JSON: {e}") from e
    if not isinstance(obj, dict):
        raise NoticeError("notice is not an object")

    notice_type = obj.get("noticeType")
    if not isinstance(notice_type, str) or not notice_type:
        raise NoticeError("notice has no noticeType")

    payload = obj.get("data", {})
    if not isinstance(payload, dict):
        raise NoticeError(f"{notice_type} notice data is not an object")
    return notice_type, payload


class NoticeReceiver:
    """Split a byte stream into lines and hand each complete line to callback.

    Partial lines are buffered until their newline arrives.
    """

    def __init__(self, callback: Callable[[bytes], None]):
        self.callback = callback
        self._buf = b""
        self._lock = threading.Lock()

    def write(self, data: bytes) -> int:
        with self._lock:
            self._buf += data
            lines: list[bytes] = []
            while b"\n" in self._buf:
                line, self._buf = self._buf.split(b"\n", 1)
                line = line.rstrip(b"\r")
                if line:
                    lines.append(line)
        for line in lines:
            self.callback(line)
        return len(data)


class ActionSlots:
    """One capacity-1 slot per PendingAction kind.

    post() never blocks: a request for a kind that is already pending is
    dropped. The orchestration loop waits on the slots and takes actions one
    at a time.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._pending: set[PendingAction] = set()
        self.posted = {a: 0 for a in PendingAction}
        self.dropped = {a: 0 for a in PendingAction}

    def post(self, action: PendingAction) -> bool:
        with self._cond:
            if action in self._pending:
                self.dropped[action] += 1
                return False
            self._pending.add(action)
            self.posted[action] += 1
            self._cond.notify_all()
            return True

    def take(self, action: PendingAction) -> bool:
        with self._cond:
            if action not in self._pending:
                return False
            self._pending.discard(action)
            return True

    def pending(self) -> frozenset[PendingAction]:
        with self._cond:
            return frozenset(self._pending)

    def wait(self, timeout: Optional[float]) -> frozenset[PendingAction]:
        with self._cond:
            self._cond.wait_for(lambda: bool(self._pending), timeout=timeout)
            return frozenset(self._pending)


class NoticeDispatcher:
    """Classify controller notices and request reconnect/restart actions."""

    def __init__(
        self,
        mode: TestMode,
        tracker: ProgressTracker,
        slots: ActionSlots,
        *,
        settle_delay_s: float = 0.25,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.mode = mode
        self.tracker = tracker
        self.slots = slots
        self.settle_delay_s = settle_delay_s
        self._rng = rng or random.Random()
        self._sleep = sleep

    def __call__(self, notice: bytes) -> None:
        try:
            notice_type, payload = get_notice(notice)
        except NoticeError:
            return

        if notice_type == NOTICE_TUNNELS:
            self._on_tunnels(payload)
        elif notice_type == NOTICE_INFO:
            self._on_info(payload)

    def choose_action(self) -> PendingAction:
        if self.mode is TestMode.RESTART_CONTROLLER:
            return PendingAction.RESTART
        if self.mode is TestMode.RECONNECT_AND_RESTART:
            return PendingAction.RESTART if self._rng.random() < 0.5 else PendingAction.RECONNECT
        return PendingAction.RECONNECT

    def _on_tunnels(self, payload: dict[str, Any]) -> None:
        count = payload.get("count")
        if isinstance(count, bool) or not isinstance(count, (int, float)):
            return
        # Same as int(count) <= 0 for fractional counts, and also drops NaN.
        if not count >= 1:
            return

        self.tracker.increment()

        # Let the new tunnel carry some traffic before tearing it down.
        if self.settle_delay_s > 0:
            self._sleep(self.settle_delay_s)

        self.slots.post(self.choose_action())

    def _on_info(self, payload: dict[str, Any]) -> None:
        message = payload.get("message")
        if not isinstance(message, str):
            return
        if PEAK_ESTABLISH_MARKER in message:
            print(message, end=", ", flush=True)
        elif PEAK_MEEK_ESTABLISH_MARKER in message:
            print(message, flush=True)
