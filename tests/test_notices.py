from __future__ import annotations

import json
import random
import threading

import pytest

import tunnel_notices as notices
from tunnel_memstats import ProgressTracker
from tunnel_notices import ActionSlots, NoticeDispatcher, NoticeError, NoticeReceiver, PendingAction, get_notice


def _notice(notice_type, **data) -> bytes:
    return json.dumps({"noticeType": notice_type, "data": data, "timestamp": "2017-01-01T00:00:00Z"}).encode()


def _dispatcher(mode, *, rng=None):
    tracker = ProgressTracker()
    slots = ActionSlots()
    dispatcher = NoticeDispatcher(mode, tracker, slots, settle_delay_s=0, rng=rng)
    return dispatcher, tracker, slots


def test_get_notice_decodes_type_and_payload():
    assert get_notice(_notice("Tunnels", count=1)) == ("Tunnels", {"count": 1})


def test_get_notice_defaults_missing_data():
    assert get_notice(b'{"noticeType": "Exiting"}') == ("Exiting", {})


@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        b"[1, 2]",
        b'{"data": {}}',
        b'{"noticeType": "", "data": {}}',
        b'{"noticeType": "Tunnels", "data": [1]}',
        b"\xff\xfe",
    ],
)
def test_get_notice_rejects_malformed(raw):
    with pytest.raises(NoticeError):
        get_notice(raw)


def test_receiver_reassembles_lines_across_writes():
    got = []
    receiver = NoticeReceiver(got.append)

    receiver.write(b'{"noticeType": "Info"')
    assert got == []
    receiver.write(b', "data": {}}\r\n{"noticeType": "Tun')
    receiver.write(b'nels", "data": {"count": 1}}\n\n')

    assert [get_notice(line)[0] for line in got] == ["Info", "Tunnels"]


def test_slots_coalesce_same_kind():
    slots = ActionSlots()
    assert slots.post(PendingAction.RESTART)
    assert not slots.post(PendingAction.RESTART)
    assert slots.post(PendingAction.RECONNECT)

    assert slots.pending() == {PendingAction.RESTART, PendingAction.RECONNECT}
    assert slots.dropped[PendingAction.RESTART] == 1

    assert slots.take(PendingAction.RESTART)
    assert not slots.take(PendingAction.RESTART)
    assert slots.pending() == {PendingAction.RECONNECT}


def test_slots_wait_times_out_when_empty():
    assert ActionSlots().wait(0.01) == frozenset()


def test_slots_wait_wakes_on_post():
    slots = ActionSlots()
    timer = threading.Timer(0.05, slots.post, args=(PendingAction.RECONNECT,))
    timer.start()
    try:
        assert slots.wait(5.0) == {PendingAction.RECONNECT}
    finally:
        timer.cancel()


def test_reconnect_mode_only_posts_reconnect():
    dispatcher, tracker, slots = _dispatcher(notices.TestMode.RECONNECT_TUNNEL)
    for _ in range(50):
        dispatcher(_notice("Tunnels", count=1))
        assert slots.pending() == {PendingAction.RECONNECT}
        slots.take(PendingAction.RECONNECT)

    assert tracker.snapshot() == 50
    assert slots.posted[PendingAction.RESTART] == 0


def test_restart_mode_only_posts_restart():
    dispatcher, tracker, slots = _dispatcher(notices.TestMode.RESTART_CONTROLLER)
    for _ in range(50):
        dispatcher(_notice("Tunnels", count=1))
        assert slots.pending() == {PendingAction.RESTART}
        slots.take(PendingAction.RESTART)

    assert slots.posted[PendingAction.RECONNECT] == 0


def test_mixed_mode_splits_roughly_evenly():
    dispatcher, _, slots = _dispatcher(notices.TestMode.RECONNECT_AND_RESTART, rng=random.Random(1234))
    for _ in range(1000):
        dispatcher(_notice("Tunnels", count=1))
        for action in slots.pending():
            slots.take(action)

    restarts = slots.posted[PendingAction.RESTART]
    reconnects = slots.posted[PendingAction.RECONNECT]
    assert restarts + reconnects == 1000
    assert 400 < restarts < 600


def test_burst_leaves_at_most_one_pending_per_kind():
    dispatcher, tracker, slots = _dispatcher(notices.TestMode.RESTART_CONTROLLER)
    for _ in range(10):
        dispatcher(_notice("Tunnels", count=2))

    assert tracker.snapshot() == 10
    assert slots.posted[PendingAction.RESTART] == 1
    assert slots.dropped[PendingAction.RESTART] == 9


@pytest.mark.parametrize(
    "raw",
    [
        _notice("Tunnels", count=0),
        _notice("Tunnels", count=0.5),
        _notice("Tunnels"),
        _notice("Tunnels", count="1"),
        _notice("Tunnels", count=True),
        _notice("ActiveTunnel", count=1),
        b"garbage",
    ],
)
def test_ignored_notices_have_no_effect(raw):
    dispatcher, tracker, slots = _dispatcher(notices.TestMode.RECONNECT_TUNNEL)
    dispatcher(raw)
    assert tracker.snapshot() == 0
    assert slots.pending() == frozenset()


def test_settle_delay_runs_before_posting():
    calls = []
    tracker = ProgressTracker()
    slots = ActionSlots()

    def sleep(seconds):
        calls.append((seconds, tracker.snapshot(), slots.pending()))

    dispatcher = NoticeDispatcher(notices.TestMode.RECONNECT_TUNNEL, tracker, slots, settle_delay_s=0.25, sleep=sleep)
    dispatcher(_notice("Tunnels", count=1))

    assert calls == [(0.25, 1, frozenset())]
    assert slots.pending() == {PendingAction.RECONNECT}


def test_info_peak_concurrency_messages_are_printed(capsys):
    dispatcher, _, _ = _dispatcher(notices.TestMode.RECONNECT_TUNNEL)
    dispatcher(_notice("Info", message="peak concurrent establish tunnels: 7"))
    dispatcher(_notice("Info", message="peak concurrent meek establish tunnels: 2"))
    dispatcher(_notice("Info", message="something else"))
    dispatcher(_notice("Info", message=42))

    assert capsys.readouterr().out == "peak concurrent establish tunnels: 7, peak concurrent meek establish tunnels: 2\n"


def test_fractional_tunnel_count_truncates():
    dispatcher, tracker, slots = _dispatcher(notices.TestMode.RECONNECT_TUNNEL)
    dispatcher(_notice("Tunnels", count=1.0))
    dispatcher(_notice("Tunnels", count=0.99))

    assert tracker.snapshot() == 1
    assert slots.pending() == {PendingAction.RECONNECT}
