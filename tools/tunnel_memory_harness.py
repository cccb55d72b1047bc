#!/usr/bin/env python3
"""Memory stress test harness for a tunnel controller.

Goals:
- Keep the controller cycling: every time a tunnel is established, either
  drop that tunnel (reconnect) or stop and recreate the whole controller
  (restart), depending on the test mode.
- Sample memory on a fixed interval and fail immediately when it exceeds the
  ceiling.
- Fail when no new tunnel was established between two samples (stall).

Test modes:
- reconnect:              always terminate the next active tunnel
- restart:                always restart the controller
- reconnect-and-restart:  flip a coin for each established tunnel

Typical usage:
  python3 tools/tunnel_memory_harness.py --mode reconnect \\
      --controller subprocess --command "./ConsoleClient" --config controller_test.config
  python3 tools/tunnel_memory_harness.py --mode restart --controller simulated --max-sys-memory 512M

Notes:
- For the most accurate numbers run one mode per process.
- Too many reconnects in a short time can get the client rate limited;
  raise --duration manually for a tougher run.
"""

from __future__ import annotations

import argparse
import enum
import json
import os
import random
import shlex
import sys
import tempfile
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from tunnel_controller import (
    DEFAULT_RECONNECT_SIGNAL,
    ControllerFactory,
    ControllerManager,
    describe_factory,
    load_controller_factory,
    parse_signal,
    simulated_controller_factory,
    subprocess_controller_factory,
)
from tunnel_memstats import (
    MemoryReader,
    MemoryTestError,
    MemoryWatchdog,
    ProcessTreeMemoryReader,
    ProgressTracker,
    format_byte_count,
    parse_byte_count,
)
from tunnel_notices import ActionSlots, NoticeDispatcher, PendingAction, TestMode


DEFAULT_TEST_DURATION_S = 2 * 60.0
DEFAULT_SAMPLE_INTERVAL_S = 10.0
DEFAULT_SETTLE_DELAY_S = 0.25
DEFAULT_MAX_SYS_MEMORY = 11 * 1024 * 1024
# The simulated controller runs in this interpreter, which alone is well over 11M.
DEFAULT_SIMULATED_MAX_SYS_MEMORY = 512 * 1024 * 1024

# Applied on top of the base controller config. Paths are filled in per run.
CONTROLLER_CONFIG_OVERRIDES: dict[str, Any] = {
    "ClientVersion": "999999999",
    "TunnelPoolSize": 1,
    "FetchRemoteServerListRetryPeriodMilliseconds": 250,
    "EstablishTunnelPausePeriodSeconds": 1,
    "ConnectionWorkerPoolSize": 10,
    "DisableLocalSocksProxy": True,
    "DisableLocalHTTPProxy": True,
    "LimitIntensiveConnectionWorkers": 5,
    "LimitMeekBufferSizes": True,
    "StaggerConnectionWorkersMilliseconds": 100,
    "IgnoreHandshakeStatsRegexps": True,
    "EmitDiagnosticNotices": True,
}

# Don't wait for a tactics request.
CLIENT_PARAMETER_OVERRIDES: dict[str, Any] = {
    "TacticsWaitPeriod": "1ms",
}

class LoopEvent(enum.Enum):
    DURATION = "duration"
    SAMPLE = "sample"
    RECONNECT = "reconnect"
    RESTART = "restart"


_ACTION_EVENTS = {
    PendingAction.RECONNECT: LoopEvent.RECONNECT,
    PendingAction.RESTART: LoopEvent.RESTART,
}


@dataclass(frozen=True)
class RunConfig:
    mode: TestMode
    test_duration_s: float = DEFAULT_TEST_DURATION_S
    sample_interval_s: float = DEFAULT_SAMPLE_INTERVAL_S
    settle_delay_s: float = DEFAULT_SETTLE_DELAY_S
    max_sys_memory: int = DEFAULT_MAX_SYS_MEMORY
    controller_config: Mapping[str, Any] = field(default_factory=dict)


def build_controller_config(
    base: Mapping[str, Any],
    data_dir: str,
    extra: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    config = dict(base)
    config.update(CONTROLLER_CONFIG_OVERRIDES)
    config["DataStoreDirectory"] = data_dir
    config["RemoteServerListDownloadFilename"] = os.path.join(data_dir, "server_list_compressed")
    config["UpgradeDownloadFilename"] = os.path.join(data_dir, "upgrade")

    params = config.get("ClientParameters")
    params = dict(params) if isinstance(params, dict) else {}
    params.update(CLIENT_PARAMETER_OVERRIDES)
    config["ClientParameters"] = params

    if extra:
        config.update(extra)
    return config


def parse_override(text: str) -> tuple[str, Any]:
    """KEY=VALUE; VALUE is JSON if it parses, else a plain string."""
    key, sep, raw = text.partition("=")
    key = key.strip()
    if not sep or not key:
        raise ValueError(f"Expected KEY=VALUE, got {text!r}")
    try:
        return key, json.loads(raw)
    except ValueError:
        return key, raw


class MemoryTest:
    """Orchestration loop: the only place that starts, stops or reconnects.

    Each iteration services exactly one ready event: the duration deadline,
    a sample tick, a pending reconnect or a pending restart. Ties are broken
    at random. The controller is stopped on every exit path.
    """

    def __init__(
        self,
        cfg: RunConfig,
        controller_factory: ControllerFactory,
        *,
        memory_reader: MemoryReader,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cfg = cfg
        self.memory_reader = memory_reader
        self._rng = rng or random.Random()
        self._clock = clock

        self.tracker = ProgressTracker()
        self.slots = ActionSlots()
        self.dispatcher = NoticeDispatcher(
            cfg.mode,
            self.tracker,
            self.slots,
            settle_delay_s=cfg.settle_delay_s,
            rng=self._rng,
        )
        self.controller = ControllerManager(controller_factory, cfg.controller_config, self.dispatcher)
        self.watchdog = MemoryWatchdog(cfg.max_sys_memory, self.tracker)

        self.samples = 0
        self.reconnects = 0
        self.restarts = 0

    def _ready(self, now: float, deadline: float, next_tick: float) -> list[LoopEvent]:
        ready: list[LoopEvent] = []
        if now >= deadline:
            ready.append(LoopEvent.DURATION)
        if now >= next_tick:
            ready.append(LoopEvent.SAMPLE)
        for action in sorted(self.slots.pending(), key=lambda a: a.value):
            ready.append(_ACTION_EVENTS[action])
        return ready

    def _next_tick(self, tick: float, now: float) -> float:
        # Late ticks are dropped, not queued.
        tick += self.cfg.sample_interval_s
        while tick <= now:
            tick += self.cfg.sample_interval_s
        return tick

    def run(self) -> int:
        """Run until the duration elapses; return the established-tunnel count.

        Raises MemoryTestError (or a subclass) on the first fatal check.
        """
        start = self._clock()
        deadline = start + self.cfg.test_duration_s
        next_tick = start + self.cfg.sample_interval_s

        self.controller.start()
        try:
            while True:
                now = self._clock()
                ready = self._ready(now, deadline, next_tick)
                if not ready:
                    self.slots.wait(max(0.0, min(deadline, next_tick) - now))
                    continue

                event = ready[0] if len(ready) == 1 else self._rng.choice(ready)
                if event is LoopEvent.DURATION:
                    break
                if event is LoopEvent.SAMPLE:
                    next_tick = self._next_tick(next_tick, now)
                    self.samples += 1
                    self.watchdog.check(self.memory_reader())
                elif event is LoopEvent.RECONNECT:
                    self.slots.take(PendingAction.RECONNECT)
                    self.reconnects += 1
                    self.controller.terminate_next_active_tunnel()
                elif event is LoopEvent.RESTART:
                    self.slots.take(PendingAction.RESTART)
                    self.restarts += 1
                    self.controller.restart()
        finally:
            self.controller.stop()

        return self.tracker.snapshot()


def _load_base_config(path: str) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level JSON value must be an object")
    return data


def _select_controller(args: argparse.Namespace, data_dir: str) -> tuple[ControllerFactory, MemoryReader]:
    if args.controller == "simulated":
        return simulated_controller_factory(), ProcessTreeMemoryReader(include_self=True)
    if args.controller == "subprocess":
        if not args.command:
            raise ValueError("--controller subprocess requires --command")
        factory = subprocess_controller_factory(
            shlex.split(args.command),
            data_dir,
            reconnect_signal=parse_signal(args.reconnect_signal),
        )
        # Only the child process tree hosts the controller.
        return factory, ProcessTreeMemoryReader(include_self=False)
    return load_controller_factory(args.controller), ProcessTreeMemoryReader(include_self=True)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Tunnel controller memory stress test (reconnect/restart cycles + memory ceiling)",
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in TestMode],
        default=TestMode.RECONNECT_TUNNEL.value,
        help="What to do after each established tunnel (default: reconnect)",
    )
    parser.add_argument("--config", default=None, help="Base controller config JSON. The run is skipped if the file is missing.")
    parser.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra controller config override (repeatable; VALUE parsed as JSON when possible)",
    )
    parser.add_argument("--duration", type=float, default=DEFAULT_TEST_DURATION_S, help="Test duration seconds (default: 120)")
    parser.add_argument("--sample-interval", type=float, default=DEFAULT_SAMPLE_INTERVAL_S, help="Memory sample interval seconds (default: 10)")
    parser.add_argument(
        "--settle-delay",
        type=float,
        default=DEFAULT_SETTLE_DELAY_S,
        help="Delay after an established tunnel before requesting the next action (default: 0.25)",
    )
    parser.add_argument(
        "--max-sys-memory",
        default=None,
        help="Memory ceiling in bytes; K/M/G suffixes accepted (default: 11M, 512M for --controller simulated)",
    )
    parser.add_argument(
        "--controller",
        default="simulated",
        help="simulated, subprocess, or a factory import path module:attr (default: simulated)",
    )
    parser.add_argument("--command", default=None, help="Tunnel client command line for --controller subprocess")
    parser.add_argument(
        "--reconnect-signal",
        default=DEFAULT_RECONNECT_SIGNAL.name,
        help=f"Signal sent to the subprocess to drop its active tunnel (default: {DEFAULT_RECONNECT_SIGNAL.name})",
    )

    args = parser.parse_args(argv)

    if args.duration <= 0 or args.sample_interval <= 0:
        print("ERROR: --duration and --sample-interval must be > 0", file=sys.stderr)
        return 2
    if args.settle_delay < 0:
        print("ERROR: --settle-delay must be >= 0", file=sys.stderr)
        return 2
    try:
        if args.max_sys_memory is None:
            max_sys_memory = DEFAULT_SIMULATED_MAX_SYS_MEMORY if args.controller == "simulated" else DEFAULT_MAX_SYS_MEMORY
        else:
            max_sys_memory = parse_byte_count(args.max_sys_memory)
        overrides = dict(parse_override(o) for o in args.overrides)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    base: dict[str, Any] = {}
    if args.config:
        if not os.path.exists(args.config):
            # Mirrors test behaviour: no config, nothing to stress.
            print(f"[memtest] SKIP: controller config not found: {args.config}")
            return 0
        try:
            base = _load_base_config(args.config)
        except ValueError as e:
            print(f"ERROR: error processing configuration file: {e}", file=sys.stderr)
            return 2

    with tempfile.TemporaryDirectory(prefix="tunnel-memory-test-") as data_dir:
        try:
            factory, reader = _select_controller(args, data_dir)
        except (ValueError, ImportError, AttributeError, TypeError) as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 2

        cfg = RunConfig(
            mode=TestMode(args.mode),
            test_duration_s=args.duration,
            sample_interval_s=args.sample_interval,
            settle_delay_s=args.settle_delay,
            max_sys_memory=max_sys_memory,
            controller_config=build_controller_config(base, data_dir, overrides),
        )

        print(f"[memtest] Mode: {cfg.mode.value}")
        print(f"[memtest] Controller: {describe_factory(factory)}")
        print(f"[memtest] Duration: {cfg.test_duration_s:g}s, sample every {cfg.sample_interval_s:g}s")
        print(f"[memtest] Max sys memory: {format_byte_count(cfg.max_sys_memory)}")
        print(f"[memtest] Data dir: {data_dir}", flush=True)

        test = MemoryTest(cfg, factory, memory_reader=reader)
        started = time.monotonic()
        try:
            established = test.run()
        except MemoryTestError as e:
            print(f"[memtest] FAIL: {e}", file=sys.stderr)
            return 1

    print(
        f"[memtest] PASS: {established} tunnels established, {test.reconnects} reconnects, "
        f"{test.restarts} restarts, {test.samples} samples in {time.monotonic() - started:.1f}s"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
