"""Tunnel controller lifecycle for the memory stress test.

A controller is anything with:

    run(stop_event)                  # blocks until stop_event is set
    terminate_next_active_tunnel()   # drop one tunnel, keep running

built by a factory `factory(config, notice_receiver)`. The receiver is called
with one JSON notice line (bytes) at a time.

Controllers shipped here:
- SubprocessController: runs an external tunnel client and reads its notices
  from stdout/stderr.
- SimulatedController: in-process stand-in for dry runs.
"""

from __future__ import annotations

import enum
import functools
import importlib
import json
import os
import random
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from tunnel_memstats import MemoryTestError
from tunnel_notices import NOTICE_INFO, NOTICE_TUNNELS, PEAK_ESTABLISH_MARKER, PEAK_MEEK_ESTABLISH_MARKER, NoticeReceiver


NoticeCallback = Callable[[bytes], None]

CONTROLLER_CONFIG_FILENAME = "controller.config"

DEFAULT_RECONNECT_SIGNAL = signal.SIGUSR2 if hasattr(signal, "SIGUSR2") else signal.SIGTERM
DEFAULT_STOP_GRACE_S = 5.0


class Controller(Protocol):
    def run(self, stop: threading.Event) -> None: ...

    def terminate_next_active_tunnel(self) -> None: ...


ControllerFactory = Callable[[Mapping[str, Any], NoticeCallback], Controller]


class ControllerConstructionError(MemoryTestError):
    pass


class ControllerState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class ControllerHandle:
    controller: Controller
    stop: threading.Event
    thread: threading.Thread


class ControllerManager:
    """Owns at most one running controller.

    Only the orchestration loop calls start/stop/restart, so no two
    controllers ever run at the same time.
    """

    def __init__(self, factory: ControllerFactory, config: Mapping[str, Any], notice_receiver: NoticeCallback):
        self.factory = factory
        self.config = config
        self.notice_receiver = notice_receiver
        self.state = ControllerState.STOPPED
        self.starts = 0
        self._handle: Optional[ControllerHandle] = None

    @property
    def handle(self) -> Optional[ControllerHandle]:
        return self._handle

    def start(self) -> None:
        if self.state is not ControllerState.STOPPED:
            raise RuntimeError(f"cannot start controller in state {self.state.value}")

        self.state = ControllerState.STARTING
        try:
            controller = self.factory(self.config, self.notice_receiver)
        except Exception as e:
            self.state = ControllerState.STOPPED
            raise ControllerConstructionError(f"error creating controller: {e}") from e

        self.starts += 1
        stop = threading.Event()
        thread = threading.Thread(
            target=controller.run,
            args=(stop,),
            name=f"controller-{self.starts}",
            daemon=True,
        )
        self._handle = ControllerHandle(controller=controller, stop=stop, thread=thread)
        thread.start()
        self.state = ControllerState.RUNNING

    def stop(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self.state = ControllerState.STOPPING
        handle.stop.set()
        handle.thread.join()
        self._handle = None
        self.state = ControllerState.STOPPED

    def restart(self) -> None:
        self.stop()
        self.start()

    def terminate_next_active_tunnel(self) -> None:
        if self._handle is None:
            return
        self._handle.controller.terminate_next_active_tunnel()


def load_controller_factory(spec: str) -> ControllerFactory:
    """Resolve 'package.module:attribute' to a controller factory."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Controller factory must look like module:attribute, got {spec!r}")
    module = importlib.import_module(module_name)
    obj: Any = module
    for part in attr.split("."):
        obj = getattr(obj, part)
    if not callable(obj):
        raise TypeError(f"{spec} is not callable")
    return obj


def _encode_notice(notice_type: str, **data: Any) -> bytes:
    rec = {
        "noticeType": notice_type,
        "data": data,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    }
    return json.dumps(rec, sort_keys=True).encode("utf-8") + b"\n"


class SubprocessController:
    """Run a tunnel client binary as a child process.

    The controller config is written as JSON to <work_dir>/controller.config
    and passed as `--config <path>`. Every line the child writes to stdout or
    stderr goes through a NoticeReceiver. Terminating the next active tunnel
    sends `reconnect_signal` to the child.
    """

    def __init__(
        self,
        config: Mapping[str, Any],
        notice_receiver: NoticeCallback,
        *,
        command: Sequence[str],
        work_dir: str,
        reconnect_signal: int = DEFAULT_RECONNECT_SIGNAL,
        stop_grace_s: float = DEFAULT_STOP_GRACE_S,
    ):
        if not command:
            raise ValueError("SubprocessController requires a command")
        if shutil.which(command[0]) is None:
            raise FileNotFoundError(f"controller command not found or not executable: {command[0]}")
        self.command = list(command)
        self.reconnect_signal = reconnect_signal
        self.stop_grace_s = stop_grace_s
        self.notices = NoticeReceiver(notice_receiver)

        self.config_path = os.path.join(work_dir, CONTROLLER_CONFIG_FILENAME)
        with open(self.config_path, "w", encoding="utf-8") as f:
            json.dump(dict(config), f, indent=2, sort_keys=True)

        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen[bytes]] = None

    def run(self, stop: threading.Event) -> None:
        argv = [*self.command, "--config", self.config_path]
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
        with self._lock:
            self._proc = proc

        pump = threading.Thread(target=self._pump, args=(proc,), name="controller-notices", daemon=True)
        pump.start()
        try:
            while not stop.wait(0.1):
                if proc.poll() is not None:
                    print(f"[memtest] NOTE: controller process exited with code {proc.returncode}", flush=True)
                    break
        finally:
            with self._lock:
                self._proc = None
            self._terminate(proc)
            pump.join(timeout=self.stop_grace_s)
            if proc.stdout is not None:
                proc.stdout.close()

    def _pump(self, proc: subprocess.Popen[bytes]) -> None:
        assert proc.stdout is not None
        for chunk in iter(lambda: proc.stdout.read1(4096), b""):
            self.notices.write(chunk)

    def _terminate(self, proc: subprocess.Popen[bytes]) -> None:
        if proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=self.stop_grace_s)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()

    def terminate_next_active_tunnel(self) -> None:
        with self._lock:
            proc = self._proc
            if proc is not None and proc.poll() is None:
                proc.send_signal(self.reconnect_signal)


def subprocess_controller_factory(
    command: Sequence[str],
    work_dir: str,
    *,
    reconnect_signal: int = DEFAULT_RECONNECT_SIGNAL,
) -> ControllerFactory:
    return functools.partial(
        SubprocessController,
        command=list(command),
        work_dir=work_dir,
        reconnect_signal=reconnect_signal,
    )


def parse_signal(name: str) -> int:
    """'SIGUSR2', 'usr2' or '12' -> signal number."""
    text = (name or "").strip()
    if text.isdigit():
        return int(text)
    key = text.upper()
    if not key.startswith("SIG"):
        key = "SIG" + key
    sig = getattr(signal, key, None)
    if not isinstance(sig, signal.Signals):
        raise ValueError(f"Unknown signal: {name!r}")
    return int(sig)


class SimulatedController:
    """In-process controller that fakes tunnel establishment.

    Each tunnel comes up after a random connect delay and stays up until
    terminate_next_active_tunnel() is called. A small buffer is held per
    tunnel so restarts and reconnects move some memory around.
    """

    def __init__(
        self,
        config: Mapping[str, Any],
        notice_receiver: NoticeCallback,
        *,
        connect_delay_s: tuple[float, float] = (0.02, 0.1),
        tunnel_buffer_bytes: int = 64 * 1024,
        rng: Optional[random.Random] = None,
    ):
        self.config = dict(config)
        self.notice_receiver = notice_receiver
        self.connect_delay_s = connect_delay_s
        self.tunnel_buffer_bytes = tunnel_buffer_bytes
        self._rng = rng or random.Random()
        self._terminate = threading.Event()
        self._tunnel: Optional[bytearray] = None
        self.established = 0

    def _emit(self, notice_type: str, **data: Any) -> None:
        self.notice_receiver(_encode_notice(notice_type, **data))

    def run(self, stop: threading.Event) -> None:
        while not stop.is_set():
            if stop.wait(self._rng.uniform(*self.connect_delay_s)):
                break

            self._terminate.clear()
            self._tunnel = bytearray(self.tunnel_buffer_bytes)
            self.established += 1
            self._emit(NOTICE_INFO, message=f"{PEAK_ESTABLISH_MARKER}: {self.established}")
            self._emit(NOTICE_INFO, message=f"{PEAK_MEEK_ESTABLISH_MARKER}: 0")
            self._emit(NOTICE_TUNNELS, count=1)

            while not stop.is_set() and not self._terminate.wait(0.05):
                pass
            self._terminate.clear()
            self._tunnel = None
            if not stop.is_set():
                self._emit(NOTICE_TUNNELS, count=0)

    def terminate_next_active_tunnel(self) -> None:
        if self._tunnel is not None:
            self._terminate.set()


def simulated_controller_factory(**kwargs: Any) -> ControllerFactory:
    return functools.partial(SimulatedController, **kwargs)


def describe_factory(factory: ControllerFactory) -> str:
    target = factory.func if isinstance(factory, functools.partial) else factory
    return getattr(target, "__qualname__", None) or repr(target)
