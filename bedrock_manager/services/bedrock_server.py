# bedrock_manager/services/bedrock_server.py
"""
Bedrock Server Process Supervisor

Handles:
- Starting/stopping one bedrock_server process per instance
- Console capture into a bounded per-process log buffer
- Command execution over stdin
- Crash detection and rate-limited auto-restart

Per instance:
NOT_INSTALLED → STOPPED → RUNNING → STOPPING → STOPPED
                          RUNNING → CRASHED → RESTART_SCHEDULED → RUNNING
                                            → STOPPED (auto-restart exhausted)
"""

import asyncio
import logging
import os
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import psutil

from bedrock_manager.services import server_layout
from bedrock_manager.services.errors import AlreadyRunning, NotInstalled, NotRunning

logger = logging.getLogger(__name__)

LOG_BUFFER_SIZE = 500
START_GRACE_SEC = 2.0
STOP_TERMINATE_AFTER_SEC = 5.0
STOP_KILL_AFTER_SEC = 10.0
KILL_CONFIRM_SEC = 5.0
READER_DRAIN_SEC = 2.0
STRAY_TERMINATE_WAIT_SEC = 3.0
STOP_COMMAND = "stop"

# Crash-restart policy
CRASH_WINDOW_SEC = 60.0
FRESH_CRASH_RESTART_DELAY_SEC = 5.0
REPEAT_CRASH_RESTART_DELAY_SEC = 10.0
MAX_CRASH_RESTARTS = 3


def _timestamp() -> str:
    return datetime.now().strftime("%H:%M:%S")


@dataclass
class RunningProcess:
    """A live bedrock_server process. Discarded once its exit is confirmed."""
    instance_id: int
    process: asyncio.subprocess.Process
    port: int
    auto_restart: bool = True
    crash_count: int = 0
    last_crash: Optional[float] = None
    log_buffer: deque = field(default_factory=lambda: deque(maxlen=LOG_BUFFER_SIZE))
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    exit_code: Optional[int] = None
    reader_tasks: List[asyncio.Task] = field(default_factory=list)
    watcher_task: Optional[asyncio.Task] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    def append_log(self, message: str) -> dict:
        entry = {"time": _timestamp(), "message": message}
        self.log_buffer.append(entry)
        return entry


def plan_crash_restart(crash_count: int, last_crash: Optional[float], now: float) -> Tuple[Optional[float], int]:
    """
    Decide what to do after an abnormal exit.

    Returns (restart delay in seconds or None to give up, new crash count).
    A crash more than CRASH_WINDOW_SEC after the previous one opens a new
    episode; within an episode only MAX_CRASH_RESTARTS - 1 quick restarts
    are attempted.
    """
    count = crash_count + 1
    if last_crash is None or now - last_crash > CRASH_WINDOW_SEC:
        return FRESH_CRASH_RESTART_DELAY_SEC, 1
    if count < MAX_CRASH_RESTARTS:
        return REPEAT_CRASH_RESTART_DELAY_SEC, count
    return None, count


def _kill_stray_processes(executable: Path) -> int:
    """Terminate leftover processes running this instance's executable."""
    target = str(executable)
    own_pid = os.getpid()
    strays = []
    for proc in psutil.process_iter(["pid", "cmdline"]):
        try:
            cmdline = proc.info.get("cmdline") or []
            if proc.pid != own_pid and target in cmdline:
                proc.terminate()
                strays.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    if strays:
        _, alive = psutil.wait_procs(strays, timeout=STRAY_TERMINATE_WAIT_SEC)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
        logger.warning("Terminated %s stray process(es) for %s", len(strays), target)
    return len(strays)


class BedrockSupervisor:
    """Owns the registry of running servers. One instance per application."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._processes: Dict[int, RunningProcess] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._auto_restart: Dict[int, bool] = {}
        self._pending_restarts: Dict[int, asyncio.Task] = {}
        self._clock = clock

    # ------------------------------------------------------------------
    # Registry & queries
    # ------------------------------------------------------------------

    def instance_lock(self, instance_id: int) -> asyncio.Lock:
        """Serializes lifecycle operations on one instance."""
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[instance_id] = lock
        return lock

    def is_installed(self, instance_id: int) -> bool:
        return server_layout.is_installed(instance_id)

    def is_running(self, instance_id: int) -> bool:
        return instance_id in self._processes

    def running_ids(self) -> List[int]:
        return sorted(self._processes)

    def get_process(self, instance_id: int) -> Optional[RunningProcess]:
        return self._processes.get(instance_id)

    def get_logs(self, instance_id: int, lines: Optional[int] = None) -> list:
        running = self._processes.get(instance_id)
        if running is None:
            return []
        entries = list(running.log_buffer)
        if lines is not None:
            return entries[-lines:] if lines > 0 else []
        return entries

    def has_pending_restart(self, instance_id: int) -> bool:
        return instance_id in self._pending_restarts

    def is_auto_restart_enabled(self, instance_id: int) -> bool:
        return self._auto_restart.get(instance_id, False)

    def set_auto_restart(self, instance_id: int, enabled: bool) -> None:
        self._auto_restart[instance_id] = enabled
        running = self._processes.get(instance_id)
        if running is not None:
            running.auto_restart = enabled
        if not enabled:
            self._cancel_pending_restart(instance_id)

    # ------------------------------------------------------------------
    # Server control
    # ------------------------------------------------------------------

    async def start_server(self, instance_id: int, port: int, auto_restart: bool = True) -> dict:
        """Start an installed server; an operator start resets crash tracking."""
        self._cancel_pending_restart(instance_id)
        return await self._start(instance_id, port, auto_restart)

    async def _start(
        self,
        instance_id: int,
        port: int,
        auto_restart: bool,
        crash_count: int = 0,
        last_crash: Optional[float] = None,
    ) -> dict:
        async with self.instance_lock(instance_id):
            if instance_id in self._processes:
                return AlreadyRunning("Server is already running").to_result()

            executable = server_layout.executable_path(instance_id)
            if not executable.exists():
                return NotInstalled("Bedrock server not installed. Please install first.").to_result()

            try:
                await asyncio.to_thread(_kill_stray_processes, executable)
            except Exception as e:
                logger.debug("Stray process cleanup failed for server %s: %s", instance_id, e)

            server_dir = server_layout.server_dir(instance_id)
            env = dict(os.environ)
            env["LD_LIBRARY_PATH"] = str(server_dir)

            try:
                process = await asyncio.create_subprocess_exec(
                    str(executable),
                    cwd=str(server_dir),
                    env=env,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                logger.error("Failed to spawn server %s: %s", instance_id, e)
                return {"success": False, "error": f"Failed to start server: {e}", "error_code": "spawn_failed"}

            self._auto_restart[instance_id] = auto_restart
            running = RunningProcess(
                instance_id=instance_id,
                process=process,
                port=port,
                auto_restart=auto_restart,
                crash_count=crash_count,
                last_crash=last_crash,
            )
            running.append_log("[Manager] Starting Bedrock server...")
            self._processes[instance_id] = running
            running.reader_tasks = [
                asyncio.create_task(self._pump_output(running, process.stdout, is_error=False)),
                asyncio.create_task(self._pump_output(running, process.stderr, is_error=True)),
            ]
            running.watcher_task = asyncio.create_task(self._watch_exit(running))
            logger.info("Server %s spawned (pid %s, port %s)", instance_id, process.pid, port)

        exited_early = await self._wait_for_exit(running, START_GRACE_SEC)
        if exited_early or process.returncode is not None or self._processes.get(instance_id) is not running:
            return {
                "success": False,
                "error": "Server failed to start",
                "error_code": "process_exited_early",
                "exit_code": running.exit_code,
            }
        return {"success": True, "message": "Server started successfully", "pid": process.pid}

    async def stop_server(self, instance_id: int) -> dict:
        """Graceful stop, escalating to SIGTERM after 5s and SIGKILL after 10s."""
        async with self.instance_lock(instance_id):
            running = self._processes.get(instance_id)
            if running is None:
                if self._cancel_pending_restart(instance_id):
                    self._auto_restart[instance_id] = False
                    logger.info("Cancelled pending auto-restart for server %s", instance_id)
                    return {"success": True, "message": "Pending auto-restart cancelled"}
                return NotRunning("Server is not running").to_result()

            self._auto_restart[instance_id] = False
            running.auto_restart = False
            self._cancel_pending_restart(instance_id)

            running.append_log("[Manager] Stopping Bedrock server...")
            await self._write_line(running, STOP_COMMAND)

            if not await self._wait_for_exit(running, STOP_TERMINATE_AFTER_SEC):
                logger.info("Server %s still running after %ss, sending SIGTERM", instance_id, STOP_TERMINATE_AFTER_SEC)
                self._signal(running, kill=False)

                if not await self._wait_for_exit(running, STOP_KILL_AFTER_SEC - STOP_TERMINATE_AFTER_SEC):
                    logger.warning("Force killing server %s (pid %s)", instance_id, running.pid)
                    self._signal(running, kill=True)

                    if not await self._wait_for_exit(running, KILL_CONFIRM_SEC):
                        return {
                            "success": False,
                            "error": "Server did not exit after SIGKILL",
                            "error_code": "stop_failed",
                        }

            if self._processes.get(instance_id) is running:
                del self._processes[instance_id]
            logger.info("Server %s stopped", instance_id)
            return {"success": True, "message": "Server stopped successfully"}

    async def send_command(self, instance_id: int, command: str) -> dict:
        """Write one console line. Fire-and-forget: no response is awaited."""
        running = self._processes.get(instance_id)
        if running is None:
            return NotRunning("Server is not running").to_result()

        if not command or not command.strip() or "\n" in command or "\r" in command:
            return {"success": False, "error": "Command must be a single non-empty line", "error_code": "invalid_command"}

        if not await self._write_line(running, command):
            return {"success": False, "error": "Failed to write to server console", "error_code": "write_failed"}

        running.append_log(f"> {command}")
        return {"success": True, "message": "Command sent"}

    async def shutdown(self) -> None:
        """Cancel scheduled restarts and stop everything (application exit)."""
        for instance_id in list(self._pending_restarts):
            self._auto_restart[instance_id] = False
            self._cancel_pending_restart(instance_id)

        instance_ids = self.running_ids()
        if not instance_ids:
            return
        results = await asyncio.gather(
            *(self.stop_server(instance_id) for instance_id in instance_ids),
            return_exceptions=True,
        )
        for instance_id, result in zip(instance_ids, results):
            if isinstance(result, Exception) or not result.get("success"):
                logger.error("Failed to stop server %s during shutdown: %s", instance_id, result)

    # ------------------------------------------------------------------
    # Process I/O
    # ------------------------------------------------------------------

    @staticmethod
    async def _write_line(running: RunningProcess, line: str) -> bool:
        stdin = running.process.stdin
        if stdin is None or stdin.is_closing():
            return False
        try:
            stdin.write(f"{line}\n".encode("utf-8"))
            await stdin.drain()
            return True
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning("Console write to server %s failed: %s", running.instance_id, e)
            return False

    @staticmethod
    def _signal(running: RunningProcess, kill: bool) -> None:
        if running.process.returncode is not None:
            return
        try:
            if kill:
                running.process.kill()
            else:
                running.process.terminate()
        except ProcessLookupError:
            pass

    @staticmethod
    async def _wait_for_exit(running: RunningProcess, timeout: float) -> bool:
        try:
            await asyncio.wait_for(running.exited.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    @staticmethod
    async def _pump_output(running: RunningProcess, stream: Optional[asyncio.StreamReader], is_error: bool):
        if stream is None:
            return
        prefix = "ERROR: " if is_error else ""
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the stream limit; the reader already discarded it
                running.append_log(f"{prefix}[line too long, dropped]")
                continue
            if not raw:
                break
            message = raw.decode("utf-8", errors="replace").rstrip()
            if not message:
                continue
            running.append_log(f"{prefix}{message}")
            logger.debug("[Server %s] %s%s", running.instance_id, prefix, message)

    # ------------------------------------------------------------------
    # Exit handling & crash recovery
    # ------------------------------------------------------------------

    async def _watch_exit(self, running: RunningProcess):
        code = await running.process.wait()
        if running.reader_tasks:
            _, pending = await asyncio.wait(running.reader_tasks, timeout=READER_DRAIN_SEC)
            for task in pending:
                task.cancel()

        running.exit_code = code
        running.exited.set()
        logger.info("Server %s exited with code %s", running.instance_id, code)
        await self._handle_exit(running, code)

    async def _handle_exit(self, running: RunningProcess, code: int):
        instance_id = running.instance_id
        async with self.instance_lock(instance_id):
            if self._processes.get(instance_id) is running:
                del self._processes[instance_id]

            if code == 0 or not self._auto_restart.get(instance_id, False):
                return

            now = self._clock()
            delay, crash_count = plan_crash_restart(running.crash_count, running.last_crash, now)
            if delay is None:
                logger.warning("Server %s crashed too many times, disabling auto-restart", instance_id)
                self._auto_restart[instance_id] = False
                return

            if crash_count == 1:
                logger.warning("Server %s crashed, attempting auto-restart in %ss", instance_id, delay)
            else:
                logger.warning(
                    "Server %s crashed again, attempting restart %s/%s in %ss",
                    instance_id, crash_count, MAX_CRASH_RESTARTS, delay,
                )
            self._schedule_restart(instance_id, running.port, delay, crash_count, now)

    def _schedule_restart(self, instance_id: int, port: int, delay: float, crash_count: int, last_crash: float):
        self._cancel_pending_restart(instance_id)
        self._pending_restarts[instance_id] = asyncio.create_task(
            self._restart_later(instance_id, port, delay, crash_count, last_crash)
        )

    def _cancel_pending_restart(self, instance_id: int) -> bool:
        task = self._pending_restarts.pop(instance_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def _restart_later(self, instance_id: int, port: int, delay: float, crash_count: int, last_crash: float):
        current = asyncio.current_task()
        try:
            await asyncio.sleep(delay)
            if not self._auto_restart.get(instance_id, False):
                logger.info("Auto-restart disabled for server %s, skipping scheduled restart", instance_id)
                return

            # No await between here and acquiring the instance lock in _start,
            # so a stop() that misses the pending marker sees the new process.
            if self._pending_restarts.get(instance_id) is current:
                del self._pending_restarts[instance_id]

            result = await self._start(instance_id, port, True, crash_count, last_crash)
            if not result.get("success"):
                logger.warning("Auto-restart of server %s failed: %s", instance_id, result.get("error"))
        finally:
            if self._pending_restarts.get(instance_id) is current:
                del self._pending_restarts[instance_id]
