"""Ownership of every OS process devrun starts.

Three ways to run a command:

* run_sync / run_captured - run to completion and return stdout
* run_inherited - run to completion with the terminal's stdio
* start_managed - long-running process whose output is prefixed and re-colored
  line by line, optionally restarted when it fails

Managed processes live in a process table addressed by ProcessHandle. When a
process is restarted the table entry gets the new OS process and the handle
held by the caller stays valid.

Children run in their own session (POSIX) or process group (Windows), so
terminal signals reach devrun only and termination is always initiated here.
"""

from __future__ import annotations

import asyncio
import codecs
import itertools
import os
import signal
import subprocess
import sys
from dataclasses import dataclass, field
from typing import Callable, NewType, Optional, Sequence, TextIO

import psutil

from .errors import CommandFailed
from .formatting import StreamState, flush, format_chunk
from .logging import get_logger

logger = get_logger(__name__)

ProcessHandle = NewType("ProcessHandle", int)

DEFAULT_GRACE_PERIOD = 0.5
READ_CHUNK_SIZE = 8192
STREAM_LIMIT = 64 * 1024

# Windows has no SIGKILL; signals there end in a process tree kill anyway
SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


def is_windows() -> bool:
    """Check if running on Windows."""
    return sys.platform == "win32"


def _command_line(command: str, args: Sequence[str]) -> str:
    return " ".join([command, *args])


def _session_kwargs() -> dict:
    if is_windows():
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


class _ExitProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """Stream protocol that also reports the moment the process exits.

    Process.wait() resolves only once every pipe is closed, which a grandchild
    holding stdout can postpone indefinitely. ``exited`` resolves on the exit
    itself.
    """

    def __init__(self, limit: int, loop: asyncio.AbstractEventLoop):
        super().__init__(limit=limit, loop=loop)
        self.exited: asyncio.Future = loop.create_future()

    def process_exited(self) -> None:
        super().process_exited()
        if not self.exited.done():
            self.exited.set_result(None)


@dataclass
class ManagedProcess:
    """Process table entry for one managed command."""

    handle: ProcessHandle
    command: str
    args: list[str]
    cwd: Optional[str]
    prefix: str
    restart_on_error: bool
    on_exit: Optional[Callable[[], None]]
    process: asyncio.subprocess.Process
    transport: asyncio.SubprocessTransport = field(repr=False)
    exited: asyncio.Future = field(repr=False)
    restarts: int = 0
    stopped: bool = False
    watcher: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.returncode is None

    @property
    def command_line(self) -> str:
        return _command_line(self.command, self.args)


class ProcessManager:
    """Spawns, tracks, restarts and terminates OS processes.

    Args:
        grace_period: Seconds between the termination signal and the forced kill.
        stdout: Combined stream for managed processes' stdout (default sys.stdout).
        stderr: Combined stream for managed processes' stderr (default sys.stderr).
    """

    def __init__(
        self,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
    ) -> None:
        self.grace_period = grace_period
        self._stdout = stdout if stdout is not None else sys.stdout
        self._stderr = stderr if stderr is not None else sys.stderr

        self._table: dict[ProcessHandle, ManagedProcess] = {}
        self._live: set[ProcessHandle] = set()
        self._handles = itertools.count(1)
        self._cleanup_in_progress = False

    @property
    def cleanup_in_progress(self) -> bool:
        return self._cleanup_in_progress

    @property
    def live_handles(self) -> list[ProcessHandle]:
        return sorted(self._live)

    def get(self, handle: ProcessHandle) -> ManagedProcess:
        return self._table[handle]

    def pid(self, handle: ProcessHandle) -> int:
        return self._table[handle].pid

    def is_alive(self, handle: ProcessHandle) -> bool:
        entry = self._table.get(handle)
        return entry is not None and entry.alive

    # --- Run to completion ---

    def run_sync(
        self,
        command: str,
        args: Sequence[str] = (),
        cwd: Optional[str] = None,
        capture: bool = True,
    ) -> str:
        """Run a command and block until it exits.

        Args:
            capture: Capture and return stdout. When False the command writes
                straight to the terminal and "" is returned.

        Raises:
            CommandFailed: Non-zero exit or the command could not be spawned.
        """
        command_line = _command_line(command, args)
        if self._cleanup_in_progress:
            logger.warning("Skipping synchronous command during cleanup", command=command_line)
            return ""

        logger.info("Running sync command", command=command_line, cwd=cwd)
        try:
            result = subprocess.run(
                [command, *args],
                cwd=cwd,
                capture_output=capture,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            raise CommandFailed(command_line, None, str(e)) from e

        if result.returncode != 0:
            stderr = result.stderr.strip() if capture and result.stderr else ""
            raise CommandFailed(command_line, result.returncode, stderr)

        return result.stdout.strip() if capture and result.stdout else ""

    async def run_captured(
        self,
        command: str,
        args: Sequence[str] = (),
        cwd: Optional[str] = None,
    ) -> str:
        """Like run_sync with capture, without blocking the event loop."""
        command_line = _command_line(command, args)
        if self._cleanup_in_progress:
            logger.warning("Skipping captured command during cleanup", command=command_line)
            return ""

        logger.debug("Running captured command", command=command_line, cwd=cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CommandFailed(command_line, None, str(e)) from e

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise CommandFailed(
                command_line,
                process.returncode,
                stderr.decode("utf-8", errors="replace").strip(),
            )
        return stdout.decode("utf-8", errors="replace").strip()

    async def run_inherited(
        self,
        command: str,
        args: Sequence[str] = (),
        cwd: Optional[str] = None,
    ) -> None:
        """Run a command with the terminal's stdio and wait for it.

        Raises:
            CommandFailed: Non-zero exit or the command could not be spawned.
        """
        command_line = _command_line(command, args)
        if self._cleanup_in_progress:
            logger.warning("Skipping inherited command during cleanup", command=command_line)
            return

        logger.info("Running inherited command", command=command_line, cwd=cwd)
        try:
            process = await asyncio.create_subprocess_exec(command, *args, cwd=cwd)
        except OSError as e:
            logger.error("Failed to start inherited command", command=command_line, error=str(e))
            raise CommandFailed(command_line, None, str(e)) from e

        code = await process.wait()
        if code != 0:
            raise CommandFailed(command_line, code)

    # --- Managed processes ---

    async def start_managed(
        self,
        command: str,
        args: Sequence[str],
        cwd: Optional[str],
        prefix: str,
        restart_on_error: bool,
        on_exit: Optional[Callable[[], None]] = None,
    ) -> Optional[ProcessHandle]:
        """Start a long-running process with prefixed output.

        Args:
            prefix: Prepended to every output line, e.g. "api:dev:".
            restart_on_error: Respawn with the same arguments after a non-zero exit.
            on_exit: Called once the process is gone for good: clean exit, or
                failed exit without restart.

        Returns:
            Stable handle for the process, or None when skipped during cleanup.

        Raises:
            CommandFailed: The command could not be spawned.
        """
        command_line = _command_line(command, args)
        if self._cleanup_in_progress:
            logger.warning("Skipping managed process during cleanup", command=command_line)
            return None

        logger.info("Starting managed process", command=command_line, prefix=prefix, cwd=cwd)
        process, transport, exited = await self._spawn_piped(command, args, cwd)

        handle = ProcessHandle(next(self._handles))
        entry = ManagedProcess(
            handle=handle,
            command=command,
            args=list(args),
            cwd=cwd,
            prefix=prefix,
            restart_on_error=restart_on_error,
            on_exit=on_exit,
            process=process,
            transport=transport,
            exited=exited,
        )
        self._table[handle] = entry
        self._attach(entry)
        return handle

    async def _spawn_piped(
        self, command: str, args: Sequence[str], cwd: Optional[str]
    ) -> tuple[asyncio.subprocess.Process, asyncio.SubprocessTransport, asyncio.Future]:
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.subprocess_exec(
                lambda: _ExitProtocol(STREAM_LIMIT, loop),
                command,
                *args,
                cwd=cwd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **_session_kwargs(),
            )
        except OSError as e:
            logger.error("Error starting managed process", command=_command_line(command, args), error=str(e))
            raise CommandFailed(_command_line(command, args), None, str(e)) from e
        process = asyncio.subprocess.Process(transport, protocol, loop)
        return process, transport, protocol.exited

    def _attach(self, entry: ManagedProcess) -> None:
        self._live.add(entry.handle)
        entry.watcher = asyncio.create_task(
            self._watch(entry, entry.process, entry.transport, entry.exited)
        )

    async def _watch(
        self,
        entry: ManagedProcess,
        process: asyncio.subprocess.Process,
        transport: asyncio.SubprocessTransport,
        exited: asyncio.Future,
    ) -> None:
        pumps = [
            asyncio.create_task(self._pump(process.stdout, entry.prefix, self._stdout)),
            asyncio.create_task(self._pump(process.stderr, entry.prefix, self._stderr)),
        ]
        await exited
        code = transport.get_returncode()

        # Grandchildren may hold the pipes open long after the exit
        _, pending = await asyncio.wait(pumps, timeout=self.grace_period)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        transport.close()

        await self._handle_exit(entry, process, code)

    async def _pump(self, stream: Optional[asyncio.StreamReader], prefix: str, out: TextIO) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        state = StreamState()
        try:
            while True:
                data = await stream.read(READ_CHUNK_SIZE)
                if not data:
                    break
                text, state = format_chunk(decoder.decode(data), prefix, state)
                self._write(out, text)
        finally:
            text, state = format_chunk(decoder.decode(b"", final=True), prefix, state)
            self._write(out, text)
            text, _ = flush(prefix, state)
            self._write(out, text)

    @staticmethod
    def _write(out: TextIO, text: str) -> None:
        if text:
            out.write(text)
            out.flush()

    async def _handle_exit(
        self, entry: ManagedProcess, process: asyncio.subprocess.Process, code: int
    ) -> None:
        # Killed explicitly or already replaced: whoever did that owns the outcome
        if entry.process is not process or entry.handle not in self._live:
            return

        self._live.discard(entry.handle)
        if self._cleanup_in_progress:
            logger.info("Managed process exited due to cleanup", command=entry.command_line, pid=process.pid)
            return

        if code != 0:
            logger.error("Managed process exited with error", command=entry.command_line, pid=process.pid, code=code)
            if entry.restart_on_error:
                logger.warning("Restarting managed process", command=entry.command_line, restarts=entry.restarts + 1)
                await self._respawn(entry)
                return
        else:
            logger.info("Managed process exited cleanly", command=entry.command_line, pid=process.pid)

        self._notify_exit(entry)

    async def _respawn(self, entry: ManagedProcess) -> None:
        try:
            process, transport, exited = await self._spawn_piped(entry.command, entry.args, entry.cwd)
        except CommandFailed as e:
            logger.error("Failed to restart managed process", command=entry.command_line, error=str(e))
            self._notify_exit(entry)
            return

        entry.process = process
        entry.transport = transport
        entry.exited = exited
        entry.restarts += 1

        if entry.stopped or self._cleanup_in_progress:
            # Termination was requested while the replacement was spawning
            self._signal(process, SIGKILL)
            transport.close()
            return

        self._attach(entry)

    def _notify_exit(self, entry: ManagedProcess) -> None:
        if entry.on_exit is None:
            return
        try:
            entry.on_exit()
        except Exception:
            logger.exception("Exit callback failed", command=entry.command_line)

    # --- Termination ---

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, sig: int) -> None:
        """Signal a process and everything it started."""
        if is_windows():
            _kill_tree(process.pid)
            return
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            try:
                process.send_signal(sig)
            except ProcessLookupError:
                pass

    async def kill_process(self, handle: ProcessHandle) -> None:
        """Terminate a managed process and stop tracking it.

        A process that already exited gets no signal, but it is still marked
        stopped so a pending restart does not bring it back. On POSIX the
        process group gets SIGTERM, then SIGKILL if it is still running after
        the grace period. On Windows the process tree is killed immediately.
        """
        entry = self._table.get(handle)
        if entry is None:
            return

        entry.stopped = True
        self._live.discard(handle)
        if not entry.alive:
            return
        process = entry.process

        if is_windows():
            _kill_tree(process.pid)
            return

        self._signal(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(asyncio.shield(entry.exited), timeout=self.grace_period)
            return
        except asyncio.TimeoutError:
            logger.error("Timeout reached for process interruption", pid=process.pid, command=entry.command_line)

        self._signal(process, SIGKILL)

    async def cleanup_managed_processes(self) -> None:
        """Terminate every live managed process. Runs at most once.

        Failures for one process are logged and do not stop the others.
        """
        if self._cleanup_in_progress:
            logger.info("Cleanup of managed processes already in progress, skipping")
            return
        self._cleanup_in_progress = True

        entries = [self._table[handle] for handle in sorted(self._live)]
        entries = [entry for entry in entries if entry.alive]
        logger.info("Initiating cleanup of managed processes", count=len(entries))

        for entry in entries:
            logger.info("Killing managed process", pid=entry.pid, command=entry.command_line)
            try:
                self._signal(entry.process, signal.SIGTERM)
            except Exception as e:
                logger.error("Error killing process", pid=entry.pid, error=str(e))

        if entries:
            await asyncio.sleep(self.grace_period)

        for entry in entries:
            if not entry.alive:
                continue
            logger.warning("Process did not exit gracefully, forcing kill", pid=entry.pid)
            try:
                self._signal(entry.process, SIGKILL)
            except Exception as e:
                logger.error("Error forcing kill for process", pid=entry.pid, error=str(e))

        # Let the watchers write the last lines of output
        watchers = [entry.watcher for entry in entries if entry.watcher is not None]
        if watchers:
            await asyncio.wait(watchers, timeout=2 * self.grace_period)

        logger.info("Managed process cleanup complete")


def _kill_tree(pid: int) -> None:
    """Kill a process and all of its descendants."""
    try:
        parent = psutil.Process(pid)
        processes = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        return

    for proc in processes:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
