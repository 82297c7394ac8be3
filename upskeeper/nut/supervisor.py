"""
Supervision of locally launched NUT components.

When the user runs NUT on the same host, the agent starts the UPS driver
and ``upsd`` from the configured NUT folder, reuses instances that are
already running, and terminates the ones it started.
"""

import asyncio
import logging
import os
import re
import sys
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

from ..errors import InvalidArgumentError, IOFailureError
from ..system.os_adapter import OSAdapter

logger = logging.getLogger(__name__)

LOCAL_DRIVER_START_DELAY_MS = 1200
LOCAL_UPSD_START_DELAY_MS = 1000
DEFAULT_LOCAL_DRIVER_EXECUTABLE = "snmp-ups"
MAX_CAPTURED_LINES = 240
MAX_CAPTURED_LINE_LENGTH = 2000

_SECTION_RE = re.compile(r"^\[([^\]]+)\]$")
_DRIVER_RE = re.compile(r"^driver\s*=\s*(.+)$", re.IGNORECASE)
_DRIVER_NAME_RE = re.compile(r"^[a-zA-Z0-9._-]+$")


def _sanitize_driver_name(raw: str) -> Optional[str]:
    value = raw.strip()
    value = re.sub(r"^[\"']|[\"']$", "", value)
    value = re.sub(r"\.exe$", "", value, flags=re.IGNORECASE)
    if not value or not _DRIVER_NAME_RE.match(value):
        return None
    return value


def parse_driver_from_ups_conf(content: str, ups_name: str) -> Optional[str]:
    """Return the ``driver=`` value of the ``[ups_name]`` section, if any."""
    wanted = ups_name.strip().lower()
    if not wanted:
        return None
    section = ""
    for raw_line in content.splitlines():
        line = re.split(r"[;#]", raw_line, maxsplit=1)[0].strip()
        if not line:
            continue
        match = _SECTION_RE.match(line)
        if match:
            section = match.group(1).strip().lower()
            continue
        if section != wanted:
            continue
        match = _DRIVER_RE.match(line)
        if match:
            driver = _sanitize_driver_name(match.group(1))
            if driver:
                return driver
    return None


def executable_candidates(folder: str, name: str) -> List[str]:
    """``bin/<name>.exe`` then ``sbin/<name>.exe``; bare names are also tried off Windows."""
    names = [f"{name}.exe"]
    if sys.platform != "win32":
        names.append(name)
    return [os.path.join(folder, sub, n) for n in names for sub in ("bin", "sbin")]


def format_command_line(path: str, args: List[str]) -> str:
    def quote(segment: str) -> str:
        if not re.search(r'[\s"]', segment):
            return segment
        return '"' + segment.replace('"', '\\"') + '"'

    return " ".join(quote(part) for part in [path, *args])


@dataclass
class OutputCapture:
    """Bounded capture of a child's stdout and stderr."""

    stdout: Deque[str] = field(default_factory=lambda: deque(maxlen=MAX_CAPTURED_LINES))
    stderr: Deque[str] = field(default_factory=lambda: deque(maxlen=MAX_CAPTURED_LINES))
    stdout_remainder: str = ""
    stderr_remainder: str = ""

    def feed(self, stream: str, text: str) -> List[str]:
        """Add a chunk and return the complete lines it produced."""
        remainder_attr = f"{stream}_remainder"
        lines = (getattr(self, remainder_attr) + text).replace("\r\n", "\n").split("\n")
        setattr(self, remainder_attr, lines.pop())
        stored = []
        for raw in lines:
            line = raw.rstrip()
            if not line:
                continue
            if len(line) > MAX_CAPTURED_LINE_LENGTH:
                line = line[:MAX_CAPTURED_LINE_LENGTH] + " ..."
            getattr(self, stream).append(line)
            stored.append(line)
        return stored

    def flush(self) -> None:
        for stream in ("stdout", "stderr"):
            remainder = getattr(self, f"{stream}_remainder")
            if remainder.strip():
                self.feed(stream, "\n")

    def text(self, stream: str) -> str:
        lines = list(getattr(self, stream))
        remainder = getattr(self, f"{stream}_remainder").rstrip()
        if remainder:
            lines.append(remainder)
        return "\n".join(lines)


class LocalProcessError(IOFailureError):
    """A local NUT component failed to start."""
    pass


def format_early_exit_error(label: str, exit_code: Optional[int], command_line: str, capture: OutputCapture) -> str:
    parts = [f"{label} exited early with code {exit_code}", f"command: {command_line}"]
    stdout = capture.text("stdout")
    stderr = capture.text("stderr")
    if stdout:
        parts.append(f"stdout:\n{stdout}")
    if stderr:
        parts.append(f"stderr:\n{stderr}")
    return "\n".join(parts)


class ManagedProcess:
    """A child started by the supervisor, with its output readers."""

    def __init__(self, label: str, process: asyncio.subprocess.Process, command_line: str):
        self.label = label
        self.process = process
        self.command_line = command_line
        self.capture = OutputCapture()
        self._readers = [
            asyncio.create_task(self._pump("stdout", process.stdout)),
            asyncio.create_task(self._pump("stderr", process.stderr)),
        ]
        self._watcher = asyncio.create_task(self._watch())

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_running(self) -> bool:
        return self.process.returncode is None

    async def _pump(self, stream: str, reader: Optional[asyncio.StreamReader]) -> None:
        if reader is None:
            return
        while True:
            chunk = await reader.read(4096)
            if not chunk:
                break
            for line in self.capture.feed(stream, chunk.decode("utf-8", errors="replace")):
                logger.debug("[local %s %s] %s", self.label, stream, line)

    async def _watch(self) -> None:
        code = await self.process.wait()
        await asyncio.gather(*self._readers, return_exceptions=True)
        self.capture.flush()
        logger.warning("%s process exited (code=%s, command=%s)", self.label, code, self.command_line)
        if code != 0:
            self.log_captured_output()

    def log_captured_output(self) -> None:
        stdout = self.capture.text("stdout")
        stderr = self.capture.text("stderr")
        if stdout:
            logger.debug("[local %s] captured stdout:\n%s", self.label, stdout)
        if stderr:
            logger.debug("[local %s] captured stderr:\n%s", self.label, stderr)

    async def settle(self) -> None:
        """Wait for output readers after the process has exited."""
        await asyncio.gather(self._watcher, return_exceptions=True)

    def cancel_watchers(self) -> None:
        for task in [*self._readers, self._watcher]:
            if not task.done():
                task.cancel()


class ChildSupervisor:
    """
    Starts, reuses and terminates the local NUT driver and ``upsd``.
    """

    def __init__(
        self,
        os_adapter: OSAdapter,
        driver_start_delay_ms: float = LOCAL_DRIVER_START_DELAY_MS,
        upsd_start_delay_ms: float = LOCAL_UPSD_START_DELAY_MS,
    ):
        self.os_adapter = os_adapter
        self.driver_start_delay_ms = driver_start_delay_ms
        self.upsd_start_delay_ms = upsd_start_delay_ms
        self.driver: Optional[ManagedProcess] = None
        self.upsd: Optional[ManagedProcess] = None

    @property
    def children_running(self) -> bool:
        return bool(self.driver and self.driver.is_running and self.upsd and self.upsd.is_running)

    def resolve_driver_path(self, folder: str, ups_name: str) -> tuple[str, str]:
        """Find the driver executable configured for ``ups_name``."""
        driver_name = DEFAULT_LOCAL_DRIVER_EXECUTABLE
        conf_path = os.path.join(folder, "etc", "ups.conf")
        try:
            with open(conf_path, "r", encoding="utf-8") as fh:
                driver_name = parse_driver_from_ups_conf(fh.read(), ups_name) or driver_name
        except OSError:
            pass
        candidates = executable_candidates(folder, driver_name)
        for candidate in candidates:
            if os.path.isfile(candidate):
                return candidate, driver_name
        raise LocalProcessError(
            f"{driver_name}.exe not found in bin/{driver_name}.exe or sbin/{driver_name}.exe under {folder}"
        )

    def resolve_upsd_path(self, folder: str) -> str:
        names = ["upsd.exe"] if sys.platform == "win32" else ["upsd.exe", "upsd"]
        for name in names:
            candidate = os.path.join(folder, "sbin", name)
            if os.path.isfile(candidate):
                return candidate
        raise LocalProcessError(f"upsd.exe not found in sbin/ under {folder}")

    async def ensure_running(self, launch_local_components: bool, folder: Optional[str], ups_name: str) -> None:
        """
        Make sure the driver and ``upsd`` are running when local launch is on.

        Raises:
            InvalidArgumentError: If no NUT folder is configured.
            LocalProcessError: If an executable is missing or exits early.
                The message carries the captured output.
        """
        if not launch_local_components:
            await self.stop(launch_local_components=False)
            return
        if self.children_running:
            return

        await self.stop(launch_local_components=True)

        folder = (folder or "").strip()
        if not folder:
            raise InvalidArgumentError("localNutFolderPath is required when launchLocalComponents is enabled")

        driver_path, driver_name = self.resolve_driver_path(folder, ups_name)
        upsd_path = self.resolve_upsd_path(folder)
        driver_pids = await asyncio.to_thread(self.os_adapter.find_processes, driver_path, f"-a {ups_name}")
        upsd_pids = await asyncio.to_thread(self.os_adapter.find_processes, upsd_path)

        if driver_pids:
            logger.warning("Reusing existing local NUT driver %s (pids=%s)", driver_path, driver_pids)
        else:
            driver = await self._spawn("driver", driver_path, ["-a", ups_name], folder)
            self.driver = driver
            await asyncio.sleep(self.driver_start_delay_ms / 1000)
            if not driver.is_running:
                await driver.settle()
                attached = await asyncio.to_thread(
                    self.os_adapter.find_processes, driver_path, f"-a {ups_name}"
                )
                if driver.process.returncode == 0 and attached:
                    logger.warning(
                        "Local NUT driver launcher exited but active driver was detected (pids=%s)", attached
                    )
                    driver.log_captured_output()
                    self.driver = None
                else:
                    self.driver = None
                    raise LocalProcessError(
                        format_early_exit_error(
                            driver_name, driver.process.returncode, driver.command_line, driver.capture
                        )
                    )

        if upsd_pids:
            logger.warning("Reusing existing local upsd %s (pids=%s)", upsd_path, upsd_pids)
            return

        upsd = await self._spawn("upsd", upsd_path, [], folder)
        self.upsd = upsd
        await asyncio.sleep(self.upsd_start_delay_ms / 1000)
        if not upsd.is_running:
            await upsd.settle()
            self.upsd = None
            raise LocalProcessError(
                format_early_exit_error("upsd", upsd.process.returncode, upsd.command_line, upsd.capture)
            )

    async def stop(self, launch_local_components: bool = False, force_managed_children: bool = False) -> None:
        """
        Terminate the managed children.

        Without ``force_managed_children`` nothing is killed while local
        launch is off, since the processes then belong to the user.
        """
        upsd, driver = self.upsd, self.driver
        self.upsd = None
        self.driver = None
        if not (force_managed_children or launch_local_components):
            logger.debug("Skipping local NUT process termination because launchLocalComponents is disabled")
            return
        await asyncio.gather(self._terminate(upsd), self._terminate(driver))

    async def _spawn(self, label: str, path: str, args: List[str], cwd: str) -> ManagedProcess:
        command_line = format_command_line(path, args)
        logger.info("Starting local NUT %s: %s", label, command_line)
        kwargs = {}
        if sys.platform == "win32":
            import subprocess

            kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
        try:
            process = await asyncio.create_subprocess_exec(
                path,
                *args,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs,
            )
        except OSError as e:
            raise LocalProcessError(f"Failed to start {label} ({command_line}): {e}") from e
        return ManagedProcess(label, process, command_line)

    async def _terminate(self, managed: Optional[ManagedProcess]) -> None:
        if managed is None:
            return
        if managed.is_running:
            logger.info("Stopping local NUT %s (pid=%s)", managed.label, managed.pid)
            if sys.platform == "win32":
                await self.os_adapter.kill_tree(managed.pid)
            else:
                try:
                    managed.process.terminate()
                except ProcessLookupError:
                    pass
            try:
                await asyncio.wait_for(managed.process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("%s did not exit after SIGTERM; killing", managed.label)
                managed.process.kill()
        managed.cancel_watchers()
