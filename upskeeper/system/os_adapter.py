"""
Platform façade.

Everything the core needs from the host operating system goes through an
OSAdapter: process enumeration and tree termination (psutil), sleep and
shutdown requests, the start-at-login entry, and user notifications. One
concrete adapter exists per supported platform.
"""

import asyncio
import logging
import os
import plistlib
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

import psutil

from ..core.bus import NOTIFICATION, EventBus
from ..errors import IOFailureError

logger = logging.getLogger(__name__)

APP_ID = "upskeeper"


class ProcessInfo(NamedTuple):
    pid: int
    exe: Optional[str]
    cmdline: List[str]


@dataclass
class CommandResult:
    """Result of an OS command."""

    command: List[str]
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
        }


def default_launch_command() -> List[str]:
    return [sys.executable, "-m", APP_ID, "run"]


class OSAdapter(ABC):
    """
    Capability set: enumerate_processes, kill_tree, request_sleep,
    request_shutdown, cancel_shutdown, set_login_item, show_toast.
    """

    name = "generic"
    SLEEP_COMMAND: Sequence[str] = ()
    SHUTDOWN_COMMAND: Sequence[str] = ()
    CANCEL_SHUTDOWN_COMMAND: Sequence[str] = ()

    def __init__(self, bus: Optional[EventBus] = None):
        self.bus = bus

    # -- processes ------------------------------------------------------------

    def enumerate_processes(self) -> List[ProcessInfo]:
        processes = []
        for proc in psutil.process_iter(["pid", "exe", "cmdline"]):
            info = proc.info
            processes.append(ProcessInfo(info["pid"], info.get("exe"), list(info.get("cmdline") or [])))
        return processes

    def find_processes(self, executable_path: str, args_fragment: Optional[str] = None) -> List[int]:
        """PIDs whose executable is ``executable_path`` and whose command line contains ``args_fragment``."""
        target = os.path.normcase(os.path.abspath(executable_path))
        pids = []
        for proc in self.enumerate_processes():
            if not proc.exe or os.path.normcase(os.path.abspath(proc.exe)) != target:
                continue
            if args_fragment and args_fragment not in " ".join(proc.cmdline):
                continue
            pids.append(proc.pid)
        return pids

    async def kill_tree(self, pid: int, timeout: float = 5.0) -> None:
        """Terminate ``pid`` and all of its descendants."""
        try:
            parent = psutil.Process(pid)
        except psutil.NoSuchProcess:
            return
        procs = parent.children(recursive=True) + [parent]
        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass
        _, alive = await asyncio.to_thread(psutil.wait_procs, procs, timeout)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
        logger.debug("Terminated process tree of pid %s (%d processes)", pid, len(procs))

    # -- power ----------------------------------------------------------------

    async def request_sleep(self) -> CommandResult:
        logger.warning("Requesting system sleep")
        return await self._run(self.SLEEP_COMMAND)

    async def request_shutdown(self) -> CommandResult:
        logger.warning("Requesting system shutdown")
        return await self._run(self.SHUTDOWN_COMMAND)

    async def cancel_shutdown(self) -> CommandResult:
        logger.info("Cancelling scheduled shutdown")
        return await self._run(self.CANCEL_SHUTDOWN_COMMAND)

    async def _run(self, command: Sequence[str]) -> CommandResult:
        if not command:
            raise IOFailureError(f"Operation not supported on platform '{self.name}'")
        argv = list(command)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate()
        except OSError as e:
            raise IOFailureError(f"Failed to run {argv[0]}: {e}") from e
        result = CommandResult(
            command=argv,
            exit_code=proc.returncode,
            stdout=stdout.decode(errors="replace").strip(),
            stderr=stderr.decode(errors="replace").strip(),
        )
        if not result.success:
            raise IOFailureError(
                f"{' '.join(argv)} exited with code {result.exit_code}: {result.stderr or result.stdout}"
            )
        return result

    # -- login item -----------------------------------------------------------

    @abstractmethod
    def set_login_item(self, enabled: bool, command: Optional[List[str]] = None) -> None:
        """Register or remove the start-at-login entry."""

    # -- notifications --------------------------------------------------------

    async def show_toast(self, title: str, body: str, level: str = "info") -> None:
        logger.log(logging.WARNING if level in ("warning", "critical") else logging.INFO, "%s: %s", title, body)
        if self.bus is not None:
            await self.bus.publish(NOTIFICATION, {"title": title, "body": body, "level": level})


class WindowsAdapter(OSAdapter):
    name = "windows"
    SLEEP_COMMAND = ("rundll32.exe", "powrprof.dll,SetSuspendState", "0,1,0")
    SHUTDOWN_COMMAND = ("shutdown.exe", "/s", "/f", "/t", "0")
    CANCEL_SHUTDOWN_COMMAND = ("shutdown.exe", "/a")
    RUN_KEY = r"Software\Microsoft\Windows\CurrentVersion\Run"

    def set_login_item(self, enabled: bool, command: Optional[List[str]] = None) -> None:
        import winreg

        argv = command or default_launch_command()
        value = " ".join(f'"{a}"' if " " in a else a for a in argv)
        try:
            with winreg.OpenKey(winreg.HKEY_CURRENT_USER, self.RUN_KEY, 0, winreg.KEY_SET_VALUE) as key:
                if enabled:
                    winreg.SetValueEx(key, APP_ID, 0, winreg.REG_SZ, value)
                else:
                    try:
                        winreg.DeleteValue(key, APP_ID)
                    except FileNotFoundError:
                        pass
        except OSError as e:
            raise IOFailureError(f"Failed to update login item: {e}") from e
        logger.info("Start at login %s", "enabled" if enabled else "disabled")


class MacOSAdapter(OSAdapter):
    name = "darwin"
    SLEEP_COMMAND = ("pmset", "sleepnow")
    SHUTDOWN_COMMAND = ("shutdown", "-h", "now")
    CANCEL_SHUTDOWN_COMMAND = ("killall", "shutdown")

    def __init__(self, bus: Optional[EventBus] = None, launch_agents_dir: Optional[Path] = None):
        super().__init__(bus)
        self.launch_agents_dir = launch_agents_dir or Path.home() / "Library" / "LaunchAgents"

    def set_login_item(self, enabled: bool, command: Optional[List[str]] = None) -> None:
        plist_path = self.launch_agents_dir / f"com.{APP_ID}.agent.plist"
        try:
            if enabled:
                self.launch_agents_dir.mkdir(parents=True, exist_ok=True)
                with open(plist_path, "wb") as fh:
                    plistlib.dump(
                        {
                            "Label": f"com.{APP_ID}.agent",
                            "ProgramArguments": command or default_launch_command(),
                            "RunAtLoad": True,
                        },
                        fh,
                    )
            elif plist_path.exists():
                plist_path.unlink()
        except OSError as e:
            raise IOFailureError(f"Failed to update login item: {e}") from e
        logger.info("Start at login %s", "enabled" if enabled else "disabled")


class LinuxAdapter(OSAdapter):
    name = "linux"
    SLEEP_COMMAND = ("systemctl", "suspend")
    SHUTDOWN_COMMAND = ("systemctl", "poweroff")
    CANCEL_SHUTDOWN_COMMAND = ("shutdown", "-c")

    def __init__(self, bus: Optional[EventBus] = None, autostart_dir: Optional[Path] = None):
        super().__init__(bus)
        config_home = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
        self.autostart_dir = autostart_dir or Path(config_home) / "autostart"

    def set_login_item(self, enabled: bool, command: Optional[List[str]] = None) -> None:
        desktop_path = self.autostart_dir / f"{APP_ID}.desktop"
        try:
            if enabled:
                self.autostart_dir.mkdir(parents=True, exist_ok=True)
                exec_line = " ".join(f'"{a}"' if " " in a else a for a in (command or default_launch_command()))
                desktop_path.write_text(
                    "[Desktop Entry]\n"
                    "Type=Application\n"
                    f"Name={APP_ID}\n"
                    f"Exec={exec_line}\n"
                    "X-GNOME-Autostart-enabled=true\n",
                    encoding="utf-8",
                )
            elif desktop_path.exists():
                desktop_path.unlink()
        except OSError as e:
            raise IOFailureError(f"Failed to update login item: {e}") from e
        logger.info("Start at login %s", "enabled" if enabled else "disabled")


def get_os_adapter(bus: Optional[EventBus] = None) -> OSAdapter:
    if sys.platform == "win32":
        return WindowsAdapter(bus)
    if sys.platform == "darwin":
        return MacOSAdapter(bus)
    return LinuxAdapter(bus)
