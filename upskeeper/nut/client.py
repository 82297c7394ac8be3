"""
NUT (Network UPS Tools) client.

This module provides an asynchronous client for the NUT line protocol
built on asyncio streams. A single client wraps a single TCP connection
and serializes its commands so that response lines from different
requests can never interleave.
"""

import asyncio
import logging
from typing import Dict, Iterable

from ..errors import (
    IOFailureError,
    OperationTimeoutError,
    ProtocolError,
    StateError,
    UpsKeeperError,
)
from .protocol import format_command, is_error_line, parse_var_line

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 5.0
DEFAULT_READ_TIMEOUT = 5.0
CLOSE_TIMEOUT = 2.0


class NUTError(UpsKeeperError):
    """Base exception for NUT client errors."""
    pass


class NUTConnectionError(NUTError, IOFailureError):
    """Exception for NUT connection errors."""
    pass


class NUTTimeoutError(NUTError, OperationTimeoutError):
    """A connect or read deadline expired."""
    pass


class NUTProtocolError(NUTError, ProtocolError):
    """The server answered with ERR, an unexpected line, or the wrong UPS."""
    pass


class NUTStateError(NUTError, StateError):
    """A command was issued without an open connection."""
    pass


class NUTClient:
    """
    An asynchronous client for a NUT server.
    """

    def __init__(self, read_timeout: float = DEFAULT_READ_TIMEOUT):
        """
        Initialize the NUT client.

        Args:
            read_timeout: Deadline in seconds for each awaited response line.
        """
        self.read_timeout = read_timeout
        self.host: str | None = None
        self.port: int | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(
        self,
        host: str,
        port: int,
        ups_name: str,
        username: str | None = None,
        password: str | None = None,
        timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ) -> None:
        """
        Open the TCP connection and authenticate if credentials are given.

        Args:
            host: The NUT server hostname or IP address.
            port: The NUT server port.
            ups_name: UPS used for the LOGIN command.
            username: Optional username sent with USERNAME.
            password: Optional password sent with PASSWORD.
            timeout: Connect deadline in seconds.

        Raises:
            NUTTimeoutError: If the connection is not established in time.
            NUTConnectionError: If the socket cannot be opened.
            NUTProtocolError: If the server rejects a control command.
        """
        if self._writer is not None:
            await self.close()

        logger.debug("Connecting to NUT server %s:%s", host, port)
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise NUTTimeoutError(
                f"Timed out connecting to NUT server {host}:{port} after {timeout:g}s"
            ) from e
        except OSError as e:
            raise NUTConnectionError(f"Failed to connect to NUT server {host}:{port}: {e}") from e

        self.host = host
        self.port = port

        try:
            sent_credentials = False
            if username:
                await self._control("USERNAME", username)
                sent_credentials = True
            if password:
                await self._control("PASSWORD", password)
                sent_credentials = True
            if sent_credentials:
                await self._control("LOGIN", ups_name)
        except NUTError:
            await self.close()
            raise

        logger.info("Connected to NUT server %s:%s (auth=%s)", host, port, bool(username or password))

    async def list_variables(self, ups_name: str) -> Dict[str, str]:
        """
        List all variables for a UPS.

        Args:
            ups_name: The name of the UPS device.

        Returns:
            A dictionary mapping variable names to their raw string values.

        Raises:
            NUTProtocolError: If the server answers with ERR.
        """
        async with self._lock:
            self._ensure_connected()
            await self._send("LIST", "VAR", ups_name)
            variables: Dict[str, str] = {}
            while True:
                line = await self._read_line()
                if line.startswith("BEGIN LIST VAR"):
                    continue
                if line.startswith("END LIST VAR"):
                    break
                if is_error_line(line):
                    raise NUTProtocolError(f"LIST VAR {ups_name} failed: {line}")
                parsed = parse_var_line(line)
                if parsed and parsed.ups == ups_name:
                    variables[parsed.name] = parsed.value
        logger.debug("NUT list_variables ok for '%s' (%d vars)", ups_name, len(variables))
        return variables

    async def get_variable(self, ups_name: str, name: str) -> str:
        """
        Get a single variable for a UPS.

        Args:
            ups_name: The name of the UPS device.
            name: The variable to fetch, e.g. ``battery.charge``.

        Returns:
            The raw string value.

        Raises:
            NUTProtocolError: On ERR or a reply that does not match the request.
        """
        async with self._lock:
            self._ensure_connected()
            await self._send("GET", "VAR", ups_name, name)
            line = await self._read_line()
        if is_error_line(line):
            raise NUTProtocolError(f"GET VAR {ups_name} {name} failed: {line}")
        parsed = parse_var_line(line)
        if parsed is None or parsed.ups != ups_name or parsed.name != name:
            raise NUTProtocolError(f"Unexpected reply to GET VAR {ups_name} {name}: {line}")
        return parsed.value

    async def get_variables(self, ups_name: str, names: Iterable[str]) -> Dict[str, str]:
        """Fetch several variables one after the other on this connection."""
        values: Dict[str, str] = {}
        for name in names:
            values[name] = await self.get_variable(ups_name, name)
        return values

    async def close(self) -> None:
        """Close the connection. Safe to call when not connected."""
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is None:
            return
        try:
            writer.close()
            await asyncio.wait_for(writer.wait_closed(), timeout=CLOSE_TIMEOUT)
        except (asyncio.TimeoutError, OSError) as e:
            logger.debug("Graceful close failed (%s), aborting transport", e)
            writer.transport.abort()
        logger.debug("Closed NUT connection to %s:%s", self.host, self.port)

    def _ensure_connected(self) -> None:
        if self._writer is None or self._reader is None:
            raise NUTStateError("NUT client is not connected")

    async def _control(self, *parts: str) -> None:
        async with self._lock:
            self._ensure_connected()
            await self._send(*parts)
            line = await self._read_line()
        if not line.startswith("OK"):
            raise NUTProtocolError(f"{parts[0]} rejected by server: {line}")

    async def _send(self, *parts: str) -> None:
        command = format_command(*parts)
        logger.debug("NUT >> %s", parts[0] if parts[0] == "PASSWORD" else command.rstrip())
        try:
            self._writer.write(command.encode("utf-8"))
            await self._writer.drain()
        except OSError as e:
            raise NUTConnectionError(f"Failed to send {parts[0]} to {self.host}:{self.port}: {e}") from e

    async def _read_line(self) -> str:
        try:
            raw = await asyncio.wait_for(self._reader.readline(), timeout=self.read_timeout)
        except asyncio.TimeoutError as e:
            raise NUTTimeoutError(
                f"Timed out waiting for NUT response from {self.host}:{self.port}"
            ) from e
        except (OSError, ValueError) as e:
            raise NUTConnectionError(f"Failed reading from {self.host}:{self.port}: {e}") from e
        if not raw.endswith(b"\n"):
            raise NUTConnectionError(f"NUT server {self.host}:{self.port} closed the connection")
        line = raw.decode("utf-8", errors="replace").rstrip("\n")
        if line.endswith("\r"):
            line = line[:-1]
        return line
