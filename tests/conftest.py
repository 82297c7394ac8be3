import asyncio
import shlex
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from upskeeper.config import Settings
from upskeeper.core.config_store import ConfigStore
from upskeeper.database.telemetry import TelemetryStore
from upskeeper.nut.protocol import format_var_line
from upskeeper.system.os_adapter import OSAdapter


# Skip integration tests unless explicitly enabled
def pytest_addoption(parser):
    parser.addoption("--integration", action="store_true", default=False, help="Run integration tests")


def pytest_collection_modifyitems(config, items):
    if not config.getoption("--integration"):
        skip_integration = pytest.mark.skip(reason="need --integration option to run")
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


SAMPLE_VARIABLES = {
    "device.model": "Smart-UPS 1500",
    "device.mfr": "APC",
    "ups.model": "Smart-UPS 1500",
    "ups.mfr": "APC",
    "ups.serial": "AS1234567890",
    "ups.firmware": "UPS 09.3 / ID=18",
    "input.voltage.nominal": "230",
    "battery.charge": "100",
    "battery.voltage": "27.1",
    "battery.runtime": "3600",
    "input.voltage": "230.1",
    "input.frequency": "50.0",
    "output.voltage": "230.0",
    "ups.load": "18",
    "ups.realpower": "120",
    "ups.status": "OL",
}


class FakeNUTServer:
    """
    In-process NUT server speaking the subset of the protocol the client uses.

    ``commands`` records every request line. Setting ``silent`` makes the
    server swallow requests without answering.
    """

    def __init__(
        self,
        ups_name: str = "myups",
        variables: Optional[Dict[str, str]] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ):
        self.ups_name = ups_name
        self.variables = dict(SAMPLE_VARIABLES if variables is None else variables)
        self.username = username
        self.password = password
        self.silent = False
        self.commands: List[str] = []
        self.port: Optional[int] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers = set()

    async def start(self, port: int = 0) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", port)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for writer in list(self._writers):
            writer.close()
        self._writers.clear()
        await self._server.wait_closed()
        self._server = None

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.add(writer)
        session: Dict[str, str] = {}
        try:
            while True:
                raw = await reader.readline()
                if not raw:
                    break
                line = raw.decode("utf-8").rstrip("\r\n")
                self.commands.append(line)
                if self.silent:
                    continue
                for reply in self.respond(line, session):
                    writer.write((reply + "\n").encode("utf-8"))
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            self._writers.discard(writer)
            writer.close()

    def respond(self, line: str, session: Dict[str, str]) -> List[str]:
        tokens = shlex.split(line)
        if not tokens:
            return ["ERR UNKNOWN-COMMAND"]
        verb = tokens[0]
        if verb in ("USERNAME", "PASSWORD") and len(tokens) == 2:
            session[verb] = tokens[1]
            return ["OK"]
        if verb == "LOGIN":
            if self.username is not None and session.get("USERNAME") != self.username:
                return ["ERR ACCESS-DENIED"]
            if self.password is not None and session.get("PASSWORD") != self.password:
                return ["ERR ACCESS-DENIED"]
            return ["OK"]
        if tokens[:2] == ["LIST", "VAR"] and len(tokens) == 3:
            if tokens[2] != self.ups_name:
                return ["ERR UNKNOWN-UPS"]
            return (
                [f"BEGIN LIST VAR {self.ups_name}"]
                + [format_var_line(self.ups_name, name, value) for name, value in self.variables.items()]
                + [f"END LIST VAR {self.ups_name}"]
            )
        if tokens[:2] == ["GET", "VAR"] and len(tokens) == 4:
            if tokens[2] != self.ups_name:
                return ["ERR UNKNOWN-UPS"]
            if tokens[3] not in self.variables:
                return ["ERR VAR-NOT-SUPPORTED"]
            return [format_var_line(self.ups_name, tokens[3], self.variables[tokens[3]])]
        return ["ERR UNKNOWN-COMMAND"]


@pytest.fixture
def fake_nut_server_factory():
    return FakeNUTServer


@pytest_asyncio.fixture
async def nut_server():
    server = FakeNUTServer()
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
def settings(tmp_path):
    return Settings(DATA_DIR=str(tmp_path / "data-dir"))


@pytest_asyncio.fixture
async def config_store(tmp_path):
    store = ConfigStore(str(tmp_path / "app-settings.json"))
    await store.load()
    return store


@pytest_asyncio.fixture
async def telemetry_store(tmp_path):
    store = TelemetryStore(str(tmp_path / "data" / "ups_telemetry.db"))
    await store.open()
    yield store
    await store.close()


@pytest.fixture
def mock_os_adapter():
    adapter = MagicMock(spec=OSAdapter)
    adapter.bus = None
    adapter.request_sleep = AsyncMock()
    adapter.request_shutdown = AsyncMock()
    adapter.cancel_shutdown = AsyncMock()
    adapter.show_toast = AsyncMock()
    adapter.kill_tree = AsyncMock()
    adapter.find_processes.return_value = []
    return adapter
