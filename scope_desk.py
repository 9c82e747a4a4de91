#!/usr/bin/env python3
"""
ScopeDesk oscilloscope measurement library.

Drives Teledyne LeCroy oscilloscopes through the ActiveDSO control (or VISA),
and runs parameter measurement sweeps over channels x measurements using the
P1..P8 measurement slots. Falls back to synthetic readings when no driver is
available.
"""
from __future__ import annotations

import asyncio
import logging
import re
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto
from typing import Any, Protocol, TypeVar

import numpy as np
import pyvisa
from pyvisa.resources import MessageBasedResource

try:  # pywin32 is only available on Windows
    import pywintypes
    import win32com.client
except ImportError:
    pywintypes = None
    win32com = None


__all__ = [
    # Enums
    "ConnectionState",
    "AddressScheme",
    # Exceptions
    "ScopeError",
    "ScopeConnectionError",
    "ScopeConfigurationError",
    "MeasurementMappingError",
    "UnsupportedDriverCall",
    "OperationCancelledError",
    # Data
    "MeasurementMapping",
    "ChannelOption",
    "MeasurementOption",
    "MeasurementResult",
    "MeasurementMatrixRow",
    "MEASUREMENT_MAP",
    "ALL_CHANNELS",
    "ALL_MEASUREMENTS",
    "DEFAULT_CHANNELS",
    "DEFAULT_MEASUREMENTS",
    "DEFAULT_DRIVER_IDS",
    # Drivers
    "DriverAdapter",
    "ActiveDSODriver",
    "VisaDriver",
    "SimulatedDriver",
    "resolve_driver",
    # Classes
    "ConnectionManager",
    "MeasurementEngine",
    # Helpers
    "build_mapping",
    "format_address",
    "stub_number",
    "stub_value",
    "expand_selection",
    "to_matrix",
]

T = TypeVar("T")


class ConnectionState(Enum):
    """Connection state. connect() resolves directly to one of these."""
    DISCONNECTED = auto()
    CONNECTED = auto()


class AddressScheme(Enum):
    """Address prefix passed to the driver handshake."""
    IP = "IP"
    TCPIP = "TCPIP"


# === Exceptions ===

class ScopeError(Exception):
    """Base exception for ScopeDesk errors."""
    pass


class ScopeConnectionError(ScopeError):
    """Operation requires a connection (or the handshake failed)."""
    pass


class ScopeConfigurationError(ScopeError):
    """Invalid configuration value."""
    pass


class MeasurementMappingError(ScopeError):
    """Measurement has no P1..P8 slot mapping on the live instrument."""
    pass


class UnsupportedDriverCall(ScopeError):
    """Driver does not expose an optional call."""
    pass


class OperationCancelledError(ScopeError):
    """Queued operation was cancelled before it started."""
    pass


# === Constants ===

STUB_RESPONSE = "Stub mode: no oscilloscope driver attached"
STUB_SERIAL = "STUB-0000"
UNKNOWN_SERIAL = "Unknown"
NOT_AVAILABLE = "N/A"

HEADER_OFF_COMMAND = "CHDR OFF"
QUERY_MARKER = "*OPC?"
IDN_QUERY = "*IDN?"

COMMAND_TIMEOUT_MS = 5000
SHORT_TIMEOUT_MS = 100

DEFAULT_DRIVER_IDS: tuple[str, ...] = ("LeCroy.ActiveDSOCtrl.1", "LeCroy.ActiveDSO")

# "Invalid class string": ProgID not registered on this machine
CO_E_CLASSSTRING = -2147221005


# === Data ===

@dataclass(frozen=True)
class MeasurementMapping:
    """Parameter engine and measurement slot (P1..P8) for one measurement."""
    param_engine: str
    slot: int


def build_mapping(entries: dict[str, tuple[str, int]]) -> dict[str, MeasurementMapping]:
    """Build a case-insensitive measurement table keyed by lowercased name.

    Raises:
        ScopeConfigurationError: duplicate names, duplicate slots or a slot
            outside 1..8.
    """
    table: dict[str, MeasurementMapping] = {}
    slots: set[int] = set()
    for name, (engine, slot) in entries.items():
        key = name.strip().lower()
        if key in table:
            raise ScopeConfigurationError(f"Duplicate measurement: {name}")
        if not 1 <= slot <= 8:
            raise ScopeConfigurationError(f"Invalid slot for {name}: {slot}")
        if slot in slots:
            raise ScopeConfigurationError(f"Slot P{slot} assigned twice")
        slots.add(slot)
        table[key] = MeasurementMapping(param_engine=engine, slot=slot)
    return table


MEASUREMENT_MAP: dict[str, MeasurementMapping] = build_mapping({
    "Amplitude": ("Amplitude", 1),
    "Mean": ("Mean", 2),
    "Rise Time": ("Rise", 3),
    "Fall Time": ("Fall", 4),
    "Peak-to-Peak": ("PeakToPeak", 5),
    "Frequency": ("Frequency", 6),
    "Width": ("Width", 7),
    "Period": ("Period", 8),
})


@dataclass(frozen=True)
class _Option:
    id: str
    display_name: str
    is_all: bool = False


@dataclass(frozen=True)
class ChannelOption(_Option):
    """Selectable channel (id is the instrument source name, e.g. "C1")."""


@dataclass(frozen=True)
class MeasurementOption(_Option):
    """Selectable measurement (id is the measurement name)."""


ALL_CHANNELS = ChannelOption("All", "All Channels", is_all=True)
ALL_MEASUREMENTS = MeasurementOption("All", "All Measurements", is_all=True)

DEFAULT_CHANNELS: tuple[ChannelOption, ...] = tuple(
    ChannelOption(f"C{n}", f"Channel {n}") for n in range(1, 5)
)
DEFAULT_MEASUREMENTS: tuple[MeasurementOption, ...] = tuple(
    MeasurementOption(name, name)
    for name in (
        "Mean", "Amplitude", "Frequency", "Rise Time",
        "Fall Time", "Peak-to-Peak", "Width", "Period",
    )
)


@dataclass(frozen=True)
class MeasurementResult:
    """One reading of a sweep. value is always a string."""
    timestamp: datetime
    channel: str
    measurement: str
    value: str


@dataclass(frozen=True)
class MeasurementMatrixRow:
    """One measurement across channels, for tabulated display."""
    measurement: str
    cells: tuple[str, ...]


def format_address(ip: str, scheme: AddressScheme | str = AddressScheme.IP) -> str:
    """Build the driver address string, e.g. "IP:192.168.0.100"."""
    prefix = scheme.value if isinstance(scheme, AddressScheme) else str(scheme)
    return f"{prefix}:{ip.strip()}"


# === Stub readings ===

_STUB_FORMULAS: dict[str, tuple[Callable[[float], float], str]] = {
    "frequency": (lambda b: b * 10_000, "{:.2f} Hz"),
    "period": (lambda b: 1 / max(b, 0.001), "{:.6f} s"),
    "amplitude": (lambda b: b, "{:.3f} V"),
    "mean": (lambda b: b / 2, "{:.3f} V"),
    "rise time": (lambda b: max(b / 1000, 0.0001), "{:.6f} s"),
    "fall time": (lambda b: max(b / 1000, 0.0001), "{:.6f} s"),
    "duty cycle": (lambda b: min(b * 10, 100), "{:.2f} %"),
    "rms": (lambda b: b / 3, "{:.3f} V"),
    "peak-to-peak": (lambda b: b * 1.2, "{:.3f} V"),
    "max": (lambda b: b * 1.5, "{:.3f} V"),
    "min": (lambda b: b * 0.5, "{:.3f} V"),
}
_STUB_DEFAULT: tuple[Callable[[float], float], str] = (lambda b: b, "{:.3f}")


def stub_number(measurement: str, baseline: float) -> float:
    """Synthetic numeric reading derived from baseline (0 <= baseline < 10)."""
    formula, _ = _STUB_FORMULAS.get(measurement.strip().lower(), _STUB_DEFAULT)
    return formula(baseline)


def stub_value(measurement: str, baseline: float) -> str:
    """Synthetic reading formatted with the measurement's unit."""
    formula, fmt = _STUB_FORMULAS.get(measurement.strip().lower(), _STUB_DEFAULT)
    return fmt.format(formula(baseline))


class RandomSource(Protocol):
    def random(self) -> float: ...


# === Driver Adapters ===

class DriverAdapter(ABC):
    """Vendor control interface used to talk to the instrument.

    Not safe for concurrent use; ConnectionManager serializes access.
    """

    @abstractmethod
    def connect(self, address: str) -> None:
        """Open the connection ("<scheme>:<ip>")."""
        ...

    @abstractmethod
    def write(self, command: str, eoi: bool = True) -> None:
        """Send one command string."""
        ...

    @abstractmethod
    def read(self, timeout_ms: int) -> str:
        """Read one response string."""
        ...

    @abstractmethod
    def disconnect(self) -> None:
        """Close the connection. May raise UnsupportedDriverCall."""
        ...

    def close(self) -> None:
        """Release resources held by an adapter that never connected."""
        pass


class ActiveDSODriver(DriverAdapter):
    """Teledyne LeCroy ActiveDSO ActiveX control (Windows, pywin32)."""

    def __init__(self, com: Any, prog_id: str) -> None:
        self._com = com
        self.prog_id = prog_id
        self._logger = logging.getLogger(self.__class__.__name__)

    @classmethod
    def dispatch(cls, prog_id: str) -> ActiveDSODriver | None:
        """Instantiate the control, or None if it is not installed."""
        if win32com is None:
            return None
        try:
            com = win32com.client.Dispatch(prog_id)
        except pywintypes.com_error as e:
            if e.hresult == CO_E_CLASSSTRING:
                return None
            raise
        return cls(com, prog_id)

    def connect(self, address: str) -> None:
        if not self._com.MakeConnection(address):
            raise ScopeConnectionError(f"MakeConnection failed: {address}")
        self._logger.debug(f"{self.prog_id} connected to {address}")

    def write(self, command: str, eoi: bool = True) -> None:
        if not self._com.WriteString(command, eoi):
            raise ScopeError(f"WriteString failed: {command}")
        self._logger.debug(f"WRITE: {command}")

    def read(self, timeout_ms: int) -> str:
        response = self._com.ReadString(timeout_ms)
        return "" if response is None else str(response)

    def disconnect(self) -> None:
        try:
            self._com.Disconnect()
        except AttributeError as e:
            raise UnsupportedDriverCall(f"{self.prog_id} has no Disconnect") from e
        except pywintypes.com_error as e:
            raise UnsupportedDriverCall(f"{self.prog_id} Disconnect failed: {e}") from e


class VisaDriver(DriverAdapter):
    """VISA (VXI-11) connection through pyvisa."""

    def __init__(self, rm: pyvisa.ResourceManager) -> None:
        self._rm = rm
        self._scope: MessageBasedResource | None = None
        self._logger = logging.getLogger(self.__class__.__name__)

    @classmethod
    def open_manager(cls, backend: str = "") -> VisaDriver | None:
        """Create a driver on the given VISA backend, or None if unavailable."""
        try:
            rm = pyvisa.ResourceManager(backend)
        except (OSError, ValueError) as e:
            logging.getLogger(cls.__name__).debug(f"No VISA library ({backend or 'default'}): {e}")
            return None
        return cls(rm)

    def connect(self, address: str) -> None:
        ip = address.split(":", 1)[-1]
        try:
            self._scope = self._rm.open_resource(
                f"TCPIP0::{ip}::inst0::INSTR",
                resource_pyclass=MessageBasedResource,
            )
        except pyvisa.Error as e:
            raise ScopeConnectionError(f"Connection failed: {ip}") from e

        # Suppress pyvisa logging
        logging.getLogger("pyvisa").setLevel(logging.WARNING)

    def _ensure_open(self) -> MessageBasedResource:
        if self._scope is None:
            raise ScopeConnectionError("VISA resource not open")
        return self._scope

    def write(self, command: str, eoi: bool = True) -> None:
        scope = self._ensure_open()
        scope.send_end = eoi
        scope.write(command)
        self._logger.debug(f"WRITE: {command}")

    def read(self, timeout_ms: int) -> str:
        scope = self._ensure_open()
        scope.timeout = timeout_ms
        return scope.read()

    def disconnect(self) -> None:
        try:
            if self._scope is not None:
                self._scope.close()
        finally:
            self._scope = None
            self._rm.close()

    def close(self) -> None:
        self.disconnect()


_VBS_ENGINE = re.compile(r"""^VBS 'app\.Measure\.P(\d)\.ParamEngine = "([^"]*)"'$""")
_VBS_SOURCE = re.compile(r"""^VBS 'app\.Measure\.P(\d)\.Source1 = "([^"]*)"'$""")
_VBS_VALUE = re.compile(r"""^VBS\? 'return=app\.Measure\.P(\d)\.Out\.Result\.Value'$""")


class SimulatedDriver(DriverAdapter):
    """In-memory instrument answering measurement-slot queries.

    Every write is recorded in ``writes`` and every read timeout in
    ``reads``. ``responses`` maps an exact query string to its reply;
    ``fail_on`` lists substrings that make a write raise ScopeError.
    """

    IDENTITY = "LECROY,SIMULATED,LCRYSIM0001,0.0.0"

    def __init__(
        self,
        rng: RandomSource | None = None,
        responses: dict[str, str] | None = None,
        fail_on: Iterable[str] = (),
    ) -> None:
        self._rng = rng if rng is not None else np.random.default_rng()
        self.responses = dict(responses or {})
        self.fail_on = set(fail_on)
        self.writes: list[tuple[str, bool]] = []
        self.reads: list[int] = []
        self.address: str | None = None
        self.connected = False
        self.engines: dict[int, str] = {}
        self.sources: dict[int, str] = {}
        self._pending: list[str] = []
        self._names = {m.param_engine: name for name, m in MEASUREMENT_MAP.items()}
        self._logger = logging.getLogger(self.__class__.__name__)

    def connect(self, address: str) -> None:
        self.address = address
        self.connected = True

    def write(self, command: str, eoi: bool = True) -> None:
        self.writes.append((command, eoi))
        for marker in self.fail_on:
            if marker in command:
                raise ScopeError(f"Simulated failure: {command}")

        self._logger.debug(f"WRITE: {command}")
        if command in self.responses:
            self._pending.append(self.responses[command])
            return
        if command == IDN_QUERY:
            self._pending.append(self.IDENTITY)
            return
        if command == QUERY_MARKER:
            if not self._pending:
                self._pending.append("1")
            return

        match = _VBS_ENGINE.match(command)
        if match:
            self.engines[int(match.group(1))] = match.group(2)
            return
        match = _VBS_SOURCE.match(command)
        if match:
            self.sources[int(match.group(1))] = match.group(2)
            return
        match = _VBS_VALUE.match(command)
        if match:
            engine = self.engines.get(int(match.group(1)), "")
            baseline = float(self._rng.random()) * 10
            value = stub_number(self._names.get(engine, engine), baseline)
            self._pending.append(f"{value:.6E}")

    def read(self, timeout_ms: int) -> str:
        self.reads.append(timeout_ms)
        return self._pending.pop(0) if self._pending else ""

    def disconnect(self) -> None:
        self.connected = False
        self._pending.clear()


def resolve_driver(identifier: str) -> DriverAdapter | None:
    """Instantiate the driver behind an identifier, or None if unavailable.

    Identifiers:
        "LeCroy.*"          ActiveDSO ProgID (pywin32)
        "visa", "visa@py"   pyvisa on the default / named backend
        "simulated"         SimulatedDriver
    """
    logger = logging.getLogger("resolve_driver")
    ident = identifier.strip()
    if ident.lower().startswith("lecroy."):
        return ActiveDSODriver.dispatch(ident)
    if ident.lower() == "visa" or ident.lower().startswith("visa@"):
        _, _, backend = ident.partition("@")
        return VisaDriver.open_manager(f"@{backend}" if backend else "")
    if ident.lower() == "simulated":
        return SimulatedDriver()
    logger.debug(f"Unknown driver identifier: {identifier}")
    return None


# === Connection Manager ===

class ConnectionManager:
    """Owns the driver handle and serializes all traffic through it."""

    def __init__(
        self,
        driver_ids: Sequence[str] = DEFAULT_DRIVER_IDS,
        scheme: AddressScheme = AddressScheme.IP,
        resolver: Callable[[str], DriverAdapter | None] = resolve_driver,
        max_workers: int = 1,
    ) -> None:
        self._driver_ids = tuple(driver_ids)
        self._scheme = scheme
        self._resolver = resolver
        self._max_workers = max_workers
        self._driver: DriverAdapter | None = None
        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.RLock()
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self) -> ConnectionManager:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def has_driver(self) -> bool:
        """False while connected in stub mode."""
        return self._driver is not None

    @property
    def scheme(self) -> AddressScheme:
        return self._scheme

    @property
    def lock(self) -> threading.RLock:
        """Lock guarding the driver; hold it to keep several exchanges together."""
        return self._lock

    def connect(self, ip: str) -> bool:
        """Connect to the scope at ip.

        Returns True when connected, including stub mode when no driver can
        be resolved. Returns False if the driver fails to instantiate or
        handshake; nothing is retained in that case.
        """
        with self._lock:
            if self.is_connected:
                return True
            address = format_address(ip, self._scheme)
            driver = None
            try:
                driver = self._resolve()
                if driver is None:
                    self._logger.warning(
                        f"No oscilloscope driver found ({', '.join(self._driver_ids)}). "
                        "Running in stub mode (no scope calls will be made)."
                    )
                    self._state = ConnectionState.CONNECTED
                    return True
                driver.connect(address)
            except Exception as e:
                self._logger.error(f"Failed to connect to oscilloscope at {address}: {e}", exc_info=True)
                if driver is not None:
                    try:
                        driver.close()
                    except Exception as close_error:
                        self._logger.debug(f"Error releasing driver: {close_error}")
                self._driver = None
                self._state = ConnectionState.DISCONNECTED
                return False

            self._driver = driver
            self._state = ConnectionState.CONNECTED
            self._logger.info(f"Connected to oscilloscope at {address}")
            return True

    def _resolve(self) -> DriverAdapter | None:
        for identifier in self._driver_ids:
            driver = self._resolver(identifier)
            if driver is not None:
                self._logger.debug(f"Driver resolved: {identifier}")
                return driver
            self._logger.debug(f"Driver not available: {identifier}")
        return None

    def disconnect(self) -> None:
        """Release the driver. Always ends DISCONNECTED."""
        with self._lock:
            if not self.is_connected:
                return
            try:
                if self._driver is not None:
                    self._driver.disconnect()
            except UnsupportedDriverCall:
                # Some ActiveDSO variants do not expose a disconnect call
                pass
            except Exception as e:
                self._logger.warning(f"Error while disconnecting from oscilloscope: {e}", exc_info=True)
            finally:
                self._driver = None
                self._state = ConnectionState.DISCONNECTED
                self._logger.info("Disconnected from oscilloscope")

    def close(self) -> None:
        """Disconnect and stop the worker pool."""
        self.disconnect()
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def _ensure_connected(self) -> None:
        """Raise if not connected."""
        if not self.is_connected:
            raise ScopeConnectionError("Oscilloscope is not connected")

    def exchange(self, fn: Callable[[DriverAdapter | None], T]) -> T:
        """Run fn(driver) while holding the driver lock. driver is None in stub mode.

        Raises:
            ScopeConnectionError: not connected.
        """
        with self._lock:
            self._ensure_connected()
            return fn(self._driver)

    def send_command(self, command: str) -> str:
        """Send a raw command and return the trimmed response.

        Failures during the exchange come back as "Error: <message>".

        Raises:
            ScopeConnectionError: not connected.
        """
        with self._lock:
            self._ensure_connected()
            if self._driver is None:
                return STUB_RESPONSE
            try:
                self._driver.write(command)
                self._driver.write(HEADER_OFF_COMMAND)
                self._driver.write(QUERY_MARKER)
                response = self._driver.read(COMMAND_TIMEOUT_MS).strip()
            except Exception as e:
                self._logger.error(f"Error sending command {command!r}: {e}", exc_info=True)
                return f"Error: {e}"
            self._logger.debug(f"QUERY: {command} -> {response}")
            return response

    def get_serial_number(self) -> str:
        """Serial number field of the instrument identity.

        Raises:
            ScopeConnectionError: not connected.
        """
        with self._lock:
            self._ensure_connected()
            if self._driver is None:
                return STUB_SERIAL
            try:
                self._driver.write(IDN_QUERY)
                response = self._driver.read(SHORT_TIMEOUT_MS).strip()
            except Exception as e:
                self._logger.warning(f"Could not read serial number: {e}")
                return UNKNOWN_SERIAL

        # Example: "LECROY,WP804HD,LCRY4751N12345,11.2.0"
        parts = [p.strip() for p in response.split(",")]
        serial = parts[2] if len(parts) >= 3 else response
        return serial or UNKNOWN_SERIAL

    # === Worker ===

    def submit(self, fn: Callable[..., T], *args: Any, cancel: threading.Event | None = None) -> Future[T]:
        """Run fn(*args) on the worker pool.

        The cancel event is checked only when the task starts; a running
        exchange is never interrupted.
        """
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="scope-worker"
                )
            executor = self._executor

        def run() -> T:
            if cancel is not None and cancel.is_set():
                raise OperationCancelledError(f"{getattr(fn, '__name__', fn)} cancelled")
            return fn(*args)

        return executor.submit(run)

    async def connect_async(self, ip: str, cancel: threading.Event | None = None) -> bool:
        return await asyncio.wrap_future(self.submit(self.connect, ip, cancel=cancel))

    async def disconnect_async(self, cancel: threading.Event | None = None) -> None:
        await asyncio.wrap_future(self.submit(self.disconnect, cancel=cancel))

    async def send_command_async(self, command: str, cancel: threading.Event | None = None) -> str:
        return await asyncio.wrap_future(self.submit(self.send_command, command, cancel=cancel))

    async def get_serial_number_async(self, cancel: threading.Event | None = None) -> str:
        return await asyncio.wrap_future(self.submit(self.get_serial_number, cancel=cancel))


# === Measurement Engine ===

class MeasurementEngine:
    """Runs measurement sweeps through a ConnectionManager."""

    def __init__(
        self,
        connection: ConnectionManager,
        rng: RandomSource | None = None,
        mapping: dict[str, MeasurementMapping] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._connection = connection
        self._rng = rng if rng is not None else np.random.default_rng()
        self._mapping = MEASUREMENT_MAP if mapping is None else mapping
        self._clock = clock
        self._logger = logging.getLogger(self.__class__.__name__)

    def fetch_measurements(
        self,
        measurements: Iterable[MeasurementOption],
        channels: Iterable[ChannelOption],
    ) -> list[MeasurementResult]:
        """Read every (channel, measurement) pair, channel-major.

        Sentinel ("all") entries are ignored. A failing pair reads "N/A"
        and the sweep continues.

        Raises:
            ScopeConnectionError: not connected.
        """
        measurement_targets = [m for m in measurements if not m.is_all]
        channel_targets = [c for c in channels if not c.is_all]
        results: list[MeasurementResult] = []

        with self._connection.lock:
            if not self._connection.is_connected:
                raise ScopeConnectionError("Oscilloscope is not connected")
            if not measurement_targets or not channel_targets:
                return results

            for channel in channel_targets:
                for measurement in measurement_targets:
                    try:
                        value = self.read_measurement(channel.id, measurement.id)
                    except Exception as e:
                        self._logger.error(
                            f"Failed to read {measurement.display_name} on {channel.display_name}: {e}",
                            exc_info=True,
                        )
                        value = NOT_AVAILABLE

                    results.append(MeasurementResult(
                        timestamp=self._clock(),
                        channel=channel.display_name,
                        measurement=measurement.display_name,
                        value=value,
                    ))

        self._logger.info(
            f"Fetched {len(results)} measurements across {len(channel_targets)} channel(s)."
        )
        return results

    async def fetch_measurements_async(
        self,
        measurements: Iterable[MeasurementOption],
        channels: Iterable[ChannelOption],
        cancel: threading.Event | None = None,
    ) -> list[MeasurementResult]:
        if not self._connection.is_connected:
            raise ScopeConnectionError("Oscilloscope is not connected")
        future = self._connection.submit(
            self.fetch_measurements, list(measurements), list(channels), cancel=cancel
        )
        return await asyncio.wrap_future(future)

    def read_measurement(self, channel_id: str, measurement_id: str) -> str:
        """Read one measurement on one channel.

        Stub mode returns a synthetic value. Live mode assigns the
        measurement's engine and the channel to its slot, then queries the
        slot value.

        Raises:
            MeasurementMappingError: live mode and the measurement has no slot.
        """
        return self._connection.exchange(
            lambda driver: self._read_slot(driver, channel_id, measurement_id)
        )

    def _read_slot(self, driver: DriverAdapter | None, channel_id: str, measurement_id: str) -> str:
        if driver is None:
            return self._stub_value(measurement_id)

        mapping = self._mapping.get(measurement_id.strip().lower())
        if mapping is None:
            raise MeasurementMappingError(f"Measurement mapping not found for {measurement_id}")

        slot = mapping.slot
        driver.write(f"""VBS 'app.Measure.P{slot}.ParamEngine = "{mapping.param_engine}"'""")
        driver.write(f"""VBS 'app.Measure.P{slot}.Source1 = "{channel_id}"'""")
        driver.write(f"VBS? 'return=app.Measure.P{slot}.Out.Result.Value'")
        value = (driver.read(SHORT_TIMEOUT_MS) or "").strip()
        return value or NOT_AVAILABLE

    def _stub_value(self, measurement_id: str) -> str:
        baseline = float(self._rng.random()) * 10
        return stub_value(measurement_id, baseline)


# === Selection / Tabulation ===

def expand_selection(options: Iterable[_Option], selected: Iterable[_Option]) -> list[_Option]:
    """Resolve a UI selection to concrete targets.

    A selected sentinel, or an empty selection, means every non-sentinel
    option. Sentinels never appear in the result.
    """
    concrete = [o for o in options if not o.is_all]
    chosen = list(selected)
    if not chosen or any(o.is_all for o in chosen):
        return concrete
    return [o for o in chosen if not o.is_all]


def to_matrix(results: Iterable[MeasurementResult]) -> tuple[list[str], list[MeasurementMatrixRow]]:
    """Tabulate sweep results: (channel header, one row per measurement)."""
    channels: list[str] = []
    measurements: list[str] = []
    values: dict[tuple[str, str], str] = {}
    for r in results:
        if r.channel not in channels:
            channels.append(r.channel)
        if r.measurement not in measurements:
            measurements.append(r.measurement)
        values[(r.measurement, r.channel)] = r.value

    rows = [
        MeasurementMatrixRow(
            measurement=m,
            cells=tuple(values.get((m, ch), "") for ch in channels),
        )
        for m in measurements
    ]
    return channels, rows
