import asyncio
import logging

from .cec_protocol import (
    OPCODE_ACTIVE_SOURCE,
    OPCODE_INACTIVE_SOURCE,
    OPCODE_USER_CONTROL_PRESSED,
    OPCODE_USER_CONTROL_RELEASED,
    CecCommand,
    CecProtocol,
    KeyPressTracker,
    SourceTracker,
)
from .const import EVENT_QUEUE_SIZE
from .exceptions import CecError

log = logging.getLogger("cec_mqtt.cec")

READY_MARKER = "waiting for input"
OPEN_FAILED_MARKER = "unable to open"
SCAN_START_MARKER = "CEC bus information"
SCAN_END_MARKER = "currently active source"
DEFAULT_OWN_ADDRESS = 0x1  # recording device, as registered with -t r
DESTROY_TIMEOUT = 5


class CecConnection:
    """CEC adapter connection driven through libCEC's ``cec-client`` tool.

    Decoded bus events land on four bounded queues: ``commands``,
    ``key_presses``, ``source_activations`` and ``messages``. A full queue drops
    the new event; the reader never blocks on a slow consumer.
    """

    def __init__(self, process, scan_timeout=30):
        self._process = process
        self.scan_timeout = scan_timeout
        self._reader_task = None
        self._ready = None
        self._scan_future = None
        self._scan_lines = None
        self._write_lock = asyncio.Lock()
        self._keys = KeyPressTracker(asyncio.get_running_loop().time)
        self._sources = SourceTracker()
        self.own_address = DEFAULT_OWN_ADDRESS

        self.commands = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        self.key_presses = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        self.source_activations = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        self.messages = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)

    @classmethod
    async def open(
        cls, port, device_name, client_path="cec-client", log_level=12, open_timeout=30, scan_timeout=30
    ):
        log.info("Initializing CEC connection (port=%s, device name=%s)", port or "autodetect", device_name)
        args = [client_path, "-t", "r", "-o", device_name, "-d", str(log_level)]
        if port:
            args.append(port)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise CecError(f"Could not start {client_path}: {exc}") from exc

        connection = cls(process, scan_timeout)
        connection._start_reader()
        try:
            await asyncio.wait_for(connection._ready, open_timeout)
        except asyncio.TimeoutError:
            await connection.destroy()
            raise CecError(f"Timed out opening CEC adapter {port or '(autodetect)'}") from None
        except CecError:
            await connection.destroy()
            raise
        log.info("CEC connection opened (own logical address %X)", connection.own_address)
        return connection

    def _start_reader(self):
        self._ready = asyncio.get_running_loop().create_future()
        self._reader_task = asyncio.create_task(self._read_loop())

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def list(self):
        """Scan the bus and return a dict of device name -> DeviceInfo."""
        if self._scan_future is not None:
            raise CecError("A bus scan is already running")
        self._scan_future = asyncio.get_running_loop().create_future()
        try:
            await self._write("scan")
            return await asyncio.wait_for(self._scan_future, self.scan_timeout)
        except asyncio.TimeoutError:
            raise CecError("Timed out scanning the CEC bus") from None
        finally:
            self._scan_future = None
            self._scan_lines = None

    async def transmit(self, command):
        await self._write(CecProtocol.build_transmit(command))

    async def key_send(self, address, key):
        if not 0 <= address <= 0x0F:
            raise CecError(f"Invalid logical address: {address}")
        key_code = CecProtocol.parse_key(key)
        await self._write(CecProtocol.build_key_press(self.own_address, address, key_code))
        await self._write(CecProtocol.build_key_release(self.own_address, address))

    async def destroy(self):
        process = self._process
        if process.returncode is None:
            try:
                await self._write("q")
                await asyncio.wait_for(process.wait(), DESTROY_TIMEOUT)
            except (CecError, asyncio.TimeoutError):
                log.warning("cec-client did not exit, killing it")
                process.kill()
                await process.wait()
        if self._reader_task:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        log.info("CEC connection closed")

    async def _write(self, line):
        stdin = self._process.stdin
        if self._process.returncode is not None or stdin is None or stdin.is_closing():
            raise CecError("CEC connection is closed")
        log.debug("cec-client <- %s", line)
        async with self._write_lock:
            try:
                stdin.write((line + "\n").encode())
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise CecError(f"CEC connection lost: {exc}") from exc

    # ------------------------------------------------------------------
    # Output processing
    # ------------------------------------------------------------------

    async def _read_loop(self):
        stdout = self._process.stdout
        while True:
            raw = await stdout.readline()
            if not raw:
                break
            self._handle_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))

        log.warning("cec-client exited (rc=%s)", await self._process.wait())
        if not self._ready.done():
            self._ready.set_exception(CecError("cec-client exited before the adapter was opened"))
        if self._scan_future is not None and not self._scan_future.done():
            self._scan_future.set_exception(CecError("cec-client exited during bus scan"))

    def _handle_line(self, line):
        message = CecProtocol.parse_log_line(line)
        if message is not None:
            self._handle_message(message)
            return

        stripped = line.strip()
        if self._scan_future is not None:
            if stripped.startswith(SCAN_START_MARKER):
                self._scan_lines = []
                return
            if self._scan_lines is not None:
                if stripped.startswith(SCAN_END_MARKER):
                    if not self._scan_future.done():
                        self._scan_future.set_result(CecProtocol.parse_scan(self._scan_lines))
                    self._scan_lines = None
                else:
                    self._scan_lines.append(stripped)
                return

        if not self._ready.done():
            if stripped.startswith(READY_MARKER):
                self._ready.set_result(True)
            elif OPEN_FAILED_MARKER in stripped:
                self._ready.set_exception(CecError(stripped))
            elif stripped:
                log.debug("cec-client: %s", stripped)

    def _handle_message(self, message):
        own = CecProtocol.parse_own_address(message)
        if own is not None:
            self.own_address = own

        self._offer(self.messages, message)

        frame = CecProtocol.parse_frame(message)
        if frame is None or frame.opcode is None:
            return

        if frame.opcode == OPCODE_ACTIVE_SOURCE:
            for activation in self._sources.activated(frame.initiator):
                self._offer(self.source_activations, activation)
        elif frame.opcode == OPCODE_INACTIVE_SOURCE:
            for activation in self._sources.deactivated(frame.initiator):
                self._offer(self.source_activations, activation)

        if not frame.inbound:
            return

        self._offer(
            self.commands,
            CecCommand(frame.initiator, frame.destination, frame.opcode, frame.parameters),
        )
        if frame.opcode == OPCODE_USER_CONTROL_PRESSED and frame.parameters:
            self._offer(self.key_presses, self._keys.pressed(frame.parameters[0]))
        elif frame.opcode == OPCODE_USER_CONTROL_RELEASED:
            released = self._keys.released()
            if released is not None:
                self._offer(self.key_presses, released)

    @staticmethod
    def _offer(queue, event):
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            log.debug("CEC event queue full, dropping %s", event)
