"""
BlueZ adapter driven through `bluetoothctl`.

One interactive `bluetoothctl` process is kept running as a monitor: its
`[NEW]` / `[CHG]` lines feed discovery, bonding, radio-power and link
events, and scan/pair commands are written to its stdin. One-shot queries
(`show`, `devices Paired`) run as separate short-lived processes.
"""

import asyncio
import logging
import re
import shutil

from config import SCAN_DURATION
from discovery.adapter import BluetoothAdapter
from discovery.models import AdapterEvent, BondState, PeerDevice
from transport.errors import PermissionDenied, RadioUnavailable

logger = logging.getLogger(__name__)

BLUETOOTHCTL = "bluetoothctl"
QUERY_TIMEOUT = 10  # seconds

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]|[\x01\x02]")
_PROMPT = re.compile(r"^(\[[^\]]*\][#>]\s*)+")
_DEVICE_LINE = re.compile(
    r"^Device\s+(?P<address>[0-9A-Fa-f:]{17})\s*(?P<name>.*)$"
)
_EVENT_LINE = re.compile(
    r"^\[(?P<kind>NEW|CHG|DEL)\]\s+(?P<obj>Device|Controller)\s+"
    r"(?P<address>[0-9A-Fa-f:]{17})\s*(?P<rest>.*)$"
)

_PERMISSION_MARKERS = ("NotPermitted", "Not authorized", "Permission denied")
_NO_RADIO_MARKERS = ("No default controller", "not available", "NotReady")


def clean_line(raw: str) -> str:
    """Strip colour codes and interactive prompts from a bluetoothctl line."""
    return _PROMPT.sub("", _ANSI_ESCAPE.sub("", raw)).strip()


def parse_device_line(line: str, bonded: bool = False) -> PeerDevice | None:
    """Parse `Device AA:BB:CC:DD:EE:FF Name` into a PeerDevice."""
    match = _DEVICE_LINE.match(clean_line(line))
    if not match:
        return None
    address = match.group("address")
    name = match.group("name").strip()
    # Nameless devices are listed under their address with dashes
    if not name or name == address.replace(":", "-"):
        name = None
    return PeerDevice(address=address, name=name, bonded=bonded)


def _raise_for_output(text: str) -> None:
    if any(marker in text for marker in _PERMISSION_MARKERS):
        raise PermissionDenied(text.strip())
    if any(marker in text for marker in _NO_RADIO_MARKERS):
        raise RadioUnavailable(text.strip())


class BluetoothctlAdapter(BluetoothAdapter):
    """BluetoothAdapter backed by BlueZ's command-line client."""

    def __init__(self, scan_duration: float = SCAN_DURATION) -> None:
        super().__init__()
        self._scan_duration = scan_duration
        self._monitor: asyncio.subprocess.Process | None = None
        self._monitor_task: asyncio.Task | None = None
        self._scan_timer: asyncio.TimerHandle | None = None
        self._scanning = False
        self._pairing: PeerDevice | None = None

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    async def start(self) -> None:
        """Spawn the monitor process."""
        if self._monitor is not None:
            return
        try:
            self._monitor = await asyncio.create_subprocess_exec(
                BLUETOOTHCTL,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as e:
            raise RadioUnavailable(f"{BLUETOOTHCTL} not found") from e
        self._monitor_task = asyncio.create_task(self._read_monitor())
        logger.info("bluetoothctl monitor started")

    async def close(self) -> None:
        if self._scan_timer:
            self._scan_timer.cancel()
        if self._monitor_task:
            self._monitor_task.cancel()
        if self._monitor and self._monitor.returncode is None:
            self._monitor.terminate()
            try:
                await asyncio.wait_for(self._monitor.wait(), timeout=QUERY_TIMEOUT)
            except asyncio.TimeoutError:
                self._monitor.kill()
        self._monitor = None
        self._scanning = False
        logger.info("bluetoothctl monitor stopped")

    # --- One-shot queries ---

    async def _query(self, *args: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                BLUETOOTHCTL,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as e:
            raise RadioUnavailable(f"{BLUETOOTHCTL} not found") from e
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=QUERY_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            raise RadioUnavailable(f"{BLUETOOTHCTL} {' '.join(args)} timed out")
        text = out.decode("utf-8", errors="replace")
        _raise_for_output(text)
        return text

    async def is_supported(self) -> bool:
        if shutil.which(BLUETOOTHCTL) is None:
            return False
        try:
            await self._query("show")
        except RadioUnavailable:
            return False
        except PermissionDenied:
            # A controller exists, we just may not manage it
            return True
        return True

    async def is_enabled(self) -> bool:
        try:
            text = await self._query("show")
        except (PermissionDenied, RadioUnavailable):
            return False
        return any(clean_line(line) == "Powered: yes" for line in text.splitlines())

    async def list_bonded_peers(self) -> list[PeerDevice]:
        text = await self._query("devices", "Paired")
        if "Invalid command" in text:
            # BlueZ before 5.65
            text = await self._query("paired-devices")
        peers = []
        for line in text.splitlines():
            peer = parse_device_line(line, bonded=True)
            if peer:
                peers.append(peer)
        return peers

    # --- Monitor commands ---

    async def _command(self, command: str) -> None:
        # One line on stdin is exactly one command
        if "\n" in command or "\r" in command:
            raise ValueError(f"Refusing multi-line bluetoothctl command: {command!r}")
        if self._monitor is None:
            await self.start()
        assert self._monitor is not None and self._monitor.stdin is not None
        logger.debug(f"bluetoothctl <- {command}")
        self._monitor.stdin.write(f"{command}\n".encode("utf-8"))
        await self._monitor.stdin.drain()

    async def start_scan(self) -> None:
        await self._command("scan on")
        self._scanning = True
        loop = asyncio.get_running_loop()
        if self._scan_timer:
            self._scan_timer.cancel()
        self._scan_timer = loop.call_later(
            self._scan_duration, lambda: asyncio.ensure_future(self.stop_scan())
        )

    async def stop_scan(self) -> None:
        if self._scan_timer:
            self._scan_timer.cancel()
            self._scan_timer = None
        was_scanning = self._scanning
        self._scanning = False
        await self._command("scan off")
        if was_scanning:
            self._emit(AdapterEvent.DISCOVERY_FINISHED, {})

    async def request_bond(self, peer: PeerDevice) -> None:
        self._pairing = peer
        await self._command(f"pair {peer.address}")

    async def set_discoverable(self, seconds: int) -> None:
        await self._command(f"discoverable-timeout {seconds}")
        await self._command("discoverable on")

    async def set_alias(self, name: str) -> None:
        await self._command(f"system-alias {name}")

    # --- Monitor output ---

    async def _read_monitor(self) -> None:
        assert self._monitor is not None and self._monitor.stdout is not None
        try:
            while True:
                raw = await self._monitor.stdout.readline()
                if not raw:
                    logger.warning("bluetoothctl monitor exited")
                    break
                self.handle_line(raw.decode("utf-8", errors="replace"))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"bluetoothctl monitor error: {e}")

    def handle_line(self, raw: str) -> None:
        """Translate one line of monitor output into adapter events."""
        line = clean_line(raw)
        if not line:
            return
        logger.debug(f"bluetoothctl -> {line}")

        if line.startswith("Failed to pair"):
            if self._pairing:
                peer, self._pairing = self._pairing, None
                self._emit(
                    AdapterEvent.BOND_STATE_CHANGED,
                    {"peer": peer, "bond_state": BondState.FAILED},
                )
            return

        match = _EVENT_LINE.match(line)
        if not match:
            return
        kind, obj = match.group("kind"), match.group("obj")
        address = match.group("address").upper()
        rest = match.group("rest").strip()

        if obj == "Controller":
            if rest == "Powered: no":
                self._scanning = False
                self._emit(AdapterEvent.RADIO_STATE_CHANGED, {"enabled": False})
            elif rest == "Powered: yes":
                self._emit(AdapterEvent.RADIO_STATE_CHANGED, {"enabled": True})
            elif rest == "Discovering: no" and self._scanning:
                self._scanning = False
                self._emit(AdapterEvent.DISCOVERY_FINISHED, {})
            return

        if kind == "NEW" and self._scanning:
            peer = parse_device_line(f"Device {address} {rest}")
            if peer:
                self._emit(AdapterEvent.PEER_FOUND, {"peer": peer})
        elif kind == "CHG":
            if rest in ("Paired: yes", "Bonded: yes"):
                name = self._pairing.name if self._pairing and self._pairing.address == address else None
                self._pairing = None
                self._emit(
                    AdapterEvent.BOND_STATE_CHANGED,
                    {
                        "peer": PeerDevice(address=address, name=name, bonded=True),
                        "bond_state": BondState.BONDED,
                    },
                )
            elif rest == "Connected: no":
                self._emit(AdapterEvent.LINK_LOST, {"address": address})
