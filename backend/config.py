"""Application-wide configuration constants."""

import platform
from pathlib import Path

# --- Identity ---
APP_NAME = "BlueShare"
DEVICE_NAME = platform.node()  # default to hostname, user can override

# --- API ---
API_HOST = "127.0.0.1"
API_PORT = 8765

# --- Service identifiers ---
# Several well-known UUIDs are tried because stacks differ in which service
# records they expose.
SERIAL_PORT_UUID = "00001101-0000-1000-8000-00805F9B34FB"  # SPP
APP_SERVICE_UUID = "fa87c0d0-afac-11de-8a39-0800200c9a66"
ANDROID_SERVICE_UUID = "8ce255c0-200a-11e0-ac64-0800200c9a66"

SERVICE_IDS = (SERIAL_PORT_UUID, APP_SERVICE_UUID, ANDROID_SERVICE_UUID)

# RFCOMM channel each service identifier is bound to locally / expected on
# the peer. Linux sockets address RFCOMM by channel, not by UUID.
SERVICE_CHANNELS = {
    SERIAL_PORT_UUID: 1,
    APP_SERVICE_UUID: 2,
    ANDROID_SERVICE_UUID: 3,
}

# Last-resort channels tried directly, without a service lookup
RAW_CHANNELS = (1, 2, 3, 4, 5)

# --- Negotiation ---
ACCEPT_TIMEOUT = 30  # seconds per accept attempt
LISTEN_WINDOW = 120  # seconds the listener stays up overall
ACCEPT_RETRY_DELAY = 1  # seconds between failed accepts
CONNECT_TIMEOUT = 15  # seconds per connect attempt
BOND_TIMEOUT = 120  # seconds to wait for the user to confirm pairing
DISCOVERABLE_DURATION = 300  # seconds
SCAN_DURATION = 12  # seconds

# --- Transfer ---
BUFFER_SIZE = 4096
CHUNK_DELAY = 0.01  # pacing between body chunks
NAME_SETTLE_DELAY = 0.2  # pause after the name chunk
SIZE_SETTLE_DELAY = 0.5  # pause after the size chunk

# --- Storage ---
DEFAULT_SAVE_DIR = str(Path.home() / "Downloads")
FALLBACK_SAVE_DIR = str(Path.home() / ".local" / "share" / "blueshare" / "received")
