"""REST API routes for BlueShare."""

import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by main.py at startup
_transfer_manager = None


def init_routes(transfer_manager) -> None:
    """Inject the service dependency into the routes module."""
    global _transfer_manager
    _transfer_manager = transfer_manager


# --- State ---

@router.get("/state")
async def get_state():
    """Connection state, transfer progress and peer lists."""
    return _transfer_manager.snapshot()


@router.get("/devices")
async def list_devices():
    """Return bonded and discovered peers."""
    return _transfer_manager.cache.snapshot()


@router.post("/devices/refresh")
async def refresh_devices():
    """Reload bonded peers, including ones paired outside BlueShare."""
    return await _transfer_manager.refresh_devices()


@router.get("/radio")
async def radio_status():
    return await _transfer_manager.radio_status()


# --- Discovery ---

@router.post("/discovery/start")
async def start_discovery():
    if not await _transfer_manager.start_discovery():
        raise HTTPException(status_code=409, detail="Discovery is not available")
    return {"status": "discovering"}


@router.post("/discovery/stop")
async def stop_discovery():
    await _transfer_manager.stop_discovery()
    return {"status": "stopped"}


# --- Connection ---

class ConnectBody(BaseModel):
    address: str


@router.post("/server/start")
async def start_server():
    """Wait for a peer to connect to us."""
    if not await _transfer_manager.start_server():
        raise HTTPException(status_code=409, detail="A connection is already active or in progress")
    return {"status": "listening"}


@router.post("/connect")
async def connect(body: ConnectBody):
    """Connect to a peer by hardware address, pairing first if needed."""
    if not body.address.strip():
        raise HTTPException(status_code=400, detail="Address is required")
    if _transfer_manager.cache.lookup(body.address) is None:
        raise HTTPException(status_code=404, detail="Unknown device, run discovery first")
    if not await _transfer_manager.connect_to_device(body.address):
        raise HTTPException(status_code=409, detail="A connection is already active or in progress")
    return {"status": "connecting"}


@router.post("/disconnect")
async def disconnect():
    _transfer_manager.disconnect()
    return {"status": "disconnected"}


# --- Transfers ---

class SendBody(BaseModel):
    file_path: str


@router.post("/send")
async def send(body: SendBody):
    """Send a local file to the connected peer."""
    if not os.path.isfile(body.file_path):
        raise HTTPException(status_code=400, detail="No such file")
    if not _transfer_manager.state.is_connected:
        raise HTTPException(status_code=409, detail="Not connected")
    if not await _transfer_manager.send_file(body.file_path):
        raise HTTPException(status_code=500, detail="Transfer failed")
    return {"status": "sent"}


# --- Settings ---

class SettingsBody(BaseModel):
    device_name: str | None = None
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {
        "device_name": _transfer_manager.device_name,
        "save_dir": _transfer_manager.save_dir,
    }


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.device_name is not None:
        try:
            await _transfer_manager.set_device_name(body.device_name)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    if body.save_dir is not None:
        try:
            _transfer_manager.save_dir = body.save_dir
        except OSError as e:
            raise HTTPException(
                status_code=400, detail=f"Invalid directory: {e}"
            )
    return {"status": "updated"}
