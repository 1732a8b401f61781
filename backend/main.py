"""
BlueShare: FastAPI application entry point.

Starts the Transfer Manager (discovery, negotiation and framed file
transfer over RFCOMM) and serves the REST API plus the WebSocket event
feed for the UI.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import EventBroadcaster
from config import API_HOST, API_PORT, APP_NAME, DEVICE_NAME
from discovery.bluetoothctl import BluetoothctlAdapter
from transfer.manager import TransferManager
from transport.rfcomm import RfcommSocketProvider

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
transfer_manager = TransferManager(
    adapter=BluetoothctlAdapter(),
    provider=RfcommSocketProvider(),
)
broadcaster = EventBroadcaster(snapshot_provider=transfer_manager.snapshot)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the Bluetooth stack; tear the connection down on exit."""
    logger.info(f"Starting {APP_NAME} as {DEVICE_NAME!r}...")
    transfer_manager.on_event(broadcaster.handle_event)

    try:
        await transfer_manager.start()
    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise

    radio = await transfer_manager.radio_status()
    if not radio["supported"]:
        logger.warning("No Bluetooth stack found on this host")
    elif not radio["enabled"]:
        logger.warning("Bluetooth is off; connections will fail until it is enabled")
    logger.info(f"{APP_NAME} API on http://{API_HOST}:{API_PORT}")

    try:
        yield
    finally:
        logger.info(f"Shutting down {APP_NAME}...")
        await transfer_manager.stop()


app = FastAPI(title=APP_NAME, version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

init_routes(transfer_manager)
app.include_router(router)


@app.websocket("/ws")
async def events(websocket: WebSocket):
    """Push manager events to one UI client until it goes away."""
    await broadcaster.connect(websocket)
    try:
        while True:
            # Clients only listen; anything they send is ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await broadcaster.disconnect(websocket)


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT, log_level="info")


if __name__ == "__main__":
    run()
