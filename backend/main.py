from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import HTTP_HOST, HTTP_PORT, LOG_LEVEL
from controllers.base import AuthorizationError, ControlError
from device_manager import DeviceManager, UnknownDevice

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="SamsungTV Hub API", version="1.0.0")
manager = DeviceManager()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class DiscoverRequest(BaseModel):
    timeout: Optional[int] = None


class PairRequest(BaseModel):
    id: str = ""
    pin: Optional[str] = None
    device: Optional[Dict[str, Any]] = None


class ControlRequest(BaseModel):
    value: Any = True


@app.on_event("startup")
async def startup_event() -> None:
    await manager.startup()


@app.on_event("shutdown")
async def shutdown_event() -> None:
    await manager.shutdown()


@app.get("/api/health")
async def health() -> Dict[str, Any]:
    return manager.health()


@app.post("/api/discover")
async def discover(request: DiscoverRequest) -> Dict[str, Any]:
    try:
        devices = await manager.discover(request.timeout)
    except ValueError as error:
        raise HTTPException(status_code=400, detail=str(error)) from error
    return {"ok": True, "devices": devices, "lastScan": manager.last_scan}


@app.get("/api/discovered")
async def discovered() -> Dict[str, Any]:
    return {"ok": True, "devices": manager.get_discovered(), "lastScan": manager.last_scan}


@app.post("/api/pair")
async def pair(request: PairRequest) -> Dict[str, Any]:
    if not request.id and not request.device:
        raise HTTPException(status_code=400, detail="id or device is required")
    return await manager.pair(request.id, request.pin, request.device)


@app.get("/api/devices")
async def list_devices() -> Dict[str, Any]:
    return {"devices": manager.list_devices()}


@app.post("/api/devices")
async def add_device(payload: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return manager.add_device(payload)
    except ValueError as error:
        raise HTTPException(status_code=400, detail=str(error)) from error


@app.get("/api/devices/{name}")
async def get_device(name: str) -> Dict[str, Any]:
    try:
        return manager.get_device(name)
    except UnknownDevice as error:
        raise HTTPException(status_code=404, detail="Unknown device") from error


@app.delete("/api/devices/{device_id}")
async def remove_device(device_id: str) -> Dict[str, str]:
    try:
        await manager.remove_device(device_id)
    except UnknownDevice as error:
        raise HTTPException(status_code=404, detail="Unknown device") from error
    return {"status": "removed", "device": device_id}


@app.post("/api/devices/{name}/control/{command}")
async def control(name: str, command: str, payload: ControlRequest) -> Dict[str, Any]:
    try:
        await manager.control(name, command, payload.value)
    except UnknownDevice as error:
        raise HTTPException(status_code=404, detail="Unknown device") from error
    except ValueError as error:
        raise HTTPException(status_code=400, detail=str(error)) from error
    except AuthorizationError as error:
        raise HTTPException(status_code=403, detail=str(error)) from error
    except ControlError as error:
        raise HTTPException(status_code=502, detail=str(error)) from error
    return manager.get_device(name)


@app.get("/api/settings")
async def get_settings() -> Dict[str, Any]:
    return manager.get_settings()


@app.put("/api/settings")
async def save_settings(payload: Dict[str, Any]) -> Dict[str, Any]:
    return manager.update_settings(payload)


@app.exception_handler(Exception)
async def generic_exception_handler(_, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=HTTP_HOST, port=HTTP_PORT, reload=False)
