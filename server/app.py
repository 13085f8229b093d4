import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from center.call_center import CallCenter
from db.database import StorageFault
from recorder.devices import DeviceUnavailable
from server.routes import create_router

logger = logging.getLogger(__name__)


def create_app(center: CallCenter) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await center.start()
        try:
            yield
        finally:
            await center.close()

    app = FastAPI(title="CallCenter", version="0.1.0", lifespan=lifespan)
    app.state.center = center

    @app.exception_handler(StorageFault)
    async def storage_fault(request: Request, exc: StorageFault):
        logger.error("Storage fault on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    @app.exception_handler(DeviceUnavailable)
    async def device_unavailable(request: Request, exc: DeviceUnavailable):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    router = create_router(center)
    app.include_router(router, prefix="/api")

    return app
