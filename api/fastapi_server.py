import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from config import config
from monitoring.logging_utils import setup_logging


alert_service = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global alert_service
    from main import MoverAlertService
    alert_service = MoverAlertService()
    task = asyncio.create_task(alert_service.start())
    try:
        yield
    finally:
        if alert_service:
            await alert_service.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


app = FastAPI(title="Futures Mover Alerts", version="1.0.0", lifespan=lifespan)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@app.get("/")
async def root():
    return {
        "service": "Futures Mover Alerts",
        "version": "1.0.0",
        "status": "running" if alert_service and alert_service.running else "stopped"
    }

@app.get("/health")
async def health():
    initialized = bool(alert_service and alert_service.pool.initialized)
    body = {
        "status": "ok" if initialized else "degraded",
        "initialized": initialized,
        "timestamp": _now(),
    }
    return JSONResponse(body, status_code=200 if initialized else 503)

@app.get("/status")
async def status():
    if not alert_service:
        return JSONResponse({"error": "Alert service not initialized"}, status_code=503)
    snapshot = alert_service.status()
    snapshot["timestamp"] = _now()
    return snapshot

if __name__ == "__main__":
    import uvicorn

    api_cfg = config.section('api')
    setup_logging(config.section('monitoring').get('log_level', 'INFO'))
    uvicorn.run(
        "api.fastapi_server:app",
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 8000)),
    )
