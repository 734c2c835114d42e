"""
BoondManager Sync & Data Quality - HTTP API
FastAPI application exposing sync (production -> sandbox), data quality
analysis, exports and the cached application dictionary.
"""

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, Optional

from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from boond_client import BoondManagerClient, fetch_snapshot
from config import Config, load_config, setup_logging
from dictionary_cache import DictionaryCache
from entities import Environment, EntityType
from errors import BoondError, ConfigurationError, SyncAborted
from export_service import EXPORT_FORMATS, ExportService, export_filename
from quality import QualityAnalyzer
from sync_engine import SyncEngine

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"

# Global services
config: Optional[Config] = None
clients: Dict[Environment, BoondManagerClient] = {}
dictionary_cache: Optional[DictionaryCache] = None
sync_engine: Optional[SyncEngine] = None
analyzer = QualityAnalyzer()
exporter = ExportService()


def init_services(cfg: Config, env_clients: Optional[Dict[Environment, BoondManagerClient]] = None) -> None:
    """Build the clients, dictionary cache and sync engine from configuration"""
    global config, clients, dictionary_cache, sync_engine

    config = cfg
    clients = env_clients or {env: BoondManagerClient.from_config(cfg, env) for env in Environment}
    dictionary_cache = DictionaryCache(
        {env: client.fetch_dictionary for env, client in clients.items()},
        ttl=cfg.dictionary_ttl,
    )
    sync_engine = SyncEngine(
        clients[Environment.PRODUCTION],
        clients[Environment.SANDBOX],
        workers=cfg.workers,
    )
    logger.info(f"✓ BoondManager services initialized ({cfg.base_url}, {cfg.workers} sync workers)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup"""
    if sync_engine is None:
        try:
            cfg = load_config()
            setup_logging(cfg.log_settings.get("level", "INFO"), cfg.log_settings.get("file"))
            init_services(cfg)
        except ConfigurationError as e:
            logger.error(f"BoondManager services not configured: {e}")

    logger.info("✓ BoondManager sync server started")
    yield


app = FastAPI(
    title="BoondManager Sync",
    description="Production to sandbox sync and data quality for BoondManager",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "message": message, **extra})


def _not_configured() -> JSONResponse:
    return _error(500, "BoondManager services not configured. Check config.yaml or BOOND_* variables")


def _boond_error(e: BoondError) -> JSONResponse:
    """Configuration problems are ours (500); everything else came from upstream (502)"""
    if isinstance(e, ConfigurationError):
        return _error(500, str(e))
    return _error(502, str(e))


def _parse_entity(entity: Optional[str]) -> Optional[EntityType]:
    if not entity or entity == "all":
        return None
    return EntityType.parse(entity)


async def _in_executor(func, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, func, *args)


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(),
        version=APP_VERSION,
    )


@app.get("/api/status")
async def connection_status():
    """Check that both BoondManager tenants answer with the configured credentials"""
    if not clients:
        return _not_configured()
    results = {}
    for env, client in clients.items():
        results[env.value] = await _in_executor(client.test_connection)
    return {"status": "success", "connected": results}


@app.post("/api/sync")
async def run_sync(timeout: Optional[float] = Query(None, gt=0)):
    """Copy every production record into the sandbox"""
    engine = sync_engine
    if engine is None:
        return _not_configured()

    cancel = threading.Event()
    try:
        result = await _in_executor(lambda: engine.run(cancel_event=cancel, timeout=timeout))
    except asyncio.CancelledError:
        # Caller went away: let in-flight creates finish, start nothing new
        cancel.set()
        raise
    except SyncAborted as e:
        partial = e.result.to_dict() if e.result is not None else None
        return _error(502, str(e), result=partial)
    except BoondError as e:
        logger.error(f"Sync failed: {e}")
        return _boond_error(e)

    return result.to_dict()


@app.get("/api/quality")
async def quality_analysis(env: Environment = Query(...)):
    """Analyze one environment: issues, duplicate groups and summary"""
    client = clients.get(env)
    if client is None:
        return _not_configured()

    try:
        snapshot = await _in_executor(fetch_snapshot, client)
    except BoondError as e:
        logger.error(f"Quality analysis failed for {env.value}: {e}")
        return _boond_error(e)

    return analyzer.analyze(snapshot).to_dict()


@app.get("/api/export")
async def export_data(env: Environment = Query(...),
                      format: str = Query("json"),
                      clean: bool = Query(False),
                      entity: Optional[str] = Query(None)):
    """Download records of one environment as JSON or CSV"""
    fmt = format.lower()
    if fmt not in EXPORT_FORMATS:
        return _error(400, f"Unsupported format '{format}'. Use one of: {', '.join(EXPORT_FORMATS)}")
    try:
        entity_type = _parse_entity(entity)
    except ValueError as e:
        return _error(400, str(e))

    client = clients.get(env)
    if client is None:
        return _not_configured()

    try:
        snapshot = await _in_executor(fetch_snapshot, client, [entity_type] if entity_type else None)
    except BoondError as e:
        logger.error(f"Export failed for {env.value}: {e}")
        return _boond_error(e)

    content = exporter.export(snapshot, fmt=fmt, clean=clean, entity=entity_type)
    filename = export_filename(entity_type, env.value, fmt)
    media_type = "application/json" if fmt == "json" else "text/csv"

    return StreamingResponse(
        iter([content]),
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@app.post("/api/export/preview")
async def export_preview(env: Environment = Query(...)):
    """Cleaned records with per-type counts, as the clean export would produce them"""
    client = clients.get(env)
    if client is None:
        return _not_configured()

    try:
        snapshot = await _in_executor(fetch_snapshot, client)
    except BoondError as e:
        logger.error(f"Export preview failed for {env.value}: {e}")
        return _boond_error(e)

    return exporter.preview(snapshot)


@app.get("/api/dictionary")
async def get_dictionary(env: Environment = Query(...), refresh: bool = Query(False)):
    """Application dictionary for one environment, served from cache while fresh"""
    cache = dictionary_cache
    if cache is None:
        return _not_configured()

    try:
        result = await _in_executor(cache.get, env, refresh)
    except BoondError as e:
        logger.error(f"Dictionary fetch failed for {env.value}: {e}")
        return _boond_error(e)

    return result.to_dict()


@app.post("/api/dictionary/clear")
async def clear_dictionary(env: Optional[Environment] = Query(None)):
    """Drop cached dictionaries so the next read fetches fresh data"""
    cache = dictionary_cache
    if cache is None:
        return _not_configured()
    cache.clear(env)
    return {"status": "success", "cleared": env.value if env else "all"}


def start_server(host: str = "0.0.0.0", port: int = 8004):
    """Start the server manually"""
    import uvicorn
    print("🔄 Starting BoondManager Sync API...")
    print(f"📖 API Documentation at: http://localhost:{port}/docs")
    print("Press Ctrl+C to stop the server")
    try:
        uvicorn.run(app, host=host, port=port)
    except KeyboardInterrupt:
        print("\n👋 Server stopped")


if __name__ == "__main__":
    start_server()
