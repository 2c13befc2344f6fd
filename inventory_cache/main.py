"""
Inventory Cache - FastAPI application

Serves "which characters own item X" lookups from the cache and exposes
the cache and preload admin surface.
"""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from config.settings import settings
from inventory_cache.exceptions import FetchTimeoutError, NetworkError
from inventory_cache.service import (
    InventoryLookupService,
    close_lookup_service,
    get_lookup_service,
)

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger("inventory_cache.main")

APP_VERSION = "v0.3.0"
APP_NAME = "Inventory Cache"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Stop the preload worker and fetch threads on shutdown."""
    yield
    close_lookup_service()


app = FastAPI(
    title=APP_NAME,
    description="Cached item holder lookups with background preloading",
    version=APP_VERSION,
    lifespan=lifespan,
)


class PreloadRequest(BaseModel):
    """Body for preload endpoints."""
    items: List[str] = Field(default_factory=list)
    limit: Optional[int] = Field(default=None, ge=1)
    background: bool = False


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "full": f"{APP_NAME} {APP_VERSION}",
    }


@app.get("/inventory/{item_name}")
def item_inventory(
    item_name: str,
    service: InventoryLookupService = Depends(get_lookup_service),
):
    """
    Characters holding an item, ordered by quantity.

    An empty holder list means nobody owns the item; a failed fetch is
    reported as an error so the page can show "data unavailable".
    """
    try:
        inventory = service.lookup(item_name)
    except FetchTimeoutError as e:
        raise HTTPException(
            status_code=504,
            detail={"status": "unavailable", "retryable": True, "error": e.message},
        )
    except NetworkError as e:
        raise HTTPException(
            status_code=502,
            detail={"status": "unavailable", "retryable": e.retryable, "error": e.message},
        )
    return inventory.to_dict()


# =============================================================================
# Cache admin
# =============================================================================

@app.get("/cache/stats")
def cache_stats(service: InventoryLookupService = Depends(get_lookup_service)):
    """Get cache statistics."""
    return service.stats()


@app.delete("/cache")
def clear_cache(service: InventoryLookupService = Depends(get_lookup_service)):
    """Clear the whole cache, including its persisted copy."""
    return {"success": "Cache cleared", "cleared": service.clear()}


@app.get("/cache/keys")
def cache_keys(service: InventoryLookupService = Depends(get_lookup_service)):
    """List cached item names."""
    return {"items": service.list_keys()}


@app.get("/cache/keys/{item_name}")
def cache_has(item_name: str, service: InventoryLookupService = Depends(get_lookup_service)):
    """Check whether an item has a fresh cache entry."""
    return {"item": item_name, "cached": service.has(item_name)}


@app.delete("/cache/keys/{item_name}")
def cache_remove(item_name: str, service: InventoryLookupService = Depends(get_lookup_service)):
    """Drop one item from the cache."""
    if not service.remove_key(item_name):
        raise HTTPException(status_code=404, detail=f"{item_name} is not cached")
    return {"success": f"Removed {item_name} from cache"}


# =============================================================================
# Preload control
# =============================================================================

@app.get("/preload/status")
def preload_status(service: InventoryLookupService = Depends(get_lookup_service)):
    return service.preload_status()


@app.post("/preload/enable")
def preload_enable(service: InventoryLookupService = Depends(get_lookup_service)):
    return service.enable_preloading()


@app.post("/preload/disable")
def preload_disable(service: InventoryLookupService = Depends(get_lookup_service)):
    return service.disable_preloading()


@app.post("/preload")
def preload(request: PreloadRequest, service: InventoryLookupService = Depends(get_lookup_service)):
    """
    Warm the cache for the items currently on screen.

    With background=true the run is queued and this returns immediately.
    """
    if request.background:
        queued = service.schedule_preload(request.items, limit=request.limit)
        return {"queued": queued, "preload": service.preload_status()}
    return service.preload(request.items, limit=request.limit).to_dict()


@app.post("/preload/force")
def preload_force(request: PreloadRequest, service: InventoryLookupService = Depends(get_lookup_service)):
    """Re-enable preloading and warm the given items now."""
    if not request.items:
        raise HTTPException(status_code=422, detail="Provide at least one item name")
    return service.force_preload(request.items).to_dict()
