# backend/app.py - FastAPI backend application

from fastapi import FastAPI, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional, Dict, Any
from datetime import datetime, timezone
import json
import logging

from backend_database import Database
from backend_models import (
    Profile, ProfileFilter, ProviderConfig, ColumnGroupDefinition, ExtractOptions,
    SessionCreateRequest, ConnectRequest, RowBatchRequest, SaveProfileRequest,
    SaveAsRequest, ApplyStateRequest, ColumnGroupsUpdate, ProfileLoadResult,
)
from backend_surface import HeadlessGridSurface
from backend_channel import InMemoryStreamingChannel, DatasourceStore, ChannelError
from backend_column_groups import ColumnGroupStorage
from backend_profile_store import (
    ProfileStoreAdapter, ProfileStoreError, ProfileNotFoundError,
    ProfileLockedError, ProfileImportError,
)
from backend_sync_engine import GridSyncEngine
from backend_config import settings

# Setup logging
logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="GridSync API",
    description="Grid state synchronization and streaming reconciliation backend",
    version="1.0.0"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize database, stores and the shared channel
db = Database(settings.DATABASE_URL)
profile_store = ProfileStoreAdapter(db)
datasources = DatasourceStore(db)
column_group_storage = ColumnGroupStorage(db)
channel = InMemoryStreamingChannel()
sessions: Dict[str, GridSyncEngine] = {}

@app.on_event("startup")
async def startup_event():
    """Initialize database on startup"""
    await db.init()
    logger.info("Database initialized")

@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    for engine in list(sessions.values()):
        await engine.close()
    sessions.clear()
    await db.close()
    logger.info("Database connection closed")

def get_session(instance_id: str) -> GridSyncEngine:
    engine = sessions.get(instance_id)
    if engine is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return engine

# Root endpoint
@app.get("/")
async def root():
    return {"message": "GridSync backend is running", "docs": "/docs"}

# Health check endpoint
@app.get("/healthz")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "1.0.0",
        "sessions": len(sessions)
    }

# Profile endpoints
@app.get("/api/profiles")
async def list_profiles(
    instanceId: Optional[str] = Query(None, description="Grid instance"),
    dataSourceId: Optional[str] = Query(None, description="Datasource used by the profile"),
    includeDeleted: bool = Query(False, description="Include soft-deleted profiles")
):
    """List profiles"""
    profiles = await profile_store.query(ProfileFilter(
        instanceId=instanceId, dataSourceId=dataSourceId, includeDeleted=includeDeleted
    ))
    return {"profiles": [p.model_dump(mode="json") for p in profiles]}

@app.post("/api/profiles")
async def create_profile(profile: Profile):
    """Create or overwrite a profile"""
    try:
        profile_id = await profile_store.save(profile)
        return {"id": profile_id, "message": "Profile saved successfully"}
    except ProfileLockedError:
        raise HTTPException(status_code=409, detail="Profile is locked")
    except ProfileStoreError as e:
        logger.error(f"Create profile failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to save profile")

@app.get("/api/profiles/{profile_id}")
async def get_profile(profile_id: str):
    """Get a specific profile"""
    profile = await profile_store.get(profile_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return profile.model_dump(mode="json")

@app.put("/api/profiles/{profile_id}")
async def update_profile(profile_id: str, profile: Profile):
    """Replace a profile"""
    try:
        await profile_store.save(profile.model_copy(update={"id": profile_id}))
        return {"message": "Profile updated successfully"}
    except ProfileLockedError:
        raise HTTPException(status_code=409, detail="Profile is locked")
    except ProfileStoreError as e:
        logger.error(f"Update profile failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to update profile")

@app.patch("/api/profiles/{profile_id}")
async def patch_profile(profile_id: str, updates: Dict[str, Any]):
    """Partially update a profile"""
    try:
        profile = await profile_store.update(profile_id, updates)
        return profile.model_dump(mode="json")
    except ProfileNotFoundError:
        raise HTTPException(status_code=404, detail="Profile not found")
    except ProfileLockedError:
        raise HTTPException(status_code=409, detail="Profile is locked")
    except ProfileStoreError as e:
        logger.error(f"Patch profile failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to patch profile")

@app.delete("/api/profiles/{profile_id}")
async def delete_profile(profile_id: str):
    """Soft delete a profile"""
    try:
        await profile_store.delete(profile_id)
        return {"message": "Profile deleted successfully"}
    except ProfileNotFoundError:
        raise HTTPException(status_code=404, detail="Profile not found")
    except ProfileLockedError:
        raise HTTPException(status_code=409, detail="Profile is locked")
    except ProfileStoreError as e:
        logger.error(f"Delete profile failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete profile")

@app.post("/api/profiles/{profile_id}/save-as")
async def save_profile_as(profile_id: str, request: SaveAsRequest):
    """Copy a profile under a new name"""
    profile = await profile_store.get(profile_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    try:
        copy = await profile_store.save_as(profile, request.name)
        return copy.model_dump(mode="json")
    except ProfileStoreError as e:
        logger.error(f"Save as failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to copy profile")

@app.post("/api/profiles/{profile_id}/default")
async def set_default_profile(profile_id: str):
    """Make a profile the default of its grid instance"""
    try:
        profile = await profile_store.set_default(profile_id)
        return profile.model_dump(mode="json")
    except ProfileNotFoundError:
        raise HTTPException(status_code=404, detail="Profile not found")
    except ProfileLockedError:
        raise HTTPException(status_code=409, detail="Profile is locked")
    except ProfileStoreError as e:
        logger.error(f"Set default failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to set default profile")

# Export / import endpoints
@app.get("/api/profiles/{profile_id}/export")
async def export_profile(profile_id: str):
    """Export a profile as a JSON download"""
    try:
        filename, text = await profile_store.export_profile(profile_id)
    except ProfileNotFoundError:
        raise HTTPException(status_code=404, detail="Profile not found")

    return Response(
        content=text,
        media_type="application/json",
        headers={"Content-Disposition": f"attachment; filename={filename}"}
    )

@app.post("/api/profiles/import")
async def import_profile(document: Dict[str, Any], instanceId: Optional[str] = Query(None)):
    """Import a profile from an exported JSON document"""
    try:
        profile = await profile_store.import_profile(json.dumps(document), instance_id=instanceId)
        return profile.model_dump(mode="json")
    except ProfileImportError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProfileLockedError:
        raise HTTPException(status_code=409, detail="Profile is locked")
    except ProfileStoreError as e:
        logger.error(f"Import failed: {e}")
        raise HTTPException(status_code=500, detail="Import failed")

# Column group endpoints
@app.get("/api/instances/{instance_id}/column-groups")
async def get_column_groups(instance_id: str):
    """Get the column groups of a grid instance"""
    groups = await column_group_storage.load(instance_id)
    return {"groups": [g.model_dump(mode="json") for g in groups]}

@app.put("/api/instances/{instance_id}/column-groups")
async def replace_column_groups(instance_id: str, update: ColumnGroupsUpdate):
    """Replace all column groups of a grid instance"""
    try:
        engine = sessions.get(instance_id)
        if engine is not None:
            await engine.column_groups.replace_groups(update.groups)
        else:
            await column_group_storage.save_all(instance_id, update.groups)
        return {"message": "Column groups saved successfully", "count": len(update.groups)}
    except Exception as e:
        logger.error(f"Save column groups failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to save column groups")

@app.post("/api/instances/{instance_id}/column-groups")
async def save_column_group(instance_id: str, group: ColumnGroupDefinition):
    """Add or update one column group"""
    try:
        engine = sessions.get(instance_id)
        if engine is not None:
            saved = await engine.column_groups.save_group(group)
        else:
            saved = await column_group_storage.save_group(instance_id, group)
        return saved.model_dump(mode="json")
    except Exception as e:
        logger.error(f"Save column group failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to save column group")

@app.delete("/api/instances/{instance_id}/column-groups/{group_id}")
async def delete_column_group(instance_id: str, group_id: str):
    """Delete a column group"""
    try:
        engine = sessions.get(instance_id)
        if engine is not None:
            deleted = await engine.column_groups.delete_group(group_id)
        else:
            deleted = await column_group_storage.delete_group(instance_id, group_id)
    except Exception as e:
        logger.error(f"Delete column group failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete column group")
    if not deleted:
        raise HTTPException(status_code=404, detail="Column group not found")
    return {"message": "Column group deleted successfully"}

# Datasource endpoints
@app.get("/api/datasources")
async def list_datasources():
    """List provider configurations"""
    try:
        configs = await datasources.list()
        return {"datasources": [c.model_dump(mode="json") for c in configs]}
    except Exception as e:
        logger.error(f"List datasources failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve datasources")

@app.post("/api/datasources")
async def save_datasource(config: ProviderConfig):
    """Create or update a provider configuration"""
    try:
        provider_id = await datasources.save(config)
    except Exception as e:
        logger.error(f"Save datasource failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to save datasource")
    for engine in sessions.values():
        engine.provider_configs.invalidate(provider_id)
    return {"id": provider_id, "message": "Datasource saved successfully"}

# Headless grid sessions
@app.post("/api/sessions/{instance_id}")
async def create_session(instance_id: str, request: SessionCreateRequest):
    """Create a headless grid for an instance and load its default profile"""
    if instance_id in sessions:
        raise HTTPException(status_code=409, detail="Session already exists")

    surface = HeadlessGridSurface(
        column_defs=request.columns or [],
        key_column=request.keyColumn or settings.DEFAULT_KEY_COLUMN,
    )
    engine = GridSyncEngine(instance_id, db, profile_store, channel, surface=surface)
    sessions[instance_id] = engine

    if request.ready:
        await engine.mark_surface_ready()
    result = await engine.load_default_profile()
    return {
        "instanceId": instance_id,
        "defaultProfile": result.value if result else None,
        "status": engine.status()
    }

@app.delete("/api/sessions/{instance_id}")
async def close_session(instance_id: str):
    """Close a headless grid"""
    engine = get_session(instance_id)
    await engine.close()
    del sessions[instance_id]
    return {"message": "Session closed"}

@app.post("/api/sessions/{instance_id}/ready")
async def mark_session_ready(instance_id: str):
    """Signal that the grid is ready, flushing any pending profile"""
    engine = get_session(instance_id)
    flushed = await engine.mark_surface_ready()
    return {"flushed": flushed, "status": engine.status()}

@app.post("/api/sessions/{instance_id}/connect")
async def connect_session(instance_id: str, request: ConnectRequest):
    """Connect the grid to a provider"""
    engine = get_session(instance_id)
    state = await engine.connect(request.providerId)
    return state.model_dump(mode="json")

@app.post("/api/sessions/{instance_id}/disconnect")
async def disconnect_session(instance_id: str):
    """Disconnect the grid from its provider"""
    engine = get_session(instance_id)
    state = await engine.disconnect()
    return state.model_dump(mode="json")

@app.post("/api/sessions/{instance_id}/rows")
async def publish_rows(instance_id: str, batch: RowBatchRequest):
    """Publish a batch of records on the grid's provider"""
    engine = get_session(instance_id)
    if not engine.provider_id:
        raise HTTPException(status_code=409, detail="Session is not connected")
    if len(batch.records) > settings.MAX_BATCH_SIZE:
        raise HTTPException(status_code=413, detail="Batch too large")

    try:
        kind = channel.publish(engine.provider_id, batch.records)
    except ChannelError as e:
        raise HTTPException(status_code=409, detail=str(e))

    for other in sessions.values():
        if other.provider_id == engine.provider_id:
            await other.process_stream()
    return {"kind": kind.value, "status": engine.status()}

@app.post("/api/sessions/{instance_id}/snapshot-complete")
async def complete_snapshot(instance_id: str):
    """Mark the provider's snapshot complete"""
    engine = get_session(instance_id)
    if not engine.provider_id:
        raise HTTPException(status_code=409, detail="Session is not connected")

    channel.complete_snapshot(engine.provider_id)
    for other in sessions.values():
        if other.provider_id == engine.provider_id:
            await other.process_stream()
    return engine.status()

@app.get("/api/sessions/{instance_id}/status")
async def session_status(instance_id: str):
    """Get connection, stream and profile status"""
    return get_session(instance_id).status()

@app.get("/api/sessions/{instance_id}/rows")
async def session_rows(instance_id: str):
    """Get the live row set"""
    engine = get_session(instance_id)
    return {"rows": engine.reconciler.get_rows()}

@app.get("/api/sessions/{instance_id}/state")
async def get_session_state(instance_id: str, includeColumnDefs: bool = Query(False)):
    """Extract the grid's current state"""
    engine = get_session(instance_id)
    state = engine.extract_state(ExtractOptions(includeColumnDefs=includeColumnDefs))
    if state is None:
        raise HTTPException(status_code=500, detail="Failed to extract grid state")
    return state.model_dump(mode="json")

@app.put("/api/sessions/{instance_id}/state")
async def apply_session_state(instance_id: str, request: ApplyStateRequest):
    """Apply a grid state, queueing it if the grid is not ready"""
    engine = get_session(instance_id)
    applied = await engine.apply_state(request.state, request.options)
    return {"applied": applied, "pending": engine.pending.state.value}

@app.post("/api/sessions/{instance_id}/reset")
async def reset_session_state(instance_id: str):
    """Reset the grid to its default state"""
    engine = get_session(instance_id)
    return {"reset": engine.reset_grid()}

@app.post("/api/sessions/{instance_id}/profiles/{profile_id}/load")
async def load_session_profile(instance_id: str, profile_id: str):
    """Load a profile into the grid"""
    engine = get_session(instance_id)
    result = await engine.load_profile(profile_id)
    if result == ProfileLoadResult.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Profile not found")
    return {"result": result.value, "status": engine.status()}

@app.post("/api/sessions/{instance_id}/profiles/save")
async def save_session_profile(instance_id: str, request: SaveProfileRequest):
    """Save the grid's current state into its active profile"""
    engine = get_session(instance_id)
    try:
        profile = await engine.save_current_profile(request.name, save_as_new=request.saveAsNew)
        return profile.model_dump(mode="json")
    except ProfileLockedError:
        raise HTTPException(status_code=409, detail="Profile is locked")
    except ProfileStoreError as e:
        logger.error(f"Save profile failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to save profile")

# Debug endpoints (development only)
if settings.DEBUG:
    @app.delete("/api/debug/reset")
    async def reset_database():
        """Reset database (debug only)"""
        try:
            for engine in list(sessions.values()):
                await engine.close()
            sessions.clear()
            await db.reset()
            return {"message": "Database reset successfully"}
        except Exception as e:
            logger.error(f"Reset failed: {e}")
            raise HTTPException(status_code=500, detail="Failed to reset database")

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("backend_app:app", host=settings.HOST, port=settings.PORT, reload=True)
