from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from .config import config
from .db import init_db
from .api.endpoints import router as api_router
from .wsmanager import manager

# Create FastAPI app
app = FastAPI(
    title="Trip Ops Costing Engine",
    description="Checkpoint logging with live trip costing and status projection",
    version="1.0.0",
    debug=config.debug
)

if config.enable_cors:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Include API routes
app.include_router(api_router, prefix="/api")

@app.on_event("startup")
async def startup():
    """Initialize database on startup."""
    init_db()

@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Trip Ops Costing Engine", "docs": "/docs"}

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}

@app.websocket("/ws/trips")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint streaming trip costing updates."""
    if not await manager.connect(websocket):
        return
    try:
        while True:
            # Keep connection alive - clients only listen
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)
