"""
REST API for the Relay Server

Design Decision: API Framework
==============================

Options Considered:
1. FastAPI - Modern, fast, auto-docs, async support
2. Flask - Simple, widely used, but sync-focused
3. aiohttp - Async, but less features

Decision: FastAPI
- Runs on the same event loop as the relay server, so handlers can
  call request_download() directly
- Interactive OpenAPI documentation at /docs
- Pydantic integration for validation

Endpoints:
- GET  /api/clients                 connected clients
- POST /api/download                ask a client for its file
- GET  /api/downloads/{downloadId}  status of one download
- GET  /health                      liveness + client count
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..errors import ClientNotConnected, DownloadInProgress

logger = logging.getLogger(__name__)

# Global reference to the relay server (set when app is created)
_server = None


# === Pydantic Models ===

class DownloadTrigger(BaseModel):
    """Request to pull a file from a client."""
    clientId: Optional[str] = None


class ClientInfo(BaseModel):
    """A connected client."""
    id: str
    connectedAt: str
    hasActiveDownload: bool


class ClientList(BaseModel):
    count: int
    clients: List[ClientInfo]


class DownloadInfo(BaseModel):
    clientId: str
    downloadId: str
    status: str


class DownloadResponse(BaseModel):
    success: bool
    message: str
    data: DownloadInfo


# === API Creation ===

def create_app(server=None, api_port: Optional[int] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        server: RelayServer instance to control
        api_port: Port reported by /health

    Returns:
        FastAPI application
    """
    global _server
    _server = server

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("API server starting...")
        yield
        logger.info("API server stopping...")

    app = FastAPI(
        title="File Download System API",
        description="Pull files from on-premise clients to the relay server",
        version="1.0.0",
        lifespan=lifespan,
    )

    def relay():
        if not _server:
            raise HTTPException(status_code=503, detail="Relay server not initialized")
        return _server

    @app.get("/api/clients", response_model=ClientList, tags=["Clients"])
    async def list_clients():
        """List currently connected clients, oldest registration first."""
        clients = [ClientInfo(**entry.to_dict()) for entry in relay().list_clients()]
        return ClientList(count=len(clients), clients=clients)

    @app.post("/api/download", response_model=DownloadResponse, tags=["Downloads"])
    async def trigger_download(request: DownloadTrigger):
        """
        Ask a connected client to send its file.

        Returns as soon as the request is sent; poll
        /api/downloads/{downloadId} for the outcome.
        """
        server = relay()
        client_id = (request.clientId or '').strip()
        if not client_id:
            return JSONResponse(status_code=400, content={"error": "clientId is required"})

        try:
            session = await server.request_download(client_id)
        except ClientNotConnected as e:
            return JSONResponse(status_code=404, content={"success": False, "error": str(e)})
        except DownloadInProgress as e:
            return JSONResponse(status_code=409, content={"success": False, "error": str(e)})

        return DownloadResponse(
            success=True,
            message=f"Download initiated from client {client_id}",
            data=DownloadInfo(
                clientId=client_id,
                downloadId=session.session_id,
                status="initiated",
            ),
        )

    @app.get("/api/downloads/{download_id}", tags=["Downloads"])
    async def get_download(download_id: str):
        """Status of one download."""
        session = relay().get_session(download_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Unknown download {download_id}")
        return session.to_dict()

    @app.get("/health", tags=["Health"])
    async def health():
        """Server status and connected client count."""
        server = relay()
        return {
            "status": "healthy",
            "relay": {
                "port": server.port,
                "connectedClients": len(server.registry),
            },
            "api": {
                "port": api_port,
            },
        }

    return app


async def run_api_server(server, host: str = "0.0.0.0", port: int = 3000):
    """
    Run the API server.

    Args:
        server: RelayServer instance
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    app = create_app(server, api_port=port)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
    )
    uv_server = uvicorn.Server(config)
    await uv_server.serve()
