"""Request dependencies shared by the routers."""

from fastapi import HTTPException, Request, WebSocket

from papertrade.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return container


def get_ws_container(websocket: WebSocket) -> ServiceContainer:
    return websocket.app.state.container
