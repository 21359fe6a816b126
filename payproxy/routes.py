from fastapi import APIRouter, Request

from payproxy.proxy.dispatch import ProxyDispatchResponse

router = APIRouter()

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


# Catch-all: every path is classified by host and prefix, not by FastAPI routing
@router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy_all(request: Request, path: str):
    state = request.app.state
    return ProxyDispatchResponse(state.proxy_config, state.forwarding_engine)
