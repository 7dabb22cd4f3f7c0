"""
API routes for reachability checks and health reporting
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from reflector.scanner.engine import CheckEngine

router = APIRouter()


# Dependency to get the check engine
def get_engine(request: Request) -> CheckEngine:
    return request.app.state.engine


def _peer_address(request: Request):
    return request.client.host if request.client else None


def _query_params(request: Request):
    """First value of every query parameter; later repeats are ignored"""
    params = request.query_params
    return {key: params.getlist(key)[0] for key in params.keys()}


@router.get("/check")
async def check(
    request: Request,
    engine: CheckEngine = Depends(get_engine)
):
    """Probe the requested ports on the caller's own address"""
    status, response = await engine.handle_check(
        request.headers,
        _peer_address(request),
        _query_params(request),
        method=request.method,
        path=request.url.path
    )
    return JSONResponse(
        status_code=status,
        content=response.model_dump(exclude_none=True)
    )


@router.get("/simple")
async def simple(
    request: Request,
    engine: CheckEngine = Depends(get_engine)
):
    """Plain yes/no/error answer for scripts"""
    status, body = await engine.handle_simple(
        request.headers,
        _peer_address(request),
        _query_params(request)
    )
    return PlainTextResponse(body, status_code=status)


@router.get("/health")
async def health(engine: CheckEngine = Depends(get_engine)):
    """Health check endpoint for monitoring"""
    return engine.health().model_dump()
