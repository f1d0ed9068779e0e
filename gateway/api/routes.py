from fastapi import APIRouter, Request
from starlette.responses import Response

from gateway.middleware.request_id import request_id_from_request
from gateway.services.gateway import GatewayOrchestrator, GatewayRequest

router = APIRouter()

GATEWAY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@router.api_route("/{full_path:path}", methods=GATEWAY_METHODS, include_in_schema=False)
async def gateway_entrypoint(request: Request, full_path: str) -> Response:
    orchestrator: GatewayOrchestrator = request.app.state.orchestrator
    gateway_request = GatewayRequest(
        method=request.method,
        path=request.url.path,
        headers=request.headers,
        request_id=request_id_from_request(request),
        query=request.query_params,
        body=await request.body(),
        peer_ip=request.client.host if request.client else None,
    )
    return await orchestrator.handle(gateway_request)
