from fastapi import Request, Security
from fastapi.security import APIKeyHeader

from analytics_service.services.container import Services
from analytics_service.services.tenants import ResolvedTenant

# auto_error=False so a missing key goes through the resolver and gets its own error
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_tenant(
        request: Request,
        api_key: str | None = Security(api_key_header)
) -> ResolvedTenant:
    """Resolve the calling tenant before any endpoint logic runs"""
    return await get_services(request).tenants.resolve(api_key)
