from dataclasses import dataclass
from uuid import UUID, uuid4
import secrets

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analytics_service.core.errors import InvalidCredential, StoreUnavailable, Unauthenticated
from analytics_service.models.event import Tenant
import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class ResolvedTenant:
    id: UUID
    name: str


class TenantResolver:
    """Maps an opaque API key to the tenant that owns it"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def resolve(self, credential: str | None) -> ResolvedTenant:
        """
        Look up the tenant for a credential.

        Raises:
            Unauthenticated: no credential supplied
            InvalidCredential: no tenant has this credential
            StoreUnavailable: the lookup itself failed
        """
        if not credential or not credential.strip():
            raise Unauthenticated("API key required")

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Tenant.id, Tenant.name).where(Tenant.api_key == credential)
                )
                row = result.first()
        except SQLAlchemyError as e:
            logger.error("tenant_lookup_failed", error=str(e))
            raise StoreUnavailable("Authentication failed") from e

        if row is None:
            logger.warning("invalid_api_key")
            raise InvalidCredential("Invalid API key")

        return ResolvedTenant(id=row.id, name=row.name)


def generate_api_key() -> str:
    return secrets.token_hex(32)


async def create_tenant(
        session_factory: async_sessionmaker[AsyncSession],
        name: str,
        api_key: str | None = None
) -> tuple[ResolvedTenant, str]:
    """Provision a tenant out-of-band; returns the tenant and its API key"""
    api_key = api_key or generate_api_key()
    tenant = Tenant(id=uuid4(), name=name, api_key=api_key)

    async with session_factory() as session:
        async with session.begin():
            session.add(tenant)

    logger.info("tenant_created", tenant_id=str(tenant.id), name=name)
    return ResolvedTenant(id=tenant.id, name=name), api_key
