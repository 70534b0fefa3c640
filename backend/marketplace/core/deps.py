from collections.abc import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.db.session import async_session_factory
from marketplace.services.escrow.engine import EscrowEngine
from marketplace.services.gateways.registry import GatewayRegistry


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session, closed when the request finishes."""
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_gateway_registry(request: Request) -> GatewayRegistry:
    """Return the adapter registry built in the app lifespan."""
    return request.app.state.gateways


def get_escrow_engine(
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
) -> EscrowEngine:
    return EscrowEngine(db, gateways)
