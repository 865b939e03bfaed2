import hmac
from typing import Annotated, AsyncGenerator, Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.bootstrap import Services


def get_services(request: Request) -> Services:
    return request.app.state.services

ServicesDep = Annotated[Services, Depends(get_services)]


async def get_db_session(services: ServicesDep) -> AsyncGenerator[AsyncSession, None]:
    async with services.session_factory() as session:
        yield session

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]


async def require_scheduler_token(
    services: ServicesDep,
    authorization: Optional[str] = Header(default=None),
) -> None:
    """
    Guards cron-triggered endpoints with `Authorization: Bearer <SCHEDULER_TOKEN>`.

    With no token configured the check is skipped outside production.
    """
    expected = services.settings.SCHEDULER_TOKEN
    if not expected:
        if services.settings.is_production:
            raise HTTPException(status_code=503, detail="Scheduler token not configured")
        return

    provided = ""
    if authorization and authorization.lower().startswith("bearer "):
        provided = authorization[len("bearer "):].strip()

    if not hmac.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid scheduler token")

SchedulerAuth = Depends(require_scheduler_token)
