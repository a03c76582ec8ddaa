import logging
from contextlib import asynccontextmanager
from typing import Optional

import jwt
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import Settings, configure_logging, get_settings
from .exceptions import GeoError, InvalidGeohash, RateLimitExceeded, Unauthenticated
from .models import (
    FeedQuery,
    FeedResponse,
    LocationUpdate,
    LocationUpdateResult,
    NearbyQuery,
    NearbyUsersResponse,
    PrivacySettingsResult,
    PrivacySettingsUpdate,
)
from .rate_limit import RedisTokenBucketRateLimiter, TokenBucketRateLimiter
from .service import LocationService
from .store import DocumentStore, create_store

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def verify_token(token: str, settings: Settings) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        raise Unauthenticated("Invalid token")


def get_service(request: Request) -> LocationService:
    return request.app.state.service


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    if credentials is None:
        raise Unauthenticated("User must be authenticated")
    payload = verify_token(credentials.credentials, request.app.state.settings)
    user_id = payload.get("user_id") or payload.get("sub")
    if not user_id:
        raise Unauthenticated("Token has no user id")
    return str(user_id)


async def rate_limited_user(request: Request, user_id: str = Depends(get_current_user)) -> str:
    limiter = request.app.state.limiter
    if limiter is not None:
        allowed, _, reset_time = await limiter.is_allowed(user_id)
        if not allowed:
            raise RateLimitExceeded(f"Rate limit exceeded, retry after {reset_time}")
    return user_id


async def handle_geo_error(request: Request, exc: GeoError) -> JSONResponse:
    if isinstance(exc, InvalidGeohash):
        logger.error(f"Data integrity fault on {request.url.path}: {exc.message}")
    elif exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ())[1:]) or 'body'}: {err.get('msg')}"
        for err in exc.errors()
    )
    logger.info(f"{request.method} {request.url.path} rejected: invalid-argument {problems}")
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": {"code": "invalid-argument", "message": problems}},
    )


def create_limiter(settings: Settings):
    if settings.store_backend == "redis":
        client = redis.from_url(settings.redis_url, decode_responses=True)
        return RedisTokenBucketRateLimiter(client, settings.rate_limit_capacity, settings.rate_limit_refill_rate)
    return TokenBucketRateLimiter(settings.rate_limit_capacity, settings.rate_limit_refill_rate)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
    limiter=None,
) -> FastAPI:
    settings = settings or get_settings()
    owns_store = store is None
    owns_limiter = limiter is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_limiter and app.state.limiter is not None:
            await app.state.limiter.close()
        if owns_store:
            await app.state.service.store.close()

    app = FastAPI(title="FireGeo Location Service", version=settings.service_version, lifespan=lifespan)
    app.state.settings = settings
    app.state.service = LocationService(store or create_store(settings), settings)
    if limiter is None and settings.rate_limit_enabled:
        limiter = create_limiter(settings)
    app.state.limiter = limiter

    app.add_exception_handler(GeoError, handle_geo_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)

    @app.post("/location", response_model=LocationUpdateResult)
    async def update_location(
        update: LocationUpdate,
        user_id: str = Depends(rate_limited_user),
        service: LocationService = Depends(get_service),
    ):
        return await service.update_location(user_id, update)

    @app.post("/nearby", response_model=NearbyUsersResponse)
    async def query_nearby(
        query: NearbyQuery,
        user_id: str = Depends(rate_limited_user),
        service: LocationService = Depends(get_service),
    ):
        return await service.query_nearby(user_id, query)

    @app.post("/nearby/recent", response_model=FeedResponse)
    async def get_nearby_users(
        query: FeedQuery,
        user_id: str = Depends(rate_limited_user),
        service: LocationService = Depends(get_service),
    ):
        return await service.get_nearby_users(user_id, query)

    @app.post("/privacy", response_model=PrivacySettingsResult)
    async def update_privacy_settings(
        update: PrivacySettingsUpdate,
        user_id: str = Depends(rate_limited_user),
        service: LocationService = Depends(get_service),
    ):
        return await service.update_privacy_settings(user_id, update)

    @app.post("/signout")
    async def sign_out(
        user_id: str = Depends(get_current_user),
        service: LocationService = Depends(get_service),
    ):
        return await service.sign_out(user_id)

    @app.get("/health")
    async def health_check(service: LocationService = Depends(get_service)):
        if await service.health():
            return {"status": "healthy", "service": settings.service_name, "version": settings.service_version}
        return JSONResponse(status_code=503, content={"status": "unhealthy", "service": settings.service_name})

    return app


def main():
    import uvicorn

    settings = get_settings()
    configure_logging(settings)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
