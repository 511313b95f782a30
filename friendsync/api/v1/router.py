from fastapi import APIRouter

from friendsync.api.v1.endpoints import friends

api_router = APIRouter()

# Include routers
api_router.include_router(friends.router, prefix="/friends", tags=["friends"])
