from fastapi import APIRouter

from app.api.auth import router as auth_router
from app.api.bastions import router as bastions_router
from app.api.dm import router as dm_router
from app.api.friends import router as friends_router
from app.api.notifications import router as notifications_router
from app.api.profile import router as profile_router
from app.api.profile import users_router

router = APIRouter()

router.include_router(auth_router, prefix="/auth", tags=["auth"])
router.include_router(profile_router)
router.include_router(users_router)
router.include_router(friends_router)
router.include_router(notifications_router)
router.include_router(dm_router)
router.include_router(bastions_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the Fortized API"}
