from fastapi import APIRouter

from double_optin.api.routes.auth import router as auth_router
from double_optin.api.routes.checkout import router as checkout_router
from double_optin.api.routes.ops import router as ops_router
from double_optin.api.routes.user import router as user_router

api_router = APIRouter()
api_router.include_router(auth_router, prefix="/auth", tags=["auth"])
api_router.include_router(user_router, prefix="/user", tags=["user"])
api_router.include_router(checkout_router, prefix="/checkout", tags=["checkout"])
api_router.include_router(ops_router, prefix="/ops", tags=["ops"])
