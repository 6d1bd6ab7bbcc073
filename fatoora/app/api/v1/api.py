from fastapi import APIRouter

from fatoora.app.api.v1.endpoints import zatca, zatca_onboarding

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(zatca.router, prefix="/zatca", tags=["zatca"])
api_router.include_router(
    zatca_onboarding.router, prefix="/zatca/onboarding", tags=["zatca-onboarding"]
)
