from fastapi import APIRouter

from enrollment_sync.modules.admissions import router as enrollment_router
from enrollment_sync.modules.verification import router as verification_router

api_router = APIRouter()

api_router.include_router(verification_router, prefix="/verifications", tags=["Verification"])

api_router.include_router(enrollment_router, prefix="/enrollment", tags=["Enrollment"])
