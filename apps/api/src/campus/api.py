from fastapi import APIRouter

from campus.modules.admissions import router as admissions_router

api_router = APIRouter()

api_router.include_router(admissions_router, prefix="/admissions", tags=["Admissions"])
