from fastapi import APIRouter
from app.api.v1.endpoints import booking, appointments, webhooks

api_router = APIRouter()
api_router.include_router(booking.router, prefix="/booking", tags=["booking"])
api_router.include_router(appointments.router, prefix="/appointments", tags=["appointments"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
