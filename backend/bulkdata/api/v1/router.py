"""
API v1 Router
=============

The bulk data routes, mounted once without and once with the simulation
capsule in front of ``/fhir``.
"""

from fastapi import APIRouter

from bulkdata.api.v1.endpoints import bulk_data

api_router = APIRouter()

api_router.include_router(bulk_data.router, prefix="/fhir", tags=["Bulk Data"])
api_router.include_router(bulk_data.router, prefix="/{sim}/fhir", tags=["Bulk Data"])
