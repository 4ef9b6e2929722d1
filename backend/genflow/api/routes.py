# Add routes here
from fastapi import APIRouter
from .v1 import flows, providers

api_router = APIRouter(prefix="/api", tags=["flow-editor"])

api_router.include_router(flows.router, prefix="/v1", tags=["flows"])
api_router.include_router(providers.router, prefix="/v1", tags=["providers"])

@api_router.get("/")
def read_root():
    return {"message": "Hello, World!"}
