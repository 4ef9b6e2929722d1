"""
Provider listing for the canvas's provider/model pickers.
"""
from fastapi import APIRouter

from genflow import config
from genflow.llm.providers import list_providers
from genflow.models.node_registry import NODE_REGISTRY

router = APIRouter(prefix="/providers", tags=["providers"])


@router.get("")
async def get_providers():
    return {
        "default_provider_id": config.DEFAULT_PROVIDER_ID,
        "providers": list_providers(),
    }


@router.get("/node-defaults")
async def get_node_defaults():
    """Default provider/model per node type (node overrides still win)."""
    return {
        node_type: {
            "provider_id": spec.default_provider_id,
            "model": spec.default_model,
            "rationale": spec.rationale,
        }
        for node_type, spec in NODE_REGISTRY.items()
        if spec.default_provider_id
    }
