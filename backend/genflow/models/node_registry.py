"""
Node type registry: source of truth for each node type's configuration schema
and default provider/model assignment.

Keys match the canvas node ``type`` values. The canvas stores node settings in
an untyped ``data`` bag; ``parse_node_config`` turns that bag into the typed
configuration for the node's type so executors never probe string keys.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Per-type configuration
# ---------------------------------------------------------------------------


class NodeConfig(BaseModel):
    """Settings every executable node may carry."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    label: str | None = None
    provider_id: str | None = None
    model: str | None = None
    max_tokens: int | None = None

    @field_validator("max_tokens", mode="before")
    @classmethod
    def _blank_max_tokens(cls, value: Any) -> Any:
        # The canvas clears numeric inputs to "" or 0
        if value in ("", 0):
            return None
        return value


class InitialPromptConfig(NodeConfig):
    text: str = ""


class PromptEnhancerConfig(NodeConfig):
    notes: str = ""


class TranslatorConfig(NodeConfig):
    language: str = ""


class ImageDescriberConfig(NodeConfig):
    image: str = ""


class TextOutputConfig(NodeConfig):
    text: str = ""


class ConsistentCharacterConfig(NodeConfig):
    character_name: str = ""
    character_description: str = ""


class StoryTellerConfig(NodeConfig):
    idea: str = ""
    tags: str = ""


class GrammarFixConfig(NodeConfig):
    style: str = ""


class SceneBuilderConfig(NodeConfig):
    image_style: str = ""
    lighting: str = ""
    time_of_day: str = ""
    weather: str = ""
    camera_angle: str = ""
    camera_lens: str = ""
    mood: str = ""


class CompressorConfig(NodeConfig):
    pass


class ImageGeneratorConfig(NodeConfig):
    prompt: str = ""
    image_provider_id: str | None = None
    image_model: str | None = None
    width: int | None = None
    height: int | None = None


class PersonasReplacerConfig(NodeConfig):
    image: str = ""


class NodeTypeSpec(BaseModel):
    config: type[NodeConfig]
    default_provider_id: str | None = None
    default_model: str | None = None
    rationale: str | None = None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_FAST_TEXT = {"default_provider_id": "mistral", "default_model": "ministral-14b-2512"}
_VISION = {"default_provider_id": "glm", "default_model": "glm-4.6v"}

NODE_REGISTRY: dict[str, NodeTypeSpec] = {
    # ---- Sources ----
    "initialPrompt": NodeTypeSpec(
        config=InitialPromptConfig, rationale="Only persona injection, lightweight", **_FAST_TEXT
    ),
    "consistentCharacter": NodeTypeSpec(config=ConsistentCharacterConfig),
    "sceneBuilder": NodeTypeSpec(config=SceneBuilderConfig),
    "imageDescriber": NodeTypeSpec(
        config=ImageDescriberConfig, rationale="Vision model", **_VISION
    ),
    "storyTeller": NodeTypeSpec(
        config=StoryTellerConfig,
        default_provider_id="mistral",
        default_model="labs-mistral-small-creative",
        rationale="Creative writing specialist",
    ),

    # ---- Text processing ----
    "promptEnhancer": NodeTypeSpec(
        config=PromptEnhancerConfig, rationale="Good writing, fast turnaround", **_FAST_TEXT
    ),
    "translator": NodeTypeSpec(
        config=TranslatorConfig, rationale="Mechanical translation", **_FAST_TEXT
    ),
    "grammarFix": NodeTypeSpec(
        config=GrammarFixConfig, rationale="Mechanical task, fast and cheap", **_FAST_TEXT
    ),
    "compressor": NodeTypeSpec(
        config=CompressorConfig, rationale="Summarization, lightweight suffices", **_FAST_TEXT
    ),

    # ---- Image / sinks ----
    "imageGenerator": NodeTypeSpec(config=ImageGeneratorConfig),
    "personasReplacer": NodeTypeSpec(
        config=PersonasReplacerConfig, rationale="Vision model", **_VISION
    ),
    "textOutput": NodeTypeSpec(config=TextOutputConfig),
}


def get_node_spec(node_type: str) -> NodeTypeSpec | None:
    """Look up a node type spec, returning None if unknown."""
    return NODE_REGISTRY.get(node_type)


def parse_node_config(node_type: str, data: dict[str, Any] | None) -> NodeConfig:
    """Validate a node's data bag against its type's configuration model."""
    spec = get_node_spec(node_type)
    config_cls = spec.config if spec else NodeConfig
    return config_cls.model_validate(data or {})


def resolve_model_for_node(
    node_type: str,
    config: NodeConfig,
    global_provider_id: str,
) -> tuple[str, str | None]:
    """
    Resolve the effective (provider_id, model) for a node.

    Priority: node override > node-type default > flow-level provider.
    Empty strings count as unset.
    """
    spec = get_node_spec(node_type)
    default_provider = spec.default_provider_id if spec else None
    default_model = spec.default_model if spec else None

    provider_id = config.provider_id or default_provider or global_provider_id
    model = config.model or default_model or None
    return provider_id, model
