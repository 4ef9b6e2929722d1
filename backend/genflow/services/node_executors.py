"""
Default node executors.

Each executor receives a NodeExecutionContext (typed node configuration plus
upstream text inputs and adapter inputs) and returns NodeSuccess or
NodeFailure. Provider calls go through ``genflow.llm.providers``; a raised
ProviderError is recorded by the runner as the node's error.

Groups are intentionally absent from the registry.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from pydantic import BaseModel

from genflow import config
from genflow.llm import providers
from genflow.models.graph import NodeExecutionResult, NodeFailure, NodeOutput, NodeSuccess
from genflow.models.node_registry import (
    ConsistentCharacterConfig,
    GrammarFixConfig,
    ImageDescriberConfig,
    ImageGeneratorConfig,
    InitialPromptConfig,
    PersonasReplacerConfig,
    PromptEnhancerConfig,
    SceneBuilderConfig,
    StoryTellerConfig,
    TranslatorConfig,
)
from genflow.services.flow_runner import NodeExecutionContext, NodeExecutor

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Executor registry
# ---------------------------------------------------------------------------

# Maps node type names to their async executor functions.
_registry: dict[str, NodeExecutor] = {}


def executor(node_type: str):
    """
    Decorator that registers an async executor function for a node type.

    Usage:
        @executor("myNodeType")
        async def _exec_my_node(ctx: NodeExecutionContext) -> NodeExecutionResult:
            return NodeSuccess(output=NodeOutput(text="..."))
    """
    def decorator(fn: Callable):
        _registry[node_type] = fn
        return fn
    return decorator


def get_registry() -> dict[str, NodeExecutor]:
    return _registry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

LANGUAGE_NAMES: dict[str, str] = {
    "en": "English", "es": "Spanish", "fr": "French", "de": "German",
    "it": "Italian", "pt": "Portuguese", "ru": "Russian", "ja": "Japanese",
    "ko": "Korean", "zh": "Chinese", "ar": "Arabic", "hi": "Hindi",
    "tr": "Turkish", "pl": "Polish", "nl": "Dutch", "sv": "Swedish",
    "da": "Danish", "fi": "Finnish", "no": "Norwegian", "cs": "Czech",
    "el": "Greek", "he": "Hebrew", "th": "Thai", "vi": "Vietnamese",
    "id": "Indonesian", "uk": "Ukrainian", "ro": "Romanian", "hu": "Hungarian",
}

SCENE_LABELS: dict[str, str] = {
    "image_style": "Style",
    "lighting": "Lighting",
    "time_of_day": "Time of day",
    "weather": "Weather",
    "camera_angle": "Camera angle",
    "camera_lens": "Lens",
    "mood": "Mood",
}


class PersonaInput(BaseModel):
    name: str
    description: str


def merge_input_text(inputs: list[NodeOutput]) -> str:
    """Merge upstream text from multiple inputs with blank-line joins."""
    parts: list[str] = []
    for inp in inputs:
        text = inp.text or inp.replace_prompt or inp.injected_prompt or inp.persona_description or ""
        if text:
            parts.append(text)
    return "\n\n".join(parts)


def extract_personas(adapter_inputs: list[NodeOutput]) -> list[PersonaInput]:
    return [
        PersonaInput(name=inp.persona_name or "Character", description=inp.persona_description)
        for inp in adapter_inputs
        if inp.persona_description
    ]


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


async def _complete(ctx: NodeExecutionContext, prompt: str, default_max_tokens: int) -> str:
    return await providers.chat_completion(
        ctx.provider_id,
        [{"role": "user", "content": prompt}],
        model=ctx.model,
        max_tokens=ctx.node_data.max_tokens or default_max_tokens,
    )


async def inject_personas_if_present(ctx: NodeExecutionContext, text: str) -> str:
    """Rewrite ``text`` so connected personas appear in it; no-op without personas."""
    personas = extract_personas(ctx.adapter_inputs)
    if not personas:
        return text

    persona_block = "\n".join(f"- {p.name}: {p.description}" for p in personas)
    prompt = (
        "Rewrite the prompt below so that its characters are replaced by, or include, "
        "these characters. Keep every other detail of the prompt intact.\n\n"
        f"CHARACTERS:\n{persona_block}\n\n"
        f"PROMPT:\n{text}\n\n"
        "Output ONLY the rewritten prompt."
    )
    return await _complete(ctx, prompt, 2000)


# ---------------------------------------------------------------------------
# Source nodes
# ---------------------------------------------------------------------------


@executor("consistentCharacter")
async def _exec_consistent_character(ctx: NodeExecutionContext) -> NodeExecutionResult:
    """Pure data source: outputs the cached persona description."""
    data: ConsistentCharacterConfig = ctx.node_data
    if not data.character_description:
        return NodeFailure(error="No character selected; drag one from Assets")

    return NodeSuccess(output=NodeOutput(
        text=data.character_description,
        persona_description=data.character_description,
        persona_name=data.character_name or "Character",
    ))


@executor("initialPrompt")
async def _exec_initial_prompt(ctx: NodeExecutionContext) -> NodeExecutionResult:
    """Pass-through text, with persona injection if adapters are connected."""
    data: InitialPromptConfig = ctx.node_data
    if not data.text.strip():
        return NodeFailure(error="No prompt text entered")

    start = time.perf_counter()
    final_text = await inject_personas_if_present(ctx, data.text)
    return NodeSuccess(output=NodeOutput(text=final_text, duration_ms=_elapsed_ms(start)))


@executor("sceneBuilder")
async def _exec_scene_builder(ctx: NodeExecutionContext) -> NodeExecutionResult:
    """Compose a scene prompt from the selected attributes."""
    data: SceneBuilderConfig = ctx.node_data
    parts = [
        f"{label}: {getattr(data, field)}"
        for field, label in SCENE_LABELS.items()
        if getattr(data, field)
    ]
    if not parts:
        return NodeFailure(error="No scene attributes selected")

    return NodeSuccess(output=NodeOutput(text=". ".join(parts) + "."))


@executor("imageDescriber")
async def _exec_image_describer(ctx: NodeExecutionContext) -> NodeExecutionResult:
    data: ImageDescriberConfig = ctx.node_data
    if not data.image:
        return NodeFailure(error="No image uploaded")

    start = time.perf_counter()
    description = await providers.describe_image(
        ctx.provider_id,
        data.image,
        "Describe this image in rich detail as a prompt for an image generation model: "
        "subjects, composition, style, lighting, colors and mood. Output ONLY the description.",
        model=ctx.model,
        max_tokens=data.max_tokens or 1500,
    )
    return NodeSuccess(output=NodeOutput(
        text=description, image=data.image, duration_ms=_elapsed_ms(start),
    ))


@executor("storyTeller")
async def _exec_story_teller(ctx: NodeExecutionContext) -> NodeExecutionResult:
    """Creative prompt generator; a different output every run."""
    data: StoryTellerConfig = ctx.node_data
    text = merge_input_text(ctx.inputs) or data.idea
    if not text.strip():
        return NodeFailure(error="No idea provided")

    start = time.perf_counter()
    prompt = (
        "You are a visual storyteller. Turn the idea below into a vivid, single-scene "
        "image prompt with characters, setting and action.\n\n"
        f"IDEA:\n{text}\n"
    )
    if data.tags:
        prompt += f"\nTAGS: {data.tags}\n"
    prompt += "\nOutput ONLY the prompt."

    story = await _complete(ctx, prompt, 1500)
    final_text = await inject_personas_if_present(ctx, story)
    return NodeSuccess(output=NodeOutput(text=final_text, duration_ms=_elapsed_ms(start)))


# ---------------------------------------------------------------------------
# Text processing nodes
# ---------------------------------------------------------------------------


@executor("promptEnhancer")
async def _exec_prompt_enhancer(ctx: NodeExecutionContext) -> NodeExecutionResult:
    data: PromptEnhancerConfig = ctx.node_data
    upstream_text = merge_input_text(ctx.inputs)
    if not upstream_text:
        return NodeFailure(error="No input text to enhance")

    start = time.perf_counter()
    prompt = (
        "You are an expert prompt engineer. Transform this prompt into a detailed, rich "
        "prompt for AI image generation. Add specific visual details, art style, "
        "composition, mood and quality boosters.\n\n"
        f"PROMPT:\n{upstream_text}\n"
    )
    if data.notes:
        prompt += f"\nADDITIONAL NOTES:\n{data.notes}\n"
    prompt += "\nOutput ONLY the improved prompt."

    enhanced = await _complete(ctx, prompt, 1500)
    final_text = await inject_personas_if_present(ctx, enhanced)
    return NodeSuccess(output=NodeOutput(text=final_text, duration_ms=_elapsed_ms(start)))


@executor("translator")
async def _exec_translator(ctx: NodeExecutionContext) -> NodeExecutionResult:
    data: TranslatorConfig = ctx.node_data
    upstream_text = merge_input_text(ctx.inputs)
    if not upstream_text:
        return NodeFailure(error="No input text to translate")

    # No language selected: pass through
    if not data.language:
        return NodeSuccess(output=NodeOutput(text=upstream_text))

    language_name = LANGUAGE_NAMES.get(data.language, data.language)
    start = time.perf_counter()
    translation = await _complete(
        ctx,
        f"Translate the following text to {language_name}. "
        f"Output ONLY the translation.\n\n{upstream_text}",
        2000,
    )
    return NodeSuccess(output=NodeOutput(text=translation, duration_ms=_elapsed_ms(start)))


@executor("grammarFix")
async def _exec_grammar_fix(ctx: NodeExecutionContext) -> NodeExecutionResult:
    data: GrammarFixConfig = ctx.node_data
    upstream_text = merge_input_text(ctx.inputs)
    if not upstream_text:
        return NodeFailure(error="No input text to fix")

    start = time.perf_counter()
    prompt = f"Fix the grammar, spelling and typos of this English text.\n\n{upstream_text}\n"
    if data.style:
        prompt += f"\nWrite it in a {data.style} style.\n"
    prompt += "\nOutput ONLY the corrected text."

    fixed = await _complete(ctx, prompt, 2000)
    return NodeSuccess(output=NodeOutput(text=fixed, duration_ms=_elapsed_ms(start)))


@executor("compressor")
async def _exec_compressor(ctx: NodeExecutionContext) -> NodeExecutionResult:
    """Compress text over the threshold; shorter text passes through unchanged."""
    upstream_text = merge_input_text(ctx.inputs)
    if not upstream_text:
        return NodeFailure(error="No input text to compress")

    if len(upstream_text) <= config.COMPRESS_THRESHOLD_CHARS:
        return NodeSuccess(output=NodeOutput(text=upstream_text))

    start = time.perf_counter()
    compressed = await _complete(
        ctx,
        f"Compress this image prompt to under {config.COMPRESS_THRESHOLD_CHARS} characters "
        "while keeping every important visual detail. Output ONLY the compressed prompt.\n\n"
        f"{upstream_text}",
        2000,
    )
    return NodeSuccess(output=NodeOutput(text=compressed, duration_ms=_elapsed_ms(start)))


# ---------------------------------------------------------------------------
# Image / sink nodes
# ---------------------------------------------------------------------------


@executor("imageGenerator")
async def _exec_image_generator(ctx: NodeExecutionContext) -> NodeExecutionResult:
    data: ImageGeneratorConfig = ctx.node_data
    prompt = merge_input_text(ctx.inputs) or data.prompt
    if not prompt.strip():
        return NodeFailure(error="No prompt text to generate from")

    start = time.perf_counter()
    image = await providers.generate_image(
        prompt,
        provider_id=data.image_provider_id,
        model=data.image_model,
        width=data.width,
        height=data.height,
    )
    return NodeSuccess(output=NodeOutput(image=image, text=prompt, duration_ms=_elapsed_ms(start)))


@executor("personasReplacer")
async def _exec_personas_replacer(ctx: NodeExecutionContext) -> NodeExecutionResult:
    """Describe the upstream image with its characters swapped for the connected personas."""
    data: PersonasReplacerConfig = ctx.node_data

    # Prefer an upstream image, fall back to one uploaded on the node
    upstream_image = next((inp.image for inp in ctx.inputs if inp.image), None)
    target_image = upstream_image or data.image
    if not target_image:
        return NodeFailure(error="No image; upload one or connect an image source")

    personas = extract_personas(ctx.adapter_inputs)
    if not personas:
        return NodeFailure(error="No personas connected; attach character adapters")

    persona_block = "\n".join(f"- {p.name}: {p.description}" for p in personas)
    instruction = (
        "Describe this image as an image generation prompt, replacing its characters "
        f"with these characters:\n{persona_block}\n"
    )
    upstream_text = merge_input_text(ctx.inputs)
    if upstream_text:
        instruction += f"\nExisting description of the image:\n{upstream_text}\n"
    instruction += "\nOutput ONLY the prompt."

    start = time.perf_counter()
    description = await providers.describe_image(
        ctx.provider_id, target_image, instruction, model=ctx.model, max_tokens=data.max_tokens or 1500,
    )
    return NodeSuccess(output=NodeOutput(text=description, duration_ms=_elapsed_ms(start)))


@executor("textOutput")
async def _exec_text_output(ctx: NodeExecutionContext) -> NodeExecutionResult:
    """Terminal sink: collects upstream text, no provider call."""
    return NodeSuccess(output=NodeOutput(text=merge_input_text(ctx.inputs)))
