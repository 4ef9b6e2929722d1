"""
Tests for the default node executors and the provider gateway.

Provider calls are monkeypatched; nothing here touches the network.
"""

import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from genflow import config
from genflow.llm import providers
from genflow.models.graph import NodeFailure, NodeOutput, NodeSuccess
from genflow.models.node_registry import NODE_REGISTRY, parse_node_config, resolve_model_for_node
from genflow.services.flow_runner import NodeExecutionContext
from genflow.services.node_executors import get_registry, merge_input_text


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_ctx(node_type: str, data: dict | None = None, inputs=None, adapters=None) -> NodeExecutionContext:
    config_obj = parse_node_config(node_type, data or {})
    provider_id, model = resolve_model_for_node(node_type, config_obj, "mistral")
    return NodeExecutionContext(
        node_id=f"{node_type}-1",
        node_data=config_obj,
        inputs=inputs or [],
        adapter_inputs=adapters or [],
        provider_id=provider_id,
        model=model,
    )


async def execute(node_type: str, **kwargs):
    return await get_registry()[node_type](make_ctx(node_type, **kwargs))


@pytest.fixture
def llm(monkeypatch):
    """Replace provider calls with recorders that echo a canned reply."""
    recorded = {"chat": [], "vision": [], "image": []}

    async def fake_chat(provider_id, messages, model=None, max_tokens=None, vision=False):
        recorded["chat"].append({
            "provider_id": provider_id,
            "prompt": messages[0]["content"],
            "model": model,
            "max_tokens": max_tokens,
        })
        return f"llm-reply-{len(recorded['chat'])}"

    async def fake_describe(provider_id, image, instruction, model=None, max_tokens=None):
        recorded["vision"].append({"provider_id": provider_id, "image": image, "instruction": instruction})
        return "a described image"

    async def fake_generate(prompt, provider_id=None, model=None, width=None, height=None):
        recorded["image"].append({"prompt": prompt, "size": (width, height)})
        return "data:image/png;base64,AAAA"

    monkeypatch.setattr(providers, "chat_completion", fake_chat)
    monkeypatch.setattr(providers, "describe_image", fake_describe)
    monkeypatch.setattr(providers, "generate_image", fake_generate)
    return recorded


PERSONA = NodeOutput(persona_name="Ada", persona_description="a tall inventor", text="a tall inventor")


# ---------------------------------------------------------------------------
# Registry and configuration
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_every_registered_type_has_executor(self):
        assert set(get_registry()) == set(NODE_REGISTRY)

    def test_groups_have_no_executor(self):
        assert "group" not in get_registry()

    def test_node_override_beats_type_default(self):
        cfg = parse_node_config("promptEnhancer", {"providerId": "glm", "model": "glm-4.7-flash"})
        assert resolve_model_for_node("promptEnhancer", cfg, "mistral") == ("glm", "glm-4.7-flash")

    def test_type_default_beats_flow_provider(self):
        cfg = parse_node_config("imageDescriber", {})
        assert resolve_model_for_node("imageDescriber", cfg, "openrouter") == ("glm", "glm-4.6v")

    def test_flow_provider_used_without_defaults(self):
        cfg = parse_node_config("textOutput", {"providerId": ""})
        assert resolve_model_for_node("textOutput", cfg, "openrouter") == ("openrouter", None)

    def test_blank_max_tokens_treated_as_unset(self):
        assert parse_node_config("grammarFix", {"maxTokens": ""}).max_tokens is None
        assert parse_node_config("grammarFix", {"maxTokens": 0}).max_tokens is None
        assert parse_node_config("grammarFix", {"maxTokens": 300}).max_tokens == 300

    def test_unknown_keys_ignored(self):
        cfg = parse_node_config("translator", {"language": "fr", "selected": True})
        assert cfg.language == "fr"


class TestMergeInputText:
    def test_joins_with_blank_lines_and_skips_empty(self):
        inputs = [NodeOutput(text="one"), NodeOutput(), NodeOutput(replace_prompt="two")]
        assert merge_input_text(inputs) == "one\n\ntwo"

    def test_persona_description_fallback(self):
        assert merge_input_text([NodeOutput(persona_description="Ada")]) == "Ada"


# ---------------------------------------------------------------------------
# Executors without provider calls
# ---------------------------------------------------------------------------


class TestLocalExecutors:
    @pytest.mark.asyncio
    async def test_consistent_character(self):
        result = await execute("consistentCharacter", data={"characterName": "Ada", "characterDescription": "tall"})
        assert isinstance(result, NodeSuccess)
        assert result.output.persona_name == "Ada"
        assert result.output.persona_description == "tall"

    @pytest.mark.asyncio
    async def test_consistent_character_requires_description(self):
        result = await execute("consistentCharacter")
        assert isinstance(result, NodeFailure)
        assert result.output.error == "No character selected; drag one from Assets"

    @pytest.mark.asyncio
    async def test_scene_builder_composes_selected_attributes(self):
        result = await execute("sceneBuilder", data={"lighting": "golden hour", "mood": "calm"})
        assert result.output.text == "Lighting: golden hour. Mood: calm."

    @pytest.mark.asyncio
    async def test_scene_builder_requires_attributes(self):
        assert isinstance(await execute("sceneBuilder"), NodeFailure)

    @pytest.mark.asyncio
    async def test_text_output_collects_inputs(self):
        result = await execute("textOutput", inputs=[NodeOutput(text="a"), NodeOutput(text="b")])
        assert result.output.text == "a\n\nb"

    @pytest.mark.asyncio
    async def test_initial_prompt_passes_text_without_personas(self, llm):
        result = await execute("initialPrompt", data={"text": "a castle"})
        assert result.output.text == "a castle"
        assert llm["chat"] == []

    @pytest.mark.asyncio
    async def test_initial_prompt_requires_text(self):
        result = await execute("initialPrompt", data={"text": "   "})
        assert result.error == "No prompt text entered"

    @pytest.mark.asyncio
    async def test_translator_without_language_passes_through(self, llm):
        result = await execute("translator", inputs=[NodeOutput(text="hello")])
        assert result.output.text == "hello"
        assert llm["chat"] == []

    @pytest.mark.asyncio
    async def test_compressor_short_text_passes_through(self, llm):
        result = await execute("compressor", inputs=[NodeOutput(text="short")])
        assert result.output.text == "short"
        assert llm["chat"] == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("node_type, message", [
        ("promptEnhancer", "No input text to enhance"),
        ("translator", "No input text to translate"),
        ("grammarFix", "No input text to fix"),
        ("compressor", "No input text to compress"),
        ("imageGenerator", "No prompt text to generate from"),
        ("imageDescriber", "No image uploaded"),
        ("storyTeller", "No idea provided"),
    ])
    async def test_missing_input_fails(self, llm, node_type, message):
        result = await execute(node_type)
        assert isinstance(result, NodeFailure)
        assert result.error == message
        assert llm["chat"] == [] and llm["vision"] == [] and llm["image"] == []


# ---------------------------------------------------------------------------
# Executors calling providers
# ---------------------------------------------------------------------------


class TestProviderExecutors:
    @pytest.mark.asyncio
    async def test_prompt_enhancer_uses_type_default_model(self, llm):
        result = await execute("promptEnhancer", data={"notes": "cinematic"}, inputs=[NodeOutput(text="a cat")])

        assert result.output.text == "llm-reply-1"
        call = llm["chat"][0]
        assert call["provider_id"] == "mistral"
        assert call["model"] == "ministral-14b-2512"
        assert "a cat" in call["prompt"] and "cinematic" in call["prompt"]

    @pytest.mark.asyncio
    async def test_persona_injection_adds_second_call(self, llm):
        result = await execute("initialPrompt", data={"text": "a hero"}, adapters=[PERSONA])

        assert result.output.text == "llm-reply-1"
        assert "Ada: a tall inventor" in llm["chat"][0]["prompt"]

    @pytest.mark.asyncio
    async def test_story_teller_prefers_upstream_text(self, llm):
        await execute("storyTeller", data={"idea": "ignored", "tags": "noir"}, inputs=[NodeOutput(text="a heist")])
        prompt = llm["chat"][0]["prompt"]
        assert "a heist" in prompt and "ignored" not in prompt and "noir" in prompt

    @pytest.mark.asyncio
    async def test_translator_names_language(self, llm):
        await execute("translator", data={"language": "fr"}, inputs=[NodeOutput(text="hello")])
        assert "French" in llm["chat"][0]["prompt"]

    @pytest.mark.asyncio
    async def test_max_tokens_override(self, llm):
        await execute("grammarFix", data={"maxTokens": 123}, inputs=[NodeOutput(text="teh cat")])
        assert llm["chat"][0]["max_tokens"] == 123

    @pytest.mark.asyncio
    async def test_compressor_long_text_calls_provider(self, llm, monkeypatch):
        monkeypatch.setattr(config, "COMPRESS_THRESHOLD_CHARS", 10)
        result = await execute("compressor", inputs=[NodeOutput(text="x" * 50)])
        assert result.output.text == "llm-reply-1"

    @pytest.mark.asyncio
    async def test_image_describer(self, llm):
        result = await execute("imageDescriber", data={"image": "data:image/png;base64,BBBB"})
        assert result.output.text == "a described image"
        assert result.output.image == "data:image/png;base64,BBBB"
        assert llm["vision"][0]["provider_id"] == "glm"

    @pytest.mark.asyncio
    async def test_image_generator(self, llm):
        result = await execute(
            "imageGenerator", data={"width": 512, "height": 768}, inputs=[NodeOutput(text="a lighthouse")],
        )
        assert result.output.image.startswith("data:image/png")
        assert llm["image"] == [{"prompt": "a lighthouse", "size": (512, 768)}]

    @pytest.mark.asyncio
    async def test_personas_replacer_prefers_upstream_image(self, llm):
        result = await execute(
            "personasReplacer",
            data={"image": "uploaded"},
            inputs=[NodeOutput(image="upstream", text="two knights")],
            adapters=[PERSONA],
        )
        assert isinstance(result, NodeSuccess)
        call = llm["vision"][0]
        assert call["image"] == "upstream"
        assert "Ada: a tall inventor" in call["instruction"]
        assert "two knights" in call["instruction"]

    @pytest.mark.asyncio
    async def test_personas_replacer_requires_personas(self, llm):
        result = await execute("personasReplacer", data={"image": "uploaded"})
        assert result.error == "No personas connected; attach character adapters"


# ---------------------------------------------------------------------------
# Provider gateway
# ---------------------------------------------------------------------------


class TestProviders:
    def test_unknown_provider(self):
        with pytest.raises(providers.UnknownProviderError):
            providers.get_provider("nope")

    def test_extract_text_from_content_blocks(self):
        content = [{"type": "thinking", "text": "hmm"}, {"type": "text", "text": "answer"}]
        assert providers.extract_text_content(content) == "answer"
        assert providers.extract_text_content("plain") == "plain"
        assert providers.extract_text_content(None) == ""

    @pytest.mark.asyncio
    async def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("MISTRAL_API_KEY", raising=False)
        with pytest.raises(providers.ProviderError, match="MISTRAL_API_KEY"):
            await providers.chat_completion("mistral", [{"role": "user", "content": "hi"}])

    @pytest.mark.asyncio
    async def test_vision_rejected_for_text_only_provider(self):
        with pytest.raises(providers.ProviderError, match="image input"):
            await providers.describe_image("openrouter", "data:,", "describe")

    @pytest.mark.asyncio
    async def test_chat_completion_payload_and_parsing(self, monkeypatch):
        sent = {}

        async def fake_post(provider, path, payload):
            sent.update(path=path, payload=payload)
            return {"choices": [{"message": {"content": "  done  "}}]}

        monkeypatch.setattr(providers, "_post", fake_post)
        text = await providers.chat_completion("glm", [{"role": "user", "content": "hi"}], max_tokens=50)

        assert text == "done"
        assert sent["path"] == "/chat/completions"
        assert sent["payload"]["model"] == "glm-4.7-flash"
        assert sent["payload"]["max_tokens"] == 50

    @pytest.mark.asyncio
    async def test_empty_completion_is_error(self, monkeypatch):
        async def fake_post(provider, path, payload):
            return {"choices": [{"message": {"content": ""}}]}

        monkeypatch.setattr(providers, "_post", fake_post)
        with pytest.raises(providers.ProviderError, match="empty"):
            await providers.chat_completion("mistral", [])

    @pytest.mark.asyncio
    async def test_generate_image_returns_data_url(self, monkeypatch):
        async def fake_post(provider, path, payload):
            assert payload["size"] == "256x256"
            return {"data": [{"b64_json": "QUJD"}]}

        monkeypatch.setattr(providers, "_post", fake_post)
        image = await providers.generate_image("a cat", provider_id="openrouter", width=256, height=256)
        assert image == "data:image/png;base64,QUJD"
