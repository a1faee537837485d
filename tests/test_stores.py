"""Tests for the dual-LLM config and result stores."""

import asyncio
import json
from pathlib import Path

import pytest

from src.stores import (
    DEFAULT_MAIN_AGENT_PROMPT,
    DEFAULT_MAX_ROUNDS,
    DualLlmConfig,
    DualLlmResult,
    InMemoryDualLlmResultStore,
    JsonlDualLlmResultStore,
    YamlDualLlmConfigStore,
)


def _result(tool_call_id: str = "call_1", text: str = "summary") -> DualLlmResult:
    return DualLlmResult(
        agent_id="agent-1",
        tool_call_id=tool_call_id,
        conversations=[{"role": "user", "content": "q"}],
        result=text,
    )


class TestDualLlmConfig:
    """Tests for DualLlmConfig parsing."""

    def test_defaults(self) -> None:
        config = DualLlmConfig.from_dict({})
        assert not config.enabled
        assert config.max_rounds == DEFAULT_MAX_ROUNDS
        assert config.main_agent_prompt == DEFAULT_MAIN_AGENT_PROMPT

    def test_negative_rounds_rejected(self) -> None:
        with pytest.raises(ValueError, match="max_rounds"):
            DualLlmConfig.from_dict({"max_rounds": -1})

    @pytest.mark.parametrize("value", ["false", "no", 0, None])
    def test_enabled_must_be_boolean(self, value: object) -> None:
        with pytest.raises(ValueError, match="enabled"):
            DualLlmConfig.from_dict({"enabled": value})


class TestYamlConfigStore:
    """Tests for the YAML-backed config store."""

    @pytest.mark.asyncio
    async def test_unset_path_gives_defaults(self) -> None:
        config = await YamlDualLlmConfigStore(None).get_default_config()
        assert config == DualLlmConfig()

    @pytest.mark.asyncio
    async def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        config = await YamlDualLlmConfigStore(str(tmp_path / "nope.yaml")).get_default_config()
        assert not config.enabled

    @pytest.mark.asyncio
    async def test_file_is_reread(self, tmp_path: Path) -> None:
        path = tmp_path / "dual_llm.yaml"
        path.write_text("enabled: false\n")
        store = YamlDualLlmConfigStore(str(path))
        assert not (await store.get_default_config()).enabled

        path.write_text("enabled: true\nmax_rounds: 2\nsummary_prompt: 'S: {{qaText}}'\n")
        config = await store.get_default_config()
        assert config.enabled
        assert config.max_rounds == 2
        assert config.summary_prompt == "S: {{qaText}}"

    @pytest.mark.asyncio
    async def test_non_mapping_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "dual_llm.yaml"
        path.write_text("- enabled\n")
        with pytest.raises(ValueError, match="mapping"):
            await YamlDualLlmConfigStore(str(path)).get_default_config()

    @pytest.mark.asyncio
    async def test_invalid_yaml_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "dual_llm.yaml"
        path.write_text("enabled: [unclosed\n")
        with pytest.raises(ValueError, match="not valid YAML"):
            await YamlDualLlmConfigStore(str(path)).get_default_config()

    @pytest.mark.asyncio
    async def test_quoted_boolean_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "dual_llm.yaml"
        path.write_text("enabled: \"false\"\n")
        with pytest.raises(ValueError, match="enabled"):
            await YamlDualLlmConfigStore(str(path)).get_default_config()


class TestInMemoryResultStore:
    """Tests for the in-memory result store."""

    @pytest.mark.asyncio
    async def test_first_write_wins(self) -> None:
        store = InMemoryDualLlmResultStore()
        first = await store.create(_result(text="first"))
        second = await store.create(_result(text="second"))
        assert second is first
        assert (await store.find_by_tool_call_id("call_1")).result == "first"
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_unknown_id(self) -> None:
        assert await InMemoryDualLlmResultStore().find_by_tool_call_id("missing") is None


class TestJsonlResultStore:
    """Tests for the JSONL result store."""

    @pytest.mark.asyncio
    async def test_create_and_find(self, tmp_path: Path) -> None:
        store = JsonlDualLlmResultStore(str(tmp_path / "results.jsonl"))
        await store.create(_result())
        found = await store.find_by_tool_call_id("call_1")
        assert found is not None
        assert found.result == "summary"
        assert found.agent_id == "agent-1"

    @pytest.mark.asyncio
    async def test_duplicate_is_not_written(self, tmp_path: Path) -> None:
        path = tmp_path / "results.jsonl"
        store = JsonlDualLlmResultStore(str(path))
        await store.create(_result(text="first"))
        stored = await store.create(_result(text="second"))
        assert stored.result == "first"
        assert len(path.read_text().strip().splitlines()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_creates_write_once(self, tmp_path: Path) -> None:
        path = tmp_path / "results.jsonl"
        store = JsonlDualLlmResultStore(str(path))
        stored = await asyncio.gather(*(store.create(_result(text=str(i))) for i in range(5)))
        assert len({s.result for s in stored}) == 1
        assert len(path.read_text().strip().splitlines()) == 1

    @pytest.mark.asyncio
    async def test_results_survive_reopen(self, tmp_path: Path) -> None:
        path = tmp_path / "results.jsonl"
        store = JsonlDualLlmResultStore(str(path))
        await store.create(_result("call_1"))
        await store.create(_result("call_2", text="other"))

        reopened = JsonlDualLlmResultStore(str(path))
        assert len(reopened) == 2
        assert (await reopened.find_by_tool_call_id("call_2")).result == "other"

    @pytest.mark.asyncio
    async def test_corrupt_lines_are_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "results.jsonl"
        good = json.dumps(_result().to_dict())
        path.write_text("not json\n" + good + "\n" + json.dumps({"unexpected": 1}) + "\n")
        store = JsonlDualLlmResultStore(str(path))
        assert len(store) == 1
        assert await store.find_by_tool_call_id("call_1") is not None

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        JsonlDualLlmResultStore(str(tmp_path / "nested" / "results.jsonl"))
        assert (tmp_path / "nested").is_dir()
