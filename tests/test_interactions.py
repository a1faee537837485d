"""Tests for the hash-chained interaction log."""

import json
from pathlib import Path
from typing import Any

from src.interactions import GENESIS_HASH, InteractionLog, verify_chain


def _append(log: InteractionLog, request_id: str, **overrides: Any):
    fields = dict(
        request_id=request_id,
        agent_id="agent-1",
        provider="openai:chatCompletions",
        model="gpt-4o",
        request={"model": "gpt-4o", "messages": [{"role": "user", "content": "hi"}]},
        processed_messages=[{"role": "user", "content": "hi"}],
        response={"id": "chatcmpl-1", "choices": []},
        context_trusted=True,
    )
    fields.update(overrides)
    return log.append(**fields)


class TestInteractionLog:
    """Tests for appending and reading entries."""

    def test_first_entry_links_to_genesis(self, tmp_path: Path) -> None:
        log = InteractionLog(str(tmp_path / "interactions.jsonl"))
        entry = _append(log, "req-1")
        assert entry.previous_hash == GENESIS_HASH
        assert entry.chain_hash == entry.compute_chain_hash()
        assert log.last_hash == entry.chain_hash
        assert log.entry_count == 1

    def test_entries_are_linked(self, tmp_path: Path) -> None:
        log = InteractionLog(str(tmp_path / "interactions.jsonl"))
        first = _append(log, "req-1")
        second = _append(log, "req-2", context_trusted=False, metadata={"usage": {"total_tokens": 3}})
        assert second.previous_hash == first.chain_hash

        entries = log.read_entries()
        assert [e.request_id for e in entries] == ["req-1", "req-2"]
        assert entries[1].context_trusted is False
        assert entries[1].metadata == {"usage": {"total_tokens": 3}}
        assert verify_chain(entries).valid

    def test_chain_resumes_after_reopen(self, tmp_path: Path) -> None:
        path = str(tmp_path / "interactions.jsonl")
        first_log = InteractionLog(path)
        _append(first_log, "req-1")
        last = _append(first_log, "req-2")

        reopened = InteractionLog(path)
        assert reopened.entry_count == 2
        assert reopened.last_hash == last.chain_hash
        third = _append(reopened, "req-3")
        assert third.previous_hash == last.chain_hash
        assert verify_chain(reopened.read_entries()).valid

    def test_read_missing_file(self, tmp_path: Path) -> None:
        log = InteractionLog(str(tmp_path / "interactions.jsonl"))
        assert log.read_entries() == []


class TestVerifyChain:
    """Tests for tamper detection."""

    def test_edited_entry_is_detected(self, tmp_path: Path) -> None:
        path = tmp_path / "interactions.jsonl"
        log = InteractionLog(str(path))
        _append(log, "req-1")
        _append(log, "req-2")

        lines = path.read_text().splitlines()
        record = json.loads(lines[0])
        record["context_trusted"] = False
        lines[0] = json.dumps(record, sort_keys=True)
        path.write_text("\n".join(lines) + "\n")

        result = verify_chain(log.read_entries())
        assert not result.valid
        assert result.entry_count == 2
        assert any("chain_hash mismatch" in e for e in result.errors)

    def test_removed_entry_is_detected(self, tmp_path: Path) -> None:
        log = InteractionLog(str(tmp_path / "interactions.jsonl"))
        _append(log, "req-1")
        _append(log, "req-2")
        _append(log, "req-3")

        entries = log.read_entries()
        del entries[1]
        result = verify_chain(entries)
        assert not result.valid
        assert any("previous_hash" in e for e in result.errors)

    def test_empty_chain_is_valid(self) -> None:
        result = verify_chain([])
        assert result.valid
        assert result.entry_count == 0
