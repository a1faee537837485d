"""Tamper-evident interaction log for proxied chat requests.

Each completed request is recorded with the provider-format request the
client sent, the filtered conversation that went upstream, the response
returned to the client and the trust verdict. Entries form a hash chain:
every entry includes the SHA-256 hash of its predecessor, so editing any
historical entry breaks the chain and ``verify_chain`` reports it.
"""

import hashlib
import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

_logger = logging.getLogger("gateway")


GENESIS_HASH = "0" * 64


@dataclass
class InteractionEntry:
    """A single interaction record in the hash chain."""

    timestamp: str
    request_id: str
    agent_id: str
    provider: str
    model: str
    request: Dict[str, Any]
    processed_messages: List[Dict[str, Any]]
    response: Dict[str, Any]
    context_trusted: bool
    previous_hash: str
    chain_hash: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def compute_chain_hash(self) -> str:
        """SHA-256 over every field except ``chain_hash`` itself."""
        fields = self.to_dict()
        fields.pop("chain_hash")
        canonical = json.dumps(fields, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InteractionEntry":
        return cls(**data)


class InteractionLog:
    """Append-only, hash-chain linked interaction log.

    Thread-safe. Writes entries as JSONL to the configured path and resumes
    the chain from an existing file.
    """

    def __init__(self, log_path: str) -> None:
        self._log_path = Path(log_path)
        self._lock = threading.Lock()
        self._last_hash: str = GENESIS_HASH
        self._entry_count: int = 0

        os.makedirs(self._log_path.parent, exist_ok=True)

        if self._log_path.exists() and self._log_path.stat().st_size > 0:
            self._resume_chain()

    def _resume_chain(self) -> None:
        with open(self._log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry_data = json.loads(line)
                except json.JSONDecodeError as e:
                    _logger.warning(
                        "Corrupt interaction entry at line %d: %s",
                        self._entry_count + 1,
                        e,
                    )
                    continue
                self._last_hash = entry_data.get("chain_hash", GENESIS_HASH)
                self._entry_count += 1

    def append(
        self,
        *,
        request_id: str,
        agent_id: str,
        provider: str,
        model: str,
        request: Dict[str, Any],
        processed_messages: List[Dict[str, Any]],
        response: Dict[str, Any],
        context_trusted: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> InteractionEntry:
        """Create and persist a new entry linked to the chain.

        Args:
            request_id: Gateway-assigned request identifier.
            agent_id: The calling agent.
            provider: The provider discriminator of the request.
            model: The requested model.
            request: The provider-format request the client sent.
            processed_messages: The filtered canonical messages sent upstream.
            response: The provider-format response returned to the client.
            context_trusted: The trust verdict for the conversation.
            metadata: Optional additional metadata (usage, etc.).

        Returns:
            The persisted entry with its computed chain_hash.
        """
        with self._lock:
            entry = InteractionEntry(
                timestamp=datetime.now(timezone.utc).isoformat(),
                request_id=request_id,
                agent_id=agent_id,
                provider=provider,
                model=model,
                request=request,
                processed_messages=processed_messages,
                response=response,
                context_trusted=context_trusted,
                previous_hash=self._last_hash,
                metadata=metadata or {},
            )
            entry.chain_hash = entry.compute_chain_hash()

            with open(self._log_path, "a") as f:
                f.write(json.dumps(entry.to_dict(), sort_keys=True) + "\n")

            self._last_hash = entry.chain_hash
            self._entry_count += 1

            return entry

    @property
    def last_hash(self) -> str:
        return self._last_hash

    @property
    def entry_count(self) -> int:
        return self._entry_count

    def read_entries(self) -> List[InteractionEntry]:
        """Read all entries from the log file in chronological order."""
        entries: List[InteractionEntry] = []
        if not self._log_path.exists():
            return entries

        with open(self._log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(InteractionEntry.from_dict(json.loads(line)))
                except (json.JSONDecodeError, TypeError) as e:
                    _logger.warning("Skipping corrupt interaction entry: %s", e)
                    continue

        return entries


@dataclass
class VerificationResult:
    """Result of a hash-chain verification."""

    valid: bool
    entry_count: int
    errors: List[str]


def verify_chain(entries: List[InteractionEntry]) -> VerificationResult:
    """Verify the integrity of a sequence of interaction entries.

    Each entry's chain_hash must match its recomputed hash and link to the
    previous entry's chain_hash; the first entry links to the genesis hash.
    """
    errors: List[str] = []

    for i, entry in enumerate(entries):
        expected_previous = entries[i - 1].chain_hash if i > 0 else GENESIS_HASH
        if entry.previous_hash != expected_previous:
            errors.append(
                "Entry {} ({}): previous_hash does not link to the chain".format(
                    i, entry.request_id
                )
            )

        expected_hash = entry.compute_chain_hash()
        if entry.chain_hash != expected_hash:
            errors.append(
                "Entry {} ({}): chain_hash mismatch (expected {}, got {})".format(
                    i, entry.request_id, expected_hash[:16], entry.chain_hash[:16]
                )
            )

    return VerificationResult(valid=not errors, entry_count=len(entries), errors=errors)
