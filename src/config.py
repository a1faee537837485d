"""Configuration loader for the trusted-context gateway.

Reads a JSON config file containing upstream provider definitions, the
dual-LLM model settings and the locations of the operator-edited policy
and dual-LLM files. API keys are resolved from environment variables.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

DEFAULT_MAIN_MODELS = {
    "openai": "gpt-4o",
    "anthropic": "claude-sonnet-4-5",
    "gemini": "gemini-2.5-flash",
}


@dataclass
class ProviderConfig:
    """Configuration for a single upstream LLM provider."""

    name: str
    base_url: str
    api_key_env: str
    default_model: str = ""

    @property
    def api_key(self) -> Optional[str]:
        """Resolve the API key from the environment variable."""
        return os.getenv(self.api_key_env)


@dataclass
class DualLlmSettings:
    """Deployment settings for the quarantine models.

    The prompts and the enabled flag live in the YAML file at
    ``config_file`` so operators can change them without a restart.
    """

    config_file: Optional[str] = None
    main_model: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MAIN_MODELS))
    quarantined_model: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MAIN_MODELS))
    timeout_seconds: Optional[float] = 120.0

    def main_model_for(self, provider: str) -> Optional[str]:
        return self.main_model.get(provider)

    def quarantined_model_for(self, provider: str) -> Optional[str]:
        return self.quarantined_model.get(provider) or self.main_model.get(provider)


@dataclass
class GatewayConfig:
    """Top-level gateway configuration."""

    providers: Dict[str, ProviderConfig] = field(default_factory=dict)
    dual_llm: DualLlmSettings = field(default_factory=DualLlmSettings)
    policy_file: Optional[str] = None
    results_file: Optional[str] = None
    interactions_file: str = "logs/interactions.jsonl"
    log_file: str = "logs/gateway.log"
    log_level: str = "INFO"
    request_timeout_seconds: float = 60.0


def load_config(path: Union[str, Path]) -> GatewayConfig:
    """Load gateway configuration from a JSON file.

    Args:
        path: Path to the JSON config file.

    Returns:
        A fully resolved GatewayConfig instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the config file contains invalid data.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw: Dict[str, Any] = json.load(f)

    providers: Dict[str, ProviderConfig] = {}
    for name, prov in raw.get("providers", {}).items():
        try:
            providers[name] = ProviderConfig(
                name=name,
                base_url=prov["base_url"],
                api_key_env=prov["api_key_env"],
                default_model=prov.get("default_model", ""),
            )
        except KeyError as exc:
            raise ValueError(f"Provider '{name}' is missing {exc}") from exc

    dual_raw = raw.get("dual_llm", {})
    main_model = dict(DEFAULT_MAIN_MODELS)
    main_model.update(dual_raw.get("main_model", {}))
    quarantined_model = dict(main_model)
    quarantined_model.update(dual_raw.get("quarantined_model", {}))
    dual_llm = DualLlmSettings(
        config_file=dual_raw.get("config_file"),
        main_model=main_model,
        quarantined_model=quarantined_model,
        timeout_seconds=dual_raw.get("timeout_seconds", 120.0),
    )

    return GatewayConfig(
        providers=providers,
        dual_llm=dual_llm,
        policy_file=raw.get("policy_file"),
        results_file=raw.get("results_file"),
        interactions_file=raw.get("interactions_file", "logs/interactions.jsonl"),
        log_file=raw.get("log_file", "logs/gateway.log"),
        log_level=raw.get("log_level", "INFO"),
        request_timeout_seconds=raw.get("request_timeout_seconds", 60.0),
    )
