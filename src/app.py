"""FastAPI application for the trusted-context gateway.

Proxies chat requests in each provider's own format (OpenAI chat
completions, Anthropic messages, Gemini generateContent). Every request
is converted to the canonical format, its tool results are checked
against the trusted-data policies (with blocked results redacted and,
when enabled, the rest quarantined through the dual-LLM pattern), and
the filtered conversation is forwarded upstream.

Request flow:
1. Resolve the upstream and the API key
2. Convert the provider request to canonical form
3. Evaluate and filter tool results
4. Convert back and forward upstream
5. Convert the upstream response back to the client's format
6. Record the interaction and a telemetry line
"""

import os
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.auth import AuthenticationError, resolve_api_key
from src.config import GatewayConfig, ProviderConfig, load_config
from src.inference import InferenceClient, InferenceError
from src.interactions import InteractionLog
from src.models import ErrorDetail, ErrorResponse
from src.policy import TrustedDataPolicyEvaluator, YamlPolicyStore
from src.router import RoutingError, resolve_upstream
from src.stores import (
    DualLlmResultStore,
    InMemoryDualLlmResultStore,
    JsonlDualLlmResultStore,
    YamlDualLlmConfigStore,
)
from src.telemetry import log_request, setup_logging
from src.transformers.base import FormatError, Provider
from src.trusted_data import TrustedContextEvaluator
from src.upstream import post_upstream

CONFIG_PATH = os.getenv("GATEWAY_CONFIG", "config/example.config.json")

_config: Optional[GatewayConfig] = None
_policy_evaluator: Optional[TrustedDataPolicyEvaluator] = None
_dual_llm_config_store: Optional[YamlDualLlmConfigStore] = None
_result_store: Optional[DualLlmResultStore] = None
_interaction_log: Optional[InteractionLog] = None
# Overridden in tests to serve upstream calls without a network
_upstream_transport: Optional[httpx.AsyncBaseTransport] = None


def get_config() -> GatewayConfig:
    """Return the loaded gateway configuration (lazy-init)."""
    global _config
    if _config is None:
        _config = load_config(CONFIG_PATH)
    return _config


def get_policy_evaluator() -> TrustedDataPolicyEvaluator:
    """Return the trusted-data policy evaluator (lazy-init from config)."""
    global _policy_evaluator
    if _policy_evaluator is None:
        _policy_evaluator = TrustedDataPolicyEvaluator(YamlPolicyStore(get_config().policy_file))
    return _policy_evaluator


def get_dual_llm_config_store() -> YamlDualLlmConfigStore:
    """Return the dual-LLM config store (lazy-init from config)."""
    global _dual_llm_config_store
    if _dual_llm_config_store is None:
        _dual_llm_config_store = YamlDualLlmConfigStore(get_config().dual_llm.config_file)
    return _dual_llm_config_store


def get_result_store() -> DualLlmResultStore:
    """Return the dual-LLM result store (lazy-init from config)."""
    global _result_store
    if _result_store is None:
        cfg = get_config()
        if cfg.results_file:
            _result_store = JsonlDualLlmResultStore(cfg.results_file)
        else:
            _result_store = InMemoryDualLlmResultStore()
    return _result_store


def get_interaction_log() -> InteractionLog:
    """Return the interaction log (lazy-init from config)."""
    global _interaction_log
    if _interaction_log is None:
        _interaction_log = InteractionLog(get_config().interactions_file)
    return _interaction_log


def build_context_evaluator(
    provider: Provider, upstream: ProviderConfig, request_model: str
) -> TrustedContextEvaluator:
    """Build the orchestrator for one request.

    Quarantine calls go to the same provider as the request, with the
    models configured for that provider (falling back to the requested one).
    """
    cfg = get_config()
    settings = cfg.dual_llm
    main_model = settings.main_model_for(provider.short_name) or request_model
    quarantined_model = settings.quarantined_model_for(provider.short_name) or main_model

    def client_factory(api_key: str) -> InferenceClient:
        return InferenceClient(
            provider,
            upstream,
            api_key,
            timeout=cfg.request_timeout_seconds,
            transport=_upstream_transport,
        )

    return TrustedContextEvaluator(
        get_policy_evaluator(),
        get_dual_llm_config_store(),
        get_result_store(),
        client_factory,
        main_model=main_model,
        quarantined_model=quarantined_model,
        timeout_seconds=settings.timeout_seconds,
    )


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Initialize config, logging and stores on startup."""
    cfg = get_config()
    setup_logging(cfg.log_file, cfg.log_level)
    get_policy_evaluator()
    get_dual_llm_config_store()
    get_result_store()
    get_interaction_log()
    yield


app = FastAPI(title="Trusted Context Gateway", version="0.3.0", lifespan=lifespan)


def _error_response(status: int, error_type: str, message: str) -> JSONResponse:
    """Build a consistent JSON error response."""
    body = ErrorResponse(error=ErrorDetail(type=error_type, message=message))
    return JSONResponse(status_code=status, content=body.model_dump())


async def _proxy(
    request: Request,
    provider: Provider,
    agent_id: Optional[str],
    model: Optional[str] = None,
) -> JSONResponse:
    config = get_config()
    request_id = "gw-{}".format(uuid.uuid4().hex[:12])
    agent = agent_id or request.headers.get("user-agent") or "default"

    def fail(status: int, error_type: str, message: str, outcome: Optional[str] = None) -> JSONResponse:
        log_request(
            agent_id=agent,
            provider=provider.value,
            outcome=outcome or error_type,
            error=message,
            request_id=request_id,
        )
        return _error_response(status, error_type, message)

    try:
        body: Any = await request.json()
    except ValueError:
        return fail(400, "invalid_request", "Request body must be valid JSON.")

    # --- Routing, authentication and conversion ---
    try:
        route = resolve_upstream(config, provider)
        api_key = resolve_api_key(
            provider,
            request.headers,
            fallback=route.upstream.api_key,
            query_key=request.query_params.get("key"),
        )
        canonical = route.transformer.request_to_canonical(body, model=model)
    except RoutingError as exc:
        return fail(400, "routing_error", str(exc))
    except AuthenticationError as exc:
        return fail(401, "authentication_error", exc.detail)
    except FormatError as exc:
        return fail(400, "invalid_request", str(exc))

    if canonical.stream:
        return fail(400, "not_supported", "Streaming responses are not supported by this gateway.")

    # --- Trusted-context evaluation ---
    evaluator = build_context_evaluator(provider, route.upstream, canonical.model)
    try:
        trust = await evaluator.evaluate_if_context_is_trusted(canonical.messages, agent, api_key)
    except InferenceError as exc:
        return fail(exc.status_code, "quarantine_error", exc.detail)
    except ValueError as exc:
        # Malformed policy or dual LLM config file
        return fail(500, "configuration_error", str(exc))

    # --- Upstream call ---
    try:
        upstream_request = canonical.model_copy(update={"messages": trust.filtered_messages})
        upstream_body = route.transformer.request_from_canonical(upstream_request)
    except FormatError as exc:
        return fail(400, "invalid_request", str(exc))

    try:
        raw_response = await post_upstream(
            provider,
            route.upstream,
            canonical.model,
            api_key,
            upstream_body,
            timeout=config.request_timeout_seconds,
            transport=_upstream_transport,
        )
    except InferenceError as exc:
        return fail(exc.status_code, "provider_error", exc.detail)

    try:
        canonical_response = route.transformer.response_to_canonical(raw_response)
        response_body = route.transformer.response_from_canonical(canonical_response)
    except FormatError as exc:
        return fail(502, "provider_error", str(exc))

    usage: Optional[Dict[str, Any]] = None
    if canonical_response.usage is not None:
        usage = canonical_response.usage.model_dump()

    get_interaction_log().append(
        request_id=request_id,
        agent_id=agent,
        provider=provider.value,
        model=canonical.model,
        request=body,
        processed_messages=[
            m.model_dump(mode="json", exclude_none=True) for m in trust.filtered_messages
        ],
        response=response_body,
        context_trusted=trust.context_is_trusted,
        metadata={"usage": usage} if usage else None,
    )

    log_request(
        agent_id=agent,
        provider=provider.value,
        outcome="success",
        context_trusted=trust.context_is_trusted,
        usage=usage,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=200,
        content=response_body,
        headers={
            "x-gateway-request-id": request_id,
            "x-gateway-context-trusted": "true" if trust.context_is_trusted else "false",
        },
    )


@app.post("/v1/openai/chat/completions", response_model=None)
async def openai_chat_completions(request: Request) -> JSONResponse:
    """OpenAI chat completions for the agent named by the user-agent header."""
    return await _proxy(request, Provider.OPENAI, None)


@app.post("/v1/openai/{agent_id}/chat/completions", response_model=None)
async def openai_agent_chat_completions(agent_id: str, request: Request) -> JSONResponse:
    return await _proxy(request, Provider.OPENAI, agent_id)


@app.post("/v1/anthropic/messages", response_model=None)
async def anthropic_messages(request: Request) -> JSONResponse:
    """Anthropic messages for the agent named by the user-agent header."""
    return await _proxy(request, Provider.ANTHROPIC, None)


@app.post("/v1/anthropic/{agent_id}/messages", response_model=None)
async def anthropic_agent_messages(agent_id: str, request: Request) -> JSONResponse:
    return await _proxy(request, Provider.ANTHROPIC, agent_id)


@app.post("/v1/gemini/models/{model}:generateContent", response_model=None)
async def gemini_generate_content(model: str, request: Request) -> JSONResponse:
    """Gemini generateContent for the agent named by the user-agent header."""
    return await _proxy(request, Provider.GEMINI, None, model=model)


@app.post("/v1/gemini/{agent_id}/models/{model}:generateContent", response_model=None)
async def gemini_agent_generate_content(
    agent_id: str, model: str, request: Request
) -> JSONResponse:
    return await _proxy(request, Provider.GEMINI, agent_id, model=model)
