"""Maturador OpenAI completion client."""

import logging
from typing import Optional

from . import database as db
from . import http_transport
from . import provider_config
from .errors import GenerationFailed

logger = logging.getLogger("maturador.openai")

MAX_TOKENS_CAP = 35
TEMPERATURE = 0.8
FREQUENCY_PENALTY = 0.7
PRESENCE_PENALTY = 0.8
REQUEST_TIMEOUT_SECONDS = 40
MODEL_RATES_PER_1K = {
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
    "gpt-4o": {"input": 0.005, "output": 0.015},
    "gpt-3.5-turbo": {"input": 0.0005, "output": 0.0015},
}

SYSTEM_PROMPT_TEMPLATE = """VOCÊ DEVE SEGUIR ESTRITAMENTE AS INSTRUÇÕES ABAIXO:

{prompt}

REGRAS OBRIGATÓRIAS:
1. Respeite a personalidade, o tom e o estilo definidos acima
2. Responda em 1 ou 2 linhas, nunca mais
3. Use linguagem coloquial brasileira (kkk, rs, emoji ocasional)
4. Seja natural, breve e casual como no WhatsApp
5. Mantenha o contexto da conversa sem se repetir

Esta é uma conversa real no WhatsApp. Seja humano, breve e natural."""


def build_system_prompt(prompt: str) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(prompt=(prompt or "").strip())


def _extract_openai_error(payload: dict) -> str:
    if not isinstance(payload, dict):
        return ""
    err = payload.get("error")
    if isinstance(err, dict):
        msg = str(err.get("message") or "").strip()
        err_type = str(err.get("type") or "").strip()
        code = str(err.get("code") or "").strip()
        return " | ".join(item for item in [msg, err_type, code] if item)
    return str(payload.get("message") or "").strip()


def _estimate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    rates = MODEL_RATES_PER_1K.get(model or "", MODEL_RATES_PER_1K["gpt-4o-mini"])
    return (
        (prompt_tokens / 1000.0) * rates["input"]
        + (completion_tokens / 1000.0) * rates["output"]
    )


def _friendly_http_error(status_code: int, detail: str, model: str) -> str:
    if status_code in {401, 403}:
        return "OpenAI key missing/invalid."
    if status_code == 404:
        return f"Model not available: {model}."
    if status_code == 408:
        return "OpenAI request timed out."
    if status_code == 429:
        return "OpenAI rate limit reached."
    if status_code >= 500:
        return "OpenAI service error."
    if status_code == 0:
        return f"OpenAI unreachable: {detail or 'connection failed'}"
    return f"OpenAI HTTP {status_code}: {detail or 'Unknown API error'}"


async def complete(
    prompt: str,
    history: list[dict],
    *,
    max_tokens: int = MAX_TOKENS_CAP,
    pair_id: Optional[str] = None,
) -> dict:
    """Ask the completion service for the next reply.

    `history` items are ``{"role": "user"|"assistant", "content": str}``.
    Returns ``{"text", "model", "usage"}``; raises GenerationFailed.
    """
    runtime = await provider_config.resolve_provider_runtime("openai")
    api_key = (runtime.get("api_key") or "").strip()
    if not api_key:
        logger.error("No OpenAI key configured in settings or environment")
        raise GenerationFailed("No OPENAI API key configured.")
    model = (runtime.get("model_default") or "").strip() or "gpt-4o-mini"
    base_url = (runtime.get("base_url") or "").strip()

    messages = [{"role": "system", "content": build_system_prompt(prompt)}]
    for item in history:
        role = item.get("role", "user")
        if role not in ("user", "assistant"):
            role = "user"
        messages.append({"role": role, "content": str(item.get("content") or "")})

    body = {
        "model": model,
        "messages": messages,
        "max_tokens": min(int(max_tokens or MAX_TOKENS_CAP), MAX_TOKENS_CAP),
        "temperature": TEMPERATURE,
        "frequency_penalty": FREQUENCY_PENALTY,
        "presence_penalty": PRESENCE_PENALTY,
    }
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }

    attempt = await http_transport.post_json_with_backoff(
        url=f"{base_url.rstrip('/')}/chat/completions",
        headers=headers,
        body=body,
        timeout_seconds=REQUEST_TIMEOUT_SECONDS,
    )
    status_code = int(attempt.get("status_code") or 0)
    if status_code != 200:
        payload = attempt.get("payload")
        detail = (
            _extract_openai_error(payload)
            if isinstance(payload, dict)
            else str(attempt.get("error") or attempt.get("text") or "").strip()[:280]
        )
        friendly = _friendly_http_error(status_code, detail, model)
        logger.error("OpenAI API error %s: %s", attempt.get("status_code"), detail)
        raise GenerationFailed(friendly, {"status_code": attempt.get("status_code"), "detail": detail})

    data = attempt.get("payload")
    if not isinstance(data, dict):
        raise GenerationFailed("OpenAI returned invalid JSON.")

    usage = data.get("usage") or {}
    prompt_tokens = int(usage.get("prompt_tokens", 0) or 0)
    completion_tokens = int(usage.get("completion_tokens", 0) or 0)
    await db.log_api_usage(
        provider="openai",
        model=model,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=int(usage.get("total_tokens", 0) or (prompt_tokens + completion_tokens)),
        estimated_cost=_estimate_cost(model, prompt_tokens, completion_tokens),
        pair_id=pair_id,
    )

    choices = data.get("choices") or []
    if not choices:
        raise GenerationFailed("OpenAI returned no choices.")
    text = str((choices[0].get("message") or {}).get("content") or "").strip()
    if not text:
        raise GenerationFailed("OpenAI returned an empty completion.")

    return {
        "text": text,
        "model": str(data.get("model") or model),
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    }
