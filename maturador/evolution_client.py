"""Maturador Evolution gateway client (WhatsApp messaging channel)."""

import logging
from urllib.parse import quote

from . import http_transport
from . import provider_config
from .errors import ChannelFatalError, ChannelTransientError

logger = logging.getLogger("maturador.evolution")

REQUEST_TIMEOUT_SECONDS = 25
FATAL_STATUS_CODES = {401, 403, 404}


def _error_detail(attempt: dict) -> str:
    payload = attempt.get("payload")
    if isinstance(payload, dict):
        response = payload.get("response")
        if isinstance(response, dict) and response.get("message"):
            return str(response.get("message"))[:280]
        for key in ("message", "error"):
            if payload.get(key):
                return str(payload.get(key))[:280]
    return str(attempt.get("error") or attempt.get("text") or "").strip()[:280]


def classify_failure(attempt: dict, instance: str) -> Exception:
    """Map a failed transport attempt onto the channel error taxonomy."""
    status_code = attempt.get("status_code")
    detail = _error_detail(attempt)
    details = {"instance": instance, "status_code": status_code, "detail": detail}
    if status_code in FATAL_STATUS_CODES:
        if status_code == 404:
            message = f"Evolution instance not found: {instance}."
        else:
            message = "Evolution API key missing/invalid."
        return ChannelFatalError(message, details, status_code=status_code)
    if status_code is None:
        return ChannelTransientError(
            f"Evolution gateway unreachable: {detail or 'connection failed'}",
            details,
        )
    if status_code == 408:
        return ChannelTransientError("Evolution request timed out.", details, status_code=408)
    if status_code == 429:
        return ChannelTransientError("Evolution rate limit reached.", details, status_code=429)
    if status_code >= 500:
        return ChannelTransientError("Evolution service error.", details, status_code=status_code)
    return ChannelFatalError(
        f"Evolution HTTP {status_code}: {detail or 'request rejected'}",
        details,
        status_code=status_code,
    )


async def _runtime() -> dict:
    runtime = await provider_config.resolve_provider_runtime("evolution")
    if not runtime.get("configured"):
        raise ChannelFatalError(
            "Evolution gateway not configured (EVOLUTION_API_ENDPOINT / EVOLUTION_API_KEY)."
        )
    return runtime


async def send_text(instance: str, number: str, text: str) -> dict:
    """Send `text` to `number` from `instance`. Returns the gateway ack payload."""
    runtime = await _runtime()
    url = f"{runtime['base_url']}/message/sendText/{quote(instance, safe='')}"
    attempt = await http_transport.post_json_with_backoff(
        url=url,
        headers={"apikey": runtime["api_key"], "Content-Type": "application/json"},
        body={"number": number, "text": text},
        timeout_seconds=REQUEST_TIMEOUT_SECONDS,
    )
    if not attempt.get("ok"):
        error = classify_failure(attempt, instance)
        logger.warning("sendText via %s failed: %s", instance, error)
        raise error

    payload = attempt.get("payload")
    ack = payload if isinstance(payload, dict) else {"raw": attempt.get("text") or ""}
    key = ack.get("key") if isinstance(ack.get("key"), dict) else {}
    return {"ok": True, "message_id": key.get("id"), "status_code": attempt.get("status_code"), "payload": ack}


async def instance_connected(instance: str) -> bool:
    """True when the gateway reports the instance's connection as open."""
    runtime = await _runtime()
    attempt = await http_transport.request_json_with_backoff(
        method="GET",
        url=f"{runtime['base_url']}/instance/fetchInstances",
        headers={"apikey": runtime["api_key"]},
        params={"instanceName": instance},
        timeout_seconds=REQUEST_TIMEOUT_SECONDS,
        max_attempts=1,
    )
    if not attempt.get("ok"):
        raise classify_failure(attempt, instance)

    data = attempt.get("payload")
    record = data[0] if isinstance(data, list) and data else data
    if not isinstance(record, dict):
        return False
    status = record.get("connectionStatus")
    if status is None and isinstance(record.get("instance"), dict):
        status = record["instance"].get("state") or record["instance"].get("connectionStatus")
    return status == "open"
