"""Guardrail sink interface, per-call report and message table."""

from __future__ import annotations

from typing import Any, Protocol

from shield_chat.types import GuardrailSignal, Severity

MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "input_blocked": "Blocked by client Shield. Reasons: {reasons}",
        "session_cap_hard": "Session token cap reached ({hard_cap}).",
        "soft_cap": (
            "You are over the soft token cap ({soft_cap}). "
            "Further generation will slow/trim."
        ),
        "accelerator_unavailable": "WebGPU unavailable; using server fallback.",
        "local_model_failed": "Local model not available; using server fallback.",
        "server_budget": "Insufficient budget for server call.",
        "server_error": "Server error.",
        "network_error": "Network error.",
        "remote_guardrail": "The server flagged this response.",
        "no_local_answer": "No local answer available.",
    },
    "es": {
        "input_blocked": "Bloqueado por Shield del cliente. Motivos: {reasons}",
        "session_cap_hard": "Límite de tokens de sesión alcanzado ({hard_cap}).",
        "soft_cap": (
            "Has superado el límite blando de tokens ({soft_cap}). "
            "Las respuestas futuras serán más lentas o recortadas."
        ),
        "accelerator_unavailable": "WebGPU no disponible; usando respaldo del servidor.",
        "local_model_failed": "Modelo local no disponible; usando respaldo del servidor.",
        "server_budget": "Presupuesto insuficiente para la llamada al servidor.",
        "server_error": "Error del servidor.",
        "network_error": "Error de red.",
        "remote_guardrail": "El servidor marcó esta respuesta.",
        "no_local_answer": "No hay respuesta local disponible.",
    },
}

_ERROR_LEVELS = frozenset({"error", "err", "block", "blocked", "fatal", "critical"})


def message_for(code: str, language: str = "en", **params: object) -> str:
    table = MESSAGES.get(language, MESSAGES["en"])
    template = table.get(code) or MESSAGES["en"].get(code, code)
    return template.format(**params) if params else template


def format_cap(units: int) -> str:
    """Render a token cap as shown to users, e.g. 100000 -> "100k"."""
    if units >= 1000 and units % 1000 == 0:
        return f"{units // 1000}k"
    return str(units)


class GuardrailSink(Protocol):
    """Receiver for guardrail signals raised during a resolution."""

    def emit(self, signal: GuardrailSignal) -> None:
        """Record one warning or error."""

    def clear(self) -> None:
        """Drop signals from the previous resolution."""


class GuardrailReport:
    """Accumulates the signals of one resolution call, in order."""

    def __init__(self) -> None:
        self.signals: list[GuardrailSignal] = []

    def emit(self, signal: GuardrailSignal) -> None:
        self.signals.append(signal)

    def clear(self) -> None:
        self.signals.clear()

    @property
    def codes(self) -> list[str]:
        return [signal.code for signal in self.signals]


def signal_from_control(payload: Any, language: str = "en") -> GuardrailSignal:
    """Map a control payload onto a `GuardrailSignal`.

    The canonical shape is `{"level": "warn"|"error", "code": ..., "message": ...}`.
    Older producers nest it under `guard`/`guardrail`, spell the level as
    `severity`, or send a bare `{"error": "..."}` / `{"warning": "..."}`.
    """

    if not isinstance(payload, dict):
        text = str(payload or "").strip()
        return GuardrailSignal(
            severity=Severity.WARN,
            code="remote_guardrail",
            message=text or message_for("remote_guardrail", language),
        )

    body = payload
    for key in ("guard", "guardrail"):
        nested = payload.get(key)
        if isinstance(nested, dict):
            body = nested
            break

    level = str(body.get("level") or body.get("severity") or "").strip().lower()
    message = body.get("message")
    if isinstance(body.get("error"), str) and not level:
        level, message = "error", message or body["error"]
    elif isinstance(body.get("warning"), str) and not level:
        level, message = "warn", message or body["warning"]

    severity = Severity.ERROR if level in _ERROR_LEVELS else Severity.WARN
    code = str(body.get("code") or "remote_guardrail")
    return GuardrailSignal(
        severity=severity,
        code=code,
        message=str(message or message_for("remote_guardrail", language)),
    )
