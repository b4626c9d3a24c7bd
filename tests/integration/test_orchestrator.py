import json
from collections.abc import AsyncIterator, Callable

import httpx
import pytest

from shield_chat.agent.local import ProgressCallback
from shield_chat.agent.orchestrator import ResolutionOrchestrator
from shield_chat.agent.remote import RemoteInferenceClient
from shield_chat.agent.session import ChatSession
from shield_chat.config import BudgetConfig, RemoteConfig
from shield_chat.retrieval.corpus import CorpusIndex, CorpusUnavailableError
from shield_chat.retrieval.drafter import ExtractiveDrafter
from shield_chat.types import GuardrailSignal, Passage, Severity, Tier


def _passages() -> list[Passage]:
    return [
        Passage("a", "Session budget resets when a new session starts.", "en"),
        Passage("b", "The session budget caps generated tokens per session.", "en"),
        Passage("c", "Cookies are optional and analytics are off by default.", "en"),
        Passage("d", "El presupuesto de la sesión se reinicia.", "es"),
    ]


class ScriptedLocalAdapter:
    def __init__(
        self,
        tokens: list[str] | None = None,
        *,
        available: bool = True,
        fail_generate: bool = False,
    ) -> None:
        self.tokens = tokens or []
        self._available = available
        self.fail_generate = fail_generate
        self.loads: list[str] = []
        self.prompts: list[tuple[str, str]] = []

    @property
    def available(self) -> bool:
        return self._available

    async def load(self, model_identifier: str, on_progress: ProgressCallback | None = None) -> bool:
        self.loads.append(model_identifier)
        if on_progress is not None:
            on_progress(0.0)
            on_progress(1.0)
        return True

    async def generate(self, prompt: str, system_instruction: str = "") -> AsyncIterator[str]:
        self.prompts.append((prompt, system_instruction))
        for token in self.tokens:
            yield token
        if self.fail_generate:
            raise RuntimeError("gpu lost")


class RemoteScript:
    """Mock transport that records requests and replies with a fixed body."""

    def __init__(self, body: str = "", *, status: int = 200, fail: bool = False) -> None:
        self.body = body
        self.status = status
        self.fail = fail
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(self.status, text=self.body)

    def client(self) -> RemoteInferenceClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(self), base_url="http://remote.test")
        return RemoteInferenceClient(RemoteConfig(base_url="http://remote.test"), client=http)


class RecordingSink:
    def __init__(self) -> None:
        self.signals: list[GuardrailSignal] = []
        self.clears = 0

    def emit(self, signal: GuardrailSignal) -> None:
        self.signals.append(signal)

    def clear(self) -> None:
        self.clears += 1
        self.signals.clear()


def _orchestrator(
    *,
    local: ScriptedLocalAdapter | None = None,
    remote: RemoteScript | None = None,
    source: Callable[[], list[Passage]] | None = None,
) -> ResolutionOrchestrator:
    corpus = CorpusIndex(source) if source is not None else CorpusIndex.from_passages(_passages())
    return ResolutionOrchestrator(
        drafter=ExtractiveDrafter(corpus),
        local=local,
        remote=remote.client() if remote is not None else None,
    )


def _codes(signals: list[GuardrailSignal]) -> list[str]:
    return [signal.code for signal in signals]


@pytest.mark.asyncio
async def test_extractive_answer_never_touches_remote() -> None:
    remote = RemoteScript("data: should not be used\n\n")
    orchestrator = _orchestrator(remote=remote)
    session = ChatSession.start("en")

    resolution = await orchestrator.resolve(session, "session budget", mode="hybrid")

    assert resolution.source is Tier.EXTRACTIVE
    assert "[#a]" in resolution.answer and "[#b]" in resolution.answer
    assert resolution.citations == ["a", "b"]
    assert resolution.guardrails == []
    assert remote.requests == []
    assert [m.role for m in session.messages] == ["user", "assistant"]
    assert resolution.cost == session.budget.spent > 0

    trace = orchestrator.trace_store.get(resolution.trace_id)
    assert trace.source == "extractive"
    assert trace.groundedness >= 0.95


@pytest.mark.asyncio
async def test_local_mode_without_accelerator_settles_without_answer() -> None:
    remote = RemoteScript("data: nope\n\n")
    orchestrator = _orchestrator(local=ScriptedLocalAdapter(available=False), remote=remote)
    session = ChatSession.start("en")

    resolution = await orchestrator.resolve(session, "quantum chromodynamics", mode="local")

    assert resolution.source is Tier.NONE
    assert resolution.answer == ""
    assert resolution.status == "no_local_answer"
    assert _codes(resolution.guardrails) == ["accelerator_unavailable", "no_local_answer"]
    assert remote.requests == []


@pytest.mark.asyncio
async def test_local_tier_answers_from_strong_passages() -> None:
    local = ScriptedLocalAdapter(["The budget ", "caps output [#b]."])
    remote = RemoteScript("data: nope\n\n")
    orchestrator = _orchestrator(local=local, remote=remote)
    session = ChatSession.start("en")

    updates = [u async for u in orchestrator.stream(session, "what caps generated output")]
    resolution = updates[-1].resolution

    assert resolution is not None
    assert resolution.source is Tier.LOCAL
    assert resolution.answer == "The budget caps output [#b]."
    assert resolution.citations == ["b"]
    assert local.loads == [orchestrator.config.local.model_identifier]
    assert "[#b] The session budget caps generated tokens per session." in local.prompts[0][1]
    assert remote.requests == []

    statuses = [(u.status, u.progress) for u in updates if u.kind == "status"]
    assert ("loading_local_model", 0) in statuses
    assert ("loading_local_model", 100) in statuses
    assert ("streaming_local_gpu", None) in statuses
    assert [u.text for u in updates if u.kind == "token"] == ["The budget ", "caps output [#b]."]


@pytest.mark.asyncio
async def test_local_failure_falls_through_to_remote() -> None:
    local = ScriptedLocalAdapter(fail_generate=True)
    remote = RemoteScript("data: Remote answer\n\ndata: [END]\n\n")
    orchestrator = _orchestrator(local=local, remote=remote)
    session = ChatSession.start("en")

    resolution = await orchestrator.resolve(session, "what caps generated output")

    assert resolution.source is Tier.REMOTE
    assert resolution.answer == "Remote answer"
    assert _codes(resolution.guardrails) == ["local_model_failed"]
    assert session.messages[-1].content == "Remote answer"
    assert len(remote.requests) == 1


@pytest.mark.asyncio
async def test_partial_local_output_is_withdrawn_before_remote_tokens() -> None:
    local = ScriptedLocalAdapter(["partial local "], fail_generate=True)
    remote = RemoteScript("data: remote answer\n\ndata: [END]\n\n")
    orchestrator = _orchestrator(local=local, remote=remote)
    session = ChatSession.start("en")

    updates = [
        update async for update in orchestrator.stream(session, "what caps generated output")
    ]

    kinds = [(update.kind, update.status or update.text) for update in updates]
    local_token = kinds.index(("token", "partial local "))
    discarded = kinds.index(("status", "local_discarded"))
    remote_token = kinds.index(("token", "remote answer"))
    assert local_token < discarded < remote_token
    settled = updates[-1].resolution
    assert settled is not None
    assert settled.answer == "remote answer"
    assert session.messages[-1].content == "remote answer"


@pytest.mark.asyncio
async def test_stream_that_never_settles_raises() -> None:
    orchestrator = _orchestrator()

    async def unsettled(call: object, text: str) -> AsyncIterator[object]:
        return
        yield

    orchestrator._run = unsettled

    with pytest.raises(RuntimeError):
        await orchestrator.resolve(ChatSession.start("en"), "session budget")


    assert len(remote.requests) == 1


@pytest.mark.asyncio
async def test_external_mode_skips_local_tier() -> None:
    local = ScriptedLocalAdapter(["unused"])
    remote = RemoteScript("data: From server\n\ndata: [END]\n\n")
    orchestrator = _orchestrator(local=local, remote=remote)
    session = ChatSession.start("en")

    resolution = await orchestrator.resolve(session, "what caps generated output", mode="external")

    assert resolution.source is Tier.REMOTE
    assert local.loads == []


@pytest.mark.asyncio
async def test_remote_control_events_become_guardrails() -> None:
    body = (
        "event: control\n"
        'data: {"level": "error", "code": "policy", "message": "Blocked topic"}\n'
        "\n"
        "data: partial\n"
        "\n"
        'data: {"warning": "slow"}\n'
        "\n"
        "data: [END]\n"
        "\n"
    )
    orchestrator = _orchestrator(remote=RemoteScript(body))
    session = ChatSession.start("en")

    resolution = await orchestrator.resolve(session, "what caps generated output", mode="external")

    assert resolution.source is Tier.REMOTE
    assert resolution.answer == "partial"
    [policy, slow] = resolution.guardrails
    assert (policy.severity, policy.code, policy.message) == (
        Severity.ERROR,
        "policy",
        "Blocked topic",
    )
    assert (slow.severity, slow.code, slow.message) == (Severity.WARN, "remote_guardrail", "slow")


@pytest.mark.asyncio
async def test_hard_cap_drops_chunks_and_reports_once() -> None:
    chunk = "x" * 2000
    body = "".join(f"data: {chunk}\n\n" for _ in range(4)) + "data: [END]\n\n"
    orchestrator = _orchestrator(remote=RemoteScript(body))
    session = ChatSession.start("en")
    session.budget.spent = 99_000

    resolution = await orchestrator.resolve(session, "what caps generated output", mode="external")

    assert resolution.source is Tier.REMOTE
    assert resolution.answer == chunk * 2
    assert session.budget.spent == 100_000
    assert _codes(resolution.guardrails).count("session_cap_hard") == 1


@pytest.mark.asyncio
async def test_exhausted_budget_settles_before_any_tier() -> None:
    remote = RemoteScript("data: nope\n\n")
    orchestrator = _orchestrator(remote=remote)
    session = ChatSession.start("en")
    session.budget.spent = 100_000

    resolution = await orchestrator.resolve(session, "session budget")

    assert resolution.source is Tier.NONE
    assert resolution.status == "budget_exhausted"
    assert _codes(resolution.guardrails) == ["session_cap_hard"]
    assert resolution.guardrails[0].is_error
    assert resolution.guardrails[0].message == "Session token cap reached (100k)."
    assert remote.requests == []


@pytest.mark.asyncio
async def test_remote_needs_reserved_headroom() -> None:
    remote = RemoteScript("data: nope\n\n")
    orchestrator = _orchestrator(remote=remote)
    session = ChatSession.start("en")
    session.budget.spent = 99_500

    resolution = await orchestrator.resolve(session, "what caps generated output", mode="external")

    assert resolution.source is Tier.NONE
    assert resolution.status == "budget_exhausted"
    assert _codes(resolution.guardrails) == ["server_budget"]
    assert remote.requests == []


@pytest.mark.asyncio
async def test_local_tier_needs_reserved_headroom() -> None:
    local = ScriptedLocalAdapter(["unused"])
    orchestrator = _orchestrator(local=local)
    session = ChatSession.start("en")
    session.budget.spent = 99_600

    resolution = await orchestrator.resolve(session, "what caps generated output", mode="local")

    assert local.loads == []
    assert resolution.status == "no_local_answer"


@pytest.mark.asyncio
async def test_soft_cap_warning_after_answer() -> None:
    orchestrator = _orchestrator()
    session = ChatSession.start("en")
    session.budget.spent = 80_000

    resolution = await orchestrator.resolve(session, "session budget")

    assert resolution.source is Tier.EXTRACTIVE
    assert _codes(resolution.guardrails) == ["soft_cap"]
    assert resolution.guardrails[0].severity is Severity.WARN


@pytest.mark.asyncio
async def test_soft_cap_message_names_configured_cap() -> None:
    orchestrator = _orchestrator()
    session = ChatSession.start("en", BudgetConfig(soft_cap=2_000, hard_cap=50_000))
    session.budget.spent = 2_500

    resolution = await orchestrator.resolve(session, "session budget")

    assert _codes(resolution.guardrails) == ["soft_cap"]
    assert "(2k)" in resolution.guardrails[0].message


@pytest.mark.asyncio
async def test_rejected_input_is_not_recorded() -> None:
    remote = RemoteScript("data: nope\n\n")
    orchestrator = _orchestrator(remote=remote)
    session = ChatSession.start("es")

    resolution = await orchestrator.resolve(session, "<script>alert(1)</script>")

    assert resolution.source is Tier.NONE
    assert resolution.status == "input_rejected"
    assert _codes(resolution.guardrails) == ["input_blocked"]
    assert resolution.guardrails[0].message.startswith("Bloqueado por Shield del cliente.")
    assert "script_open" in resolution.guardrails[0].message
    assert session.messages == []
    assert remote.requests == []


@pytest.mark.asyncio
async def test_network_failure_keeps_history_clean() -> None:
    orchestrator = _orchestrator(remote=RemoteScript(fail=True))
    session = ChatSession.start("en")

    resolution = await orchestrator.resolve(session, "what caps generated output", mode="external")

    assert resolution.source is Tier.NONE
    assert resolution.status == "network_error"
    assert _codes(resolution.guardrails) == ["network_error"]
    assert [m.role for m in session.messages] == ["user"]


@pytest.mark.asyncio
async def test_server_error_status() -> None:
    orchestrator = _orchestrator(remote=RemoteScript("oops", status=502))
    session = ChatSession.start("en")

    resolution = await orchestrator.resolve(session, "what caps generated output", mode="external")

    assert resolution.status == "server_error"
    assert _codes(resolution.guardrails) == ["server_error"]


@pytest.mark.asyncio
async def test_empty_remote_stream_is_reported() -> None:
    orchestrator = _orchestrator(remote=RemoteScript("data: [END]\n\n"))
    session = ChatSession.start("en")

    resolution = await orchestrator.resolve(session, "what caps generated output", mode="external")

    assert resolution.source is Tier.NONE
    assert resolution.status == "error_stream"


@pytest.mark.asyncio
async def test_remote_request_carries_trailing_window() -> None:
    remote = RemoteScript("data: ok\n\ndata: [END]\n\n")
    orchestrator = _orchestrator(remote=remote)
    session = ChatSession.start("en")
    for i in range(20):
        session.append("user" if i % 2 == 0 else "assistant", f"turn {i}")

    await orchestrator.resolve(
        session, "what caps generated output", mode="external", honeypot_value=""
    )

    [request] = remote.requests
    payload = json.loads(request.content)
    assert len(payload["messages"]) == 16
    assert payload["messages"][-1]["content"] == "what caps generated output"
    assert payload["csrf"] == session.csrf_token
    assert request.headers["x-csrf"] == session.csrf_token


@pytest.mark.asyncio
async def test_sink_is_cleared_and_receives_signals() -> None:
    sink = RecordingSink()
    sink.signals.append(GuardrailSignal(Severity.WARN, "stale", "from last call"))
    orchestrator = _orchestrator(local=ScriptedLocalAdapter(available=False))
    session = ChatSession.start("en")

    resolution = await orchestrator.resolve(session, "quantum", mode="local", sink=sink)

    assert sink.clears == 1
    assert sink.signals == resolution.guardrails
    assert session.last_guardrails == resolution.guardrails


@pytest.mark.asyncio
async def test_unavailable_corpus_falls_through() -> None:
    def missing() -> list[Passage]:
        raise CorpusUnavailableError("pack missing")

    orchestrator = _orchestrator(
        remote=RemoteScript("data: fallback\n\ndata: [END]\n\n"), source=missing
    )
    session = ChatSession.start("en")

    resolution = await orchestrator.resolve(session, "session budget", mode="external")

    assert resolution.source is Tier.REMOTE
    assert resolution.answer == "fallback"
