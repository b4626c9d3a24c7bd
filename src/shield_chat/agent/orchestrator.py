"""Tiered resolution orchestrator: extractive, then local model, then remote."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from shield_chat.agent.guardrails import (
    GuardrailReport,
    GuardrailSink,
    format_cap,
    message_for,
    signal_from_control,
)
from shield_chat.agent.local import LocalInferenceAdapter, LocalInferenceUnavailableError
from shield_chat.agent.remote import RemoteInferenceClient, RemoteInferenceError
from shield_chat.agent.session import ChatSession
from shield_chat.budget.governor import BudgetGovernor, MeteredAnswer
from shield_chat.config import OrchestratorConfig
from shield_chat.obs.tracing import Timer, TraceStore, extract_citations
from shield_chat.retrieval.corpus import CorpusUnavailableError
from shield_chat.retrieval.drafter import ExtractiveDrafter, citation_marker
from shield_chat.safety.scanner import ContentSafetyScanner
from shield_chat.stream.decoder import StreamDecoder, decode_stream
from shield_chat.types import (
    GuardrailSignal,
    Mode,
    Resolution,
    ResolutionUpdate,
    ScoredPassage,
    Severity,
    StreamEventKind,
    Tier,
)

logger = logging.getLogger(__name__)

_LANGUAGE_NAMES = {"en": "English", "es": "Spanish"}

_LOCAL_SYSTEM_PROMPT = """
You are an on-device assistant.

Rules:
1) Answer only from the context passages below.
2) Cite every factual statement with its passage id, like [#passage-id].
3) If the context does not contain the answer, say you cannot verify it.
4) Reply in {language}.

Context:
{context}
""".strip()


def build_system_instruction(passages: list[ScoredPassage], language: str) -> str:
    """Restrict the local model to the supplied passages and their ids."""

    if passages:
        context = "\n".join(
            f"{citation_marker(item.passage.passage_id)} {item.passage.text}" for item in passages
        )
    else:
        context = "(no passages)"
    return _LOCAL_SYSTEM_PROMPT.format(
        language=_LANGUAGE_NAMES.get(language, "English"), context=context
    )


@dataclass
class _Call:
    """Mutable state of one resolution call."""

    session: ChatSession
    mode: Mode
    governor: BudgetGovernor
    sink: GuardrailSink | None
    report: GuardrailReport = field(default_factory=GuardrailReport)
    pending: list[ResolutionUpdate] = field(default_factory=list)
    query: str = ""
    spent_at_start: int = 0
    hard_cap_reported: bool = False
    grounding: list[ScoredPassage] = field(default_factory=list)
    settled: Resolution | None = None

    @property
    def language(self) -> str:
        return self.session.language

    def signal(self, severity: Severity, code: str, **params: object) -> GuardrailSignal:
        signal = GuardrailSignal(
            severity=severity, code=code, message=message_for(code, self.language, **params)
        )
        self.push(signal)
        return signal

    def push(self, signal: GuardrailSignal) -> None:
        self.report.emit(signal)
        if self.sink is not None:
            self.sink.emit(signal)
        self.pending.append(ResolutionUpdate(kind="guardrail", signal=signal))

    def status(self, status: str, *, progress: int | None = None) -> None:
        self.pending.append(ResolutionUpdate(kind="status", status=status, progress=progress))

    def report_hard_cap(self) -> None:
        if self.hard_cap_reported:
            return
        self.hard_cap_reported = True
        self.signal(
            Severity.ERROR, "session_cap_hard", hard_cap=format_cap(self.governor.state.hard)
        )

    def drain(self) -> list[ResolutionUpdate]:
        updates, self.pending = self.pending, []
        return updates


class ResolutionOrchestrator:
    """Answers a user message from the cheapest tier that can.

    States: Idle -> ScanningInput -> Retrieving -> (LocalInfer) ->
    (RemoteInfer) -> Settled. Tiers never run concurrently, and a failure in
    any tier becomes a guardrail signal plus a fallthrough, never an
    exception out of `stream`/`resolve`. Callers serialize calls per session.
    """

    def __init__(
        self,
        *,
        drafter: ExtractiveDrafter,
        scanner: ContentSafetyScanner | None = None,
        local: LocalInferenceAdapter | None = None,
        remote: RemoteInferenceClient | None = None,
        trace_store: TraceStore | None = None,
        config: OrchestratorConfig | None = None,
    ) -> None:
        self.config = config or OrchestratorConfig()
        self.drafter = drafter
        self.scanner = scanner or ContentSafetyScanner(self.config.scanner)
        self.local = local
        self.remote = remote
        self.trace_store = trace_store or TraceStore()

    async def resolve(
        self,
        session: ChatSession,
        text: str,
        *,
        mode: Mode | str | None = None,
        honeypot_value: str | None = None,
        sink: GuardrailSink | None = None,
    ) -> Resolution:
        """Drain `stream` and return the settled resolution."""

        settled: Resolution | None = None
        async for update in self.stream(
            session, text, mode=mode, honeypot_value=honeypot_value, sink=sink
        ):
            if update.kind == "settled":
                settled = update.resolution
        if settled is None:
            raise RuntimeError("resolution stream ended without settling")
        return settled

    async def stream(
        self,
        session: ChatSession,
        text: str,
        *,
        mode: Mode | str | None = None,
        honeypot_value: str | None = None,
        sink: GuardrailSink | None = None,
    ) -> AsyncIterator[ResolutionUpdate]:
        """Yield status, token and guardrail updates, ending with `settled`."""

        call = _Call(
            session=session,
            mode=Mode.normalize(mode or self.config.default_mode),
            governor=BudgetGovernor(session.budget, self.config.budget),
            sink=sink,
            spent_at_start=session.budget.spent,
        )
        if sink is not None:
            sink.clear()
        if honeypot_value is not None:
            session.honeypot_value = honeypot_value

        with Timer() as timer:
            async for update in self._run(call, text):
                yield update
            resolution = call.settled
            if resolution is None:
                raise RuntimeError("resolution stream ended without settling")
            resolution.guardrails = list(call.report.signals)

        self._record(call, resolution, timer.elapsed_ms)
        session.last_guardrails = list(call.report.signals)
        yield ResolutionUpdate(kind="settled", resolution=resolution, tier=resolution.source)

    async def _run(self, call: _Call, text: str) -> AsyncIterator[ResolutionUpdate]:
        if not self._accept_input(call, text):
            for update in call.drain():
                yield update
            return

        if not call.governor.can_spend(1):
            call.report_hard_cap()
            self._settle(call, Tier.NONE, "", "budget_exhausted")
            for update in call.drain():
                yield update
            return

        call.status("thinking_local")
        for update in call.drain():
            yield update
        if self._try_extractive(call):
            for update in call.drain():
                yield update
            return

        if call.mode is not Mode.EXTERNAL:
            async for update in self._try_local(call):
                yield update
            if call.settled is not None:
                return

        if call.mode is Mode.LOCAL:
            call.signal(Severity.WARN, "no_local_answer")
            self._settle(call, Tier.NONE, "", "no_local_answer")
            for update in call.drain():
                yield update
            return

        async for update in self._try_remote(call):
            yield update

    def _accept_input(self, call: _Call, text: str) -> bool:
        first = self.scanner.client_check(text)
        second = self.scanner.client_check(first.sanitized) if first.ok else None
        for check in (first, second):
            if check is None or check.ok:
                continue
            reasons = ", ".join(check.reasons) or "risk"
            logger.info("Input rejected: %s", reasons)
            call.signal(Severity.ERROR, "input_blocked", reasons=reasons)
            self._settle(call, Tier.NONE, "", "input_rejected")
            return False

        query = first.sanitized
        if not query:
            self._settle(call, Tier.NONE, "", "idle")
            return False
        call.query = query
        call.session.append("user", query)
        return True

    def _try_extractive(self, call: _Call) -> bool:
        retrieval_cfg = self.config.retrieval
        try:
            draft = self.drafter.draft(
                call.query,
                call.language,
                bm25_min=retrieval_cfg.bm25_min,
                coverage_needed=retrieval_cfg.coverage_needed,
            )
        except CorpusUnavailableError as exc:
            logger.warning("Corpus unavailable, skipping extractive tier: %s", exc)
            return False
        except Exception:
            logger.exception("Extractive tier failed")
            return False

        if draft is None:
            logger.info("Extractive tier declined")
            return False

        call.governor.note(call.governor.approx_cost(draft.answer))
        call.grounding = draft.passages
        call.pending.append(ResolutionUpdate(kind="token", text=draft.answer, tier=Tier.EXTRACTIVE))
        self._succeed(call, Tier.EXTRACTIVE, draft.answer, citations=draft.citations)
        return True

    async def _try_local(self, call: _Call) -> AsyncIterator[ResolutionUpdate]:
        local = self.local
        if local is None or not local.available:
            call.signal(Severity.WARN, "accelerator_unavailable")
            for update in call.drain():
                yield update
            return
        if not call.governor.has_headroom(self.config.budget.local_reserve):
            logger.info("Skipping local tier: headroom %d", call.governor.headroom)
            return

        metered = MeteredAnswer(call.governor, call.report_hard_cap)
        try:
            call.status("loading_local_model")
            for update in call.drain():
                yield update
            await local.load(
                self.config.local.model_identifier,
                lambda fraction: call.status(
                    "loading_local_model", progress=int(round(fraction * 100))
                ),
            )
            call.grounding = self._grounding_passages(call)
            system_instruction = build_system_instruction(call.grounding, call.language)

            call.status("streaming_local_gpu")
            for update in call.drain():
                yield update
            async for token in local.generate(call.query, system_instruction):
                if metered.offer(token):
                    yield ResolutionUpdate(kind="token", text=token, tier=Tier.LOCAL)
                for update in call.drain():
                    yield update
        except LocalInferenceUnavailableError as exc:
            logger.warning("Local tier unavailable: %s", exc)
            call.signal(Severity.WARN, "accelerator_unavailable")
            self._discard_local(call, metered)
        except Exception:
            logger.exception("Local tier failed")
            call.signal(Severity.WARN, "local_model_failed")
            self._discard_local(call, metered)
        else:
            if metered.text:
                self._succeed(
                    call, Tier.LOCAL, metered.text, citations=extract_citations(metered.text)
                )
        for update in call.drain():
            yield update

    async def _try_remote(self, call: _Call) -> AsyncIterator[ResolutionUpdate]:
        remote = self.remote
        if remote is None:
            logger.info("Remote tier not configured")
            call.signal(Severity.WARN, "no_local_answer")
            self._settle(call, Tier.NONE, "", "no_local_answer")
            for update in call.drain():
                yield update
            return
        if not call.governor.has_headroom(self.config.budget.remote_reserve):
            call.signal(Severity.WARN, "server_budget")
            self._settle(call, Tier.NONE, "", "budget_exhausted")
            for update in call.drain():
                yield update
            return

        session = call.session
        request = remote.build_request(
            session.window(remote.config.history_window),
            language=session.language,
            csrf_token=session.csrf_token,
            honeypot_value=session.honeypot_value,
        )
        decoder = StreamDecoder()
        metered = MeteredAnswer(call.governor, call.report_hard_cap)
        streaming = False
        call.status("connecting")
        for update in call.drain():
            yield update

        try:
            async for event in decode_stream(remote.stream(request), decoder):
                if event.kind is StreamEventKind.CONTROL:
                    call.push(signal_from_control(event.payload, call.language))
                elif event.kind is StreamEventKind.CONTENT:
                    if not streaming:
                        streaming = True
                        call.status("streaming")
                        for update in call.drain():
                            yield update
                    if metered.offer(str(event.payload)):
                        yield ResolutionUpdate(kind="token", text=str(event.payload), tier=Tier.REMOTE)
                for update in call.drain():
                    yield update
        except RemoteInferenceError as exc:
            if exc.is_transport:
                call.signal(Severity.ERROR, "network_error")
                status = "network_error"
            else:
                call.signal(Severity.ERROR, "server_error")
                status = "server_error"
            self._settle(call, Tier.NONE, metered.text, status)
        except Exception:
            logger.exception("Remote tier failed")
            call.signal(Severity.ERROR, "network_error")
            self._settle(call, Tier.NONE, metered.text, "network_error")
        else:
            if decoder.usage.resources["tokens"].used is not None:
                logger.debug("Remote usage: %s", decoder.usage.snapshot())
            if metered.text:
                self._succeed(
                    call, Tier.REMOTE, metered.text, citations=extract_citations(metered.text)
                )
            else:
                status = "budget_exhausted" if metered.cap_hit else "error_stream"
                self._settle(call, Tier.NONE, "", status)
        for update in call.drain():
            yield update

    @staticmethod
    def _discard_local(call: _Call, metered: MeteredAnswer) -> None:
        # Tokens already streamed from a failed local run are withdrawn.
        if metered.text:
            logger.info("Discarding %d chars of partial local output", len(metered.text))
            call.status("local_discarded")

    def _grounding_passages(self, call: _Call) -> list[ScoredPassage]:
        try:
            index = self.drafter.corpus.get()
        except CorpusUnavailableError as exc:
            logger.warning("Corpus unavailable for local grounding: %s", exc)
            return []
        return index.strong_passages(
            call.query, call.language, limit=self.config.local.max_context_passages
        )

    def _succeed(self, call: _Call, tier: Tier, answer: str, *, citations: list[str]) -> None:
        call.session.append("assistant", answer)
        if call.governor.soft_exceeded:
            call.signal(
                Severity.WARN, "soft_cap", soft_cap=format_cap(call.governor.state.soft)
            )
        logger.info("Settled on %s tier (%d chars)", tier.value, len(answer))
        self._settle(call, tier, answer, "idle", citations=citations)

    def _settle(
        self,
        call: _Call,
        tier: Tier,
        answer: str,
        status: str,
        *,
        citations: list[str] | None = None,
    ) -> None:
        call.settled = Resolution(
            source=tier,
            answer=answer,
            status=status,
            guardrails=call.report.signals,
            citations=citations or [],
            cost=call.session.budget.spent - call.spent_at_start,
        )

    def _record(self, call: _Call, resolution: Resolution, latency_ms: float) -> None:
        snippets = [item.passage.text for item in call.grounding]
        if resolution.source in (Tier.EXTRACTIVE, Tier.LOCAL):
            source_snippets = snippets
        else:
            source_snippets = []
        record = self.trace_store.create_record(
            query=call.query,
            answer=resolution.answer,
            source=resolution.source.value,
            status=resolution.status,
            citations=resolution.citations,
            source_snippets=source_snippets,
            guardrails=call.report.codes,
            cost_units=resolution.cost,
            latency_ms=latency_ms,
        )
        resolution.trace_id = record.trace_id
