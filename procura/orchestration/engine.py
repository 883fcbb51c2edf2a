"""
Orchestration Engine

Drives a Run through its campaign stages. The engine never waits for a call
to finish: each stage fans out its calls and returns, and the next stage is
entered by `check_round_completion` once the round's calls are all terminal.
Every stage entry is a compare-and-swap on Run.status, so duplicate or
concurrent triggers advance a run exactly once.
"""
from __future__ import annotations

import asyncio
import traceback
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

import aiosqlite

from procura.adapters.mail.confirmation_mailer import (
    ConfirmationMailer,
    ConfirmationTerms,
    MailReply,
    looks_like_invoice,
)
from procura.adapters.storage.async_entity_repository import AsyncEntityRepository
from procura.adapters.voice.call_gateway import CallGateway
from procura.core.domain.state_machine import RunStateMachine, StateMachineError
from procura.core.types import (
    ROUND_AGENT_PROFILES,
    CallRound,
    CallStatus,
    MemoryChannel,
    RunStatus,
    offer_source_for_round,
)
from procura.domain.records import (
    CallRecord,
    CounterpartyCandidate,
    CounterpartyRecord,
    ParsedSpec,
    RunRecord,
)
from procura.exceptions import (
    CallGatewayError,
    CounterpartyNotFound,
    InfrastructureError,
    MailDeliveryError,
)
from procura.logging import log_crash, log_event
from procura.orchestration.transitions import ROUND_CALLING_STATUS, transition_for_round
from procura.orchestration.watchdog import WatchdogRegistry
from procura.orchestration.winner import Resolution, ResolvedOffer, resolve_winner
from procura.services.context_assembler import (
    Benchmark,
    ContextAssembler,
    money,
    to_dynamic_variables,
)
from procura.services.memory_store import MemoryStore
from procura.services.strategy_generator import StrategyGenerator, format_for_agent
from procura.settings import EngineSettings
from procura.streaming.activity import ActivityFeed, ActivityTracker, Service
from procura.streaming.bus import StreamBus
from procura.streaming.contracts import RunEventType
from procura.time_utils import parse_iso

UNRECOVERABLE_ERRORS = (InfrastructureError, aiosqlite.Error, StateMachineError, OSError)
VariablesBuilder = Callable[[CallRecord, CounterpartyRecord], Awaitable[Dict[str, str]]]


class OrchestrationEngine:
    def __init__(
        self,
        repository: AsyncEntityRepository,
        gateway: CallGateway,
        *,
        settings: Optional[EngineSettings] = None,
        memory: Optional[MemoryStore] = None,
        assembler: Optional[ContextAssembler] = None,
        strategist: Optional[StrategyGenerator] = None,
        mailer: Optional[ConfirmationMailer] = None,
        bus: Optional[StreamBus] = None,
        activity: Optional[ActivityTracker] = None,
        watchdog: Optional[WatchdogRegistry] = None,
        workspace: Optional[Path] = None,
    ):
        self.settings = settings or EngineSettings()
        self.repository = repository
        self.gateway = gateway
        self.memory = memory
        self.bus = bus or StreamBus()
        self.activity = activity or ActivityTracker(self.bus)
        self.feed = ActivityFeed(self.bus)
        self.assembler = assembler or ContextAssembler(
            repository,
            memory,
            activity=self.activity,
            target_price_ratio=self.settings.target_price_ratio,
            top_k=self.settings.memory_top_k,
        )
        self.strategist = strategist or StrategyGenerator(
            None, activity=self.activity, target_price_ratio=self.settings.target_price_ratio
        )
        self.mailer = mailer
        self.watchdog = watchdog or WatchdogRegistry(self.settings.watchdog_timeout_seconds)
        self.watchdog.bind(self.handle_watchdog_fire)
        self.workspace = workspace

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def create_run(self, raw_query: str, parsed_spec: ParsedSpec | Dict[str, Any]) -> RunRecord:
        run = await self.repository.create_run(raw_query, parsed_spec)
        log_event("run_created", {"run_id": run.id, "item": run.parsed_spec.item}, self.workspace)
        return run

    async def register_counterparties(
        self,
        run_id: str,
        candidates: Iterable[CounterpartyCandidate | Dict[str, Any]],
    ) -> List[CounterpartyRecord]:
        created: List[CounterpartyRecord] = []
        for candidate in candidates:
            if not isinstance(candidate, CounterpartyCandidate):
                candidate = CounterpartyCandidate.model_validate(candidate)
            record = await self.repository.create_counterparty(
                run_id,
                candidate.name,
                url=candidate.url,
                phone=candidate.phone,
                email=candidate.email,
                source=candidate.source,
                source_url=candidate.source_url,
                metadata=candidate.metadata,
            )
            created.append(record)
            await self._remember(run_id, record.id, candidate.discovery_snippet(), MemoryChannel.SEARCH)
        log_event(
            "counterparties_registered",
            {"run_id": run_id, "count": len(created), "callable": sum(1 for record in created if record.callable)},
            self.workspace,
        )
        return created

    # ------------------------------------------------------------------
    # Stage: round 1
    # ------------------------------------------------------------------

    async def start_run(self, run_id: str) -> bool:
        return await self.guard(run_id, "start_run", lambda: self._start_run(run_id))

    async def _start_run(self, run_id: str) -> bool:
        if not await self.repository.compare_and_set_run_status(
            run_id, RunStatus.PENDING, RunStatus.RUNNING, reason="start_run"
        ):
            log_event("run_start_skipped", {"run_id": run_id, "reason": "not_pending"}, self.workspace)
            return False
        await self.feed.stage(run_id, RunStatus.RUNNING.value)

        counterparties = await self.repository.list_counterparties(run_id)
        callable_counterparties = [counterparty for counterparty in counterparties if counterparty.callable]
        calls = await self._create_round_calls(run_id, CallRound.QUOTE, callable_counterparties)

        if not await self._advance(run_id, RunStatus.RUNNING, RunStatus.CALLING_ROUND_1, "round_1_calls_created"):
            return False

        if not callable_counterparties:
            await self.feed.start(
                run_id,
                kind="system",
                title="No Callable Vendors",
                description=f"None of the {len(counterparties)} discovered vendors had phone numbers. Voice call stage skipped.",
                status="done",
            )
        else:
            await self._dispatch_round(run_id, CallRound.QUOTE, calls, callable_counterparties, self._outreach_variables())

        await self.check_round_completion(run_id, CallRound.QUOTE)
        return True

    # ------------------------------------------------------------------
    # Round completion and named transitions
    # ------------------------------------------------------------------

    async def check_round_completion(self, run_id: str, round_number: int) -> bool:
        """
        Advance the run past `round_number` if every call of the round is terminal.
        Returns True only for the single caller whose compare-and-swap won.
        """
        return await self.guard(run_id, "check_round_completion", lambda: self._check_round_completion(run_id, round_number))

    async def _check_round_completion(self, run_id: str, round_number: int) -> bool:
        open_calls = await self.repository.count_open_calls(run_id, round_number)
        if open_calls > 0:
            self.watchdog.arm(run_id, round_number)
            log_event(
                "round_waiting",
                {"run_id": run_id, "round": int(round_number), "open_calls": open_calls},
                self.workspace,
            )
            return False

        self.watchdog.cancel(run_id, round_number)
        transition = transition_for_round(round_number)
        if transition is None:
            return False
        if not await self._advance(run_id, transition.from_status, transition.to_status, f"round_{int(round_number)}_complete"):
            log_event(
                "round_advance_skipped",
                {"run_id": run_id, "round": int(round_number), "expected": transition.from_status.value},
                self.workspace,
            )
            return False

        action: Callable[[str], Awaitable[Any]] = getattr(self, transition.action)
        await action(run_id)
        return True

    # ------------------------------------------------------------------
    # Stage: round 2
    # ------------------------------------------------------------------

    async def start_negotiation_round(self, run_id: str) -> None:
        benchmark, priced = await self._round_one_benchmark(run_id)
        counterparties = await self.repository.list_counterparties(run_id)

        eligible: List[CounterpartyRecord] = []
        if benchmark is not None and len(priced) >= 2:
            eligible = [
                counterparty
                for counterparty in counterparties
                if counterparty.id != benchmark.counterparty_id and counterparty.id in priced and counterparty.callable
            ]

        if not eligible:
            log_event(
                "negotiation_skipped",
                {"run_id": run_id, "priced_round_1_offers": len(priced)},
                self.workspace,
            )
            await self.feed.start(
                run_id,
                kind="system",
                title="Negotiation skipped",
                description=f"Round 1 produced {len(priced)} priced quote(s); not enough to negotiate against.",
                status="done",
            )
            if await self._advance(run_id, RunStatus.NEGOTIATING, RunStatus.SUMMARIZING, "negotiation_skipped"):
                await self.finalize_run(run_id)
            return

        target = benchmark.target(self.settings.target_price_ratio)
        calls = await self._create_round_calls(run_id, CallRound.NEGOTIATION, eligible)
        if not await self._advance(run_id, RunStatus.NEGOTIATING, RunStatus.CALLING_ROUND_2, "round_2_calls_created"):
            return

        await self.feed.start(
            run_id,
            kind="system",
            title="Starting Negotiation Round",
            description=(
                f"Round 1 collected {len(priced)} quotes. Best: {money(benchmark.price)}/unit from "
                f"{benchmark.counterparty_name}. Target: {money(target)}/unit. Calling {len(eligible)} vendors."
            ),
            tool="voice",
        )
        await self._dispatch_round(run_id, CallRound.NEGOTIATION, calls, eligible, self._negotiation_variables(benchmark))
        await self.check_round_completion(run_id, CallRound.NEGOTIATION)

    async def _round_one_benchmark(self, run_id: str) -> tuple[Optional[Benchmark], Dict[str, float]]:
        """Cheapest priced round-1 quote, plus each counterparty's latest priced round-1 price."""
        offers = await self.repository.list_offers(run_id, source=offer_source_for_round(1), order="recent")
        priced: Dict[str, float] = {}
        names: Dict[str, str] = {}
        for offer in offers:
            if offer.unit_price is None or offer.counterparty_id in priced:
                continue
            priced[offer.counterparty_id] = float(offer.unit_price)
            names[offer.counterparty_id] = offer.counterparty_name or "Unknown"
        if not priced:
            return None, priced
        best_id = min(priced, key=lambda counterparty_id: (priced[counterparty_id], names[counterparty_id].lower()))
        return Benchmark(price=priced[best_id], counterparty_id=best_id, counterparty_name=names[best_id]), priced

    # ------------------------------------------------------------------
    # Stage: resolution and round 3
    # ------------------------------------------------------------------

    async def _resolve(self, run_id: str) -> Resolution:
        offers, counterparties = await asyncio.gather(
            self.repository.list_offers(run_id, order="recent"),
            self.repository.list_counterparties(run_id),
        )
        return resolve_winner(offers, counterparties)

    async def finalize_run(self, run_id: str) -> None:
        resolution = await self._resolve(run_id)
        summary = resolution.summary()
        await self.bus.publish(run_id=run_id, event_type=RunEventType.SUMMARY, payload=summary)
        await self.feed.start(
            run_id,
            kind="system",
            title="Procurement Complete" if resolution.winner is None else "Winner resolved",
            description=summary["recommendation"],
            status="done",
        )
        log_event("run_resolved", {"run_id": run_id, **summary}, self.workspace)

        if resolution.winner is None:
            if await self._advance(run_id, RunStatus.SUMMARIZING, RunStatus.COMPLETE, "no_winner"):
                await self.feed.stage(run_id, RunStatus.COMPLETE.value)
                await self._retire_run(run_id)
            return
        await self.start_confirmation_round(run_id, resolution.winner)

    async def start_confirmation_round(self, run_id: str, winner: ResolvedOffer) -> None:
        counterparty = await self.repository.get_counterparty(winner.counterparty_id)
        if counterparty is None or not counterparty.callable:
            log_event(
                "confirmation_call_skipped",
                {"run_id": run_id, "counterparty_id": winner.counterparty_id, "reason": "no_phone"},
                self.workspace,
            )
            if await self._advance(run_id, RunStatus.SUMMARIZING, RunStatus.SENDING_CONFIRMATION, "confirmation_call_skipped"):
                await self.send_confirmation(run_id)
            return

        calls = await self._create_round_calls(run_id, CallRound.CONFIRMATION, [counterparty])
        if not await self._advance(run_id, RunStatus.SUMMARIZING, RunStatus.CALLING_ROUND_3, "round_3_call_created"):
            return
        await self._dispatch_round(run_id, CallRound.CONFIRMATION, calls, [counterparty], self._confirmation_variables())
        # A rejected confirmation call leaves nothing open, so this goes straight on to the email.
        await self.check_round_completion(run_id, CallRound.CONFIRMATION)

    async def send_confirmation(self, run_id: str) -> None:
        resolution = await self._resolve(run_id)
        winner = resolution.winner
        final_status = RunStatus.COMPLETE
        try:
            if winner is None:
                return

            recipient = self.mailer.resolve_recipient(winner.email) if self.mailer is not None else ""
            if self.mailer is None or not self.mailer.configured or not recipient:
                await self.feed.start(
                    run_id,
                    kind="email",
                    title=f"No email for {winner.counterparty_name}",
                    description="Confirmation email skipped. Manual outreach required.",
                    status="done",
                    tool="mail",
                )
                return

            run = await self.repository.require_run(run_id)
            activity_id = await self.feed.start(
                run_id,
                kind="email",
                title=f"Sending confirmation to {winner.counterparty_name}",
                description=f"Emailing {recipient} with confirmed deal terms and invoice request...",
                tool="mail",
            )
            terms = ConfirmationTerms(
                counterparty_name=winner.counterparty_name,
                item=run.parsed_spec.item,
                quantity=run.parsed_spec.quantity,
                unit_price=winner.final_price,
                original_price=winner.original_price,
                was_negotiated=winner.was_negotiated,
                savings_percent=winner.savings_percent,
                lead_time_days=winner.final_offer.lead_time_days,
                shipping=winner.final_offer.shipping,
                terms=winner.final_offer.terms,
                moq=winner.final_offer.moq,
            )
            try:
                async with self.activity.active(run_id, Service.MAIL):
                    sent = await self.mailer.send(recipient, terms)
            except MailDeliveryError as exc:
                log_event("confirmation_email_failed", {"run_id": run_id, "error": str(exc), "level": "warning"}, self.workspace)
                await self.feed.update(run_id, activity_id, status="error", description=f"Failed to send email: {exc}")
                return

            await self.repository.record_notification(
                run_id,
                winner.counterparty_id,
                sent.recipient,
                message_id=sent.message_id,
                thread_id=sent.thread_id,
            )
            await self.feed.update(
                run_id,
                activity_id,
                status="done",
                description=f"Confirmation email sent to {sent.recipient} at {money(winner.final_price)}/unit. Awaiting invoice.",
            )
            await self.bus.publish(
                run_id=run_id,
                event_type=RunEventType.EMAIL_SENT,
                payload={
                    "counterparty_name": winner.counterparty_name,
                    "recipient": sent.recipient,
                    "message_id": sent.message_id,
                    "thread_id": sent.thread_id,
                    "unit_price": winner.final_price,
                    "was_negotiated": winner.was_negotiated,
                    "original_price": winner.original_price,
                },
            )
            final_status = RunStatus.AWAITING_INVOICE
        finally:
            await self._advance(run_id, RunStatus.SENDING_CONFIRMATION, final_status, "confirmation_handoff")
            await self.feed.stage(run_id, RunStatus.COMPLETE.value, status=final_status.value)
            await self._retire_run(run_id, keep_stream=final_status == RunStatus.AWAITING_INVOICE)

    async def handle_mail_reply(self, reply: MailReply) -> bool:
        """Correlate a mail reply with the run awaiting an invoice from that sender."""
        sender = reply.sender
        if not sender:
            log_event("mail_reply_dropped", {"reason": "no_sender", "level": "warning"}, self.workspace)
            return False
        notification = await self.repository.find_awaiting_notification(sender)
        if notification is None:
            log_event("mail_reply_unmatched", {"sender": sender}, self.workspace)
            return False

        run_id = notification.run_id
        return await self.guard(run_id, "handle_mail_reply", lambda: self._apply_mail_reply(run_id, reply, notification.counterparty_id))

    async def _apply_mail_reply(self, run_id: str, reply: MailReply, counterparty_id: str) -> bool:
        counterparty = await self.repository.get_counterparty(counterparty_id)
        name = counterparty.name if counterparty else reply.sender
        is_invoice = looks_like_invoice(reply.subject, reply.text, reply.attachments)
        await self.feed.start(
            run_id,
            kind="email",
            title=f"Invoice received from {name}" if is_invoice else f"Email reply from {name}",
            description=f'Subject: "{reply.subject}". {len(reply.attachments)} attachment(s).',
            status="done",
            tool="mail",
        )
        if not is_invoice:
            return False
        if not await self._advance(run_id, RunStatus.AWAITING_INVOICE, RunStatus.INVOICE_RECEIVED, "invoice_reply"):
            return False
        await self.bus.publish(
            run_id=run_id,
            event_type=RunEventType.INVOICE_RECEIVED,
            payload={
                "counterparty_id": counterparty_id,
                "counterparty_name": name,
                "subject": reply.subject,
                "attachment_count": len(reply.attachments),
                "message_id": reply.message_id,
                "thread_id": reply.thread_id,
            },
        )
        await self.feed.stage(run_id, RunStatus.INVOICE_RECEIVED.value)
        await self._retire_run(run_id)
        return True

    # ------------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------------

    async def handle_watchdog_fire(self, run_id: str, round_number: int) -> None:
        await self.guard(run_id, "watchdog", lambda: self._reconcile_stale_calls(run_id, round_number))

    async def _reconcile_stale_calls(self, run_id: str, round_number: int) -> None:
        run = await self.repository.get_run(run_id)
        calling_status = ROUND_CALLING_STATUS.get(CallRound(int(round_number)))
        if run is None or run.status != calling_status:
            return

        open_calls = await self.repository.list_open_calls(run_id, round_number)
        now = datetime.now(UTC)
        timeout = self.settings.watchdog_timeout_seconds
        retry_calls: List[CallRecord] = []
        retries: List[CounterpartyRecord] = []
        for call in open_calls:
            started = parse_iso(call.submitted_at) or parse_iso(call.created_at)
            if started is not None and (now - started).total_seconds() < timeout:
                continue
            counterparty = await self.repository.get_counterparty(call.counterparty_id)
            retry = (
                counterparty is not None
                and counterparty.callable
                and not self.watchdog.was_retried(run_id, round_number, call.counterparty_id)
            )
            # The replacement row is written together with the failure, so the round never reads as finished.
            failed, replacement = await self.repository.replace_stale_call(call, "stale", retry=retry)
            if not failed:
                continue
            log_event(
                "call_stale",
                {"run_id": run_id, "round": int(round_number), "call_id": call.id, "counterparty_id": call.counterparty_id, "level": "warning"},
                self.workspace,
            )
            await self.bus.publish(
                run_id=run_id,
                event_type=RunEventType.CALL_UPDATE,
                payload={"call_id": call.id, "counterparty_id": call.counterparty_id, "status": CallStatus.FAILED.value, "round": int(round_number), "reason": "stale"},
            )
            if replacement is None:
                log_event(
                    "call_failed_permanently",
                    {"run_id": run_id, "round": int(round_number), "counterparty_id": call.counterparty_id},
                    self.workspace,
                )
                continue
            self.watchdog.mark_retried(run_id, round_number, call.counterparty_id)
            retry_calls.append(replacement)
            retries.append(counterparty)

        if retries:
            builder = await self._variables_for_round(run_id, round_number)
            await self._dispatch_round(run_id, round_number, retry_calls, retries, builder)

        await self.check_round_completion(run_id, round_number)

    async def _variables_for_round(self, run_id: str, round_number: int) -> VariablesBuilder:
        if int(round_number) == CallRound.NEGOTIATION:
            benchmark, _ = await self._round_one_benchmark(run_id)
            return self._negotiation_variables(benchmark)
        if int(round_number) == CallRound.CONFIRMATION:
            return self._confirmation_variables()
        return self._outreach_variables()

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def _create_round_calls(
        self,
        run_id: str,
        round_number: int,
        counterparties: Sequence[CounterpartyRecord],
    ) -> List[CallRecord]:
        # Rows exist before any submission so the round cannot look finished mid fan-out.
        calls = []
        for counterparty in counterparties:
            calls.append(await self.repository.create_call(run_id, counterparty.id, round_number))
        return calls

    async def _dispatch_round(
        self,
        run_id: str,
        round_number: int,
        calls: Sequence[CallRecord],
        counterparties: Sequence[CounterpartyRecord],
        build_variables: VariablesBuilder,
    ) -> None:
        pairs = list(zip(calls, counterparties))
        if not pairs:
            return
        await self.publish_calls_change(run_id)
        plan_id = await self.feed.start(
            run_id,
            kind="call",
            title=f"Preparing to call {len(pairs)} vendors (round {int(round_number)})",
            description=", ".join(counterparty.name for _, counterparty in pairs),
            tool="voice",
        )

        batch_size = max(1, self.settings.call_batch_size)
        accepted = 0
        for start in range(0, len(pairs), batch_size):
            batch = pairs[start:start + batch_size]
            results = await asyncio.gather(
                *[
                    self._submit_call(run_id, round_number, call, counterparty, start + offset, build_variables)
                    for offset, (call, counterparty) in enumerate(batch)
                ]
            )
            accepted += sum(1 for result in results if result)
            if start + batch_size < len(pairs) and self.settings.batch_pause_seconds > 0:
                await asyncio.sleep(self.settings.batch_pause_seconds)

        failed = len(pairs) - accepted
        await self.feed.update(
            run_id,
            plan_id,
            status="error" if accepted == 0 else "done",
            description=f"{accepted}/{len(pairs)} calls placed{f', {failed} failed' if failed else ''}. Waiting for transcripts.",
        )
        await self.publish_calls_change(run_id)
        log_event(
            "round_dispatched",
            {"run_id": run_id, "round": int(round_number), "accepted": accepted, "failed": failed},
            self.workspace,
        )

    async def _submit_call(
        self,
        run_id: str,
        round_number: int,
        call: CallRecord,
        counterparty: CounterpartyRecord,
        index: int,
        build_variables: VariablesBuilder,
    ) -> bool:
        activity_id = await self.feed.start(
            run_id,
            kind="call",
            title=f"Calling {counterparty.name}",
            description=f"Dialing {counterparty.phone} (round {int(round_number)})...",
            tool="voice",
        )
        profile = ROUND_AGENT_PROFILES[CallRound(int(round_number))]
        try:
            variables = await build_variables(call, counterparty)
            async with self.activity.active(run_id, Service.VOICE):
                result = await self.gateway.submit(profile, counterparty.phone or "", variables, index=index)
        except (CallGatewayError, CounterpartyNotFound) as exc:
            await self.repository.mark_call_failed(call.id, f"submit_error: {exc}"[:500])
            await self.feed.update(run_id, activity_id, status="error", description=f"Failed to call {counterparty.name}: {str(exc)[:100]}")
            log_event(
                "call_submit_failed",
                {"run_id": run_id, "round": int(round_number), "counterparty_id": counterparty.id, "error": str(exc), "level": "warning"},
                self.workspace,
            )
            return False

        if not result.accepted:
            await self.repository.mark_call_failed(call.id, "rejected")
            await self.feed.update(run_id, activity_id, status="error", description=f"Provider rejected the call to {counterparty.name}.")
            log_event(
                "call_rejected",
                {"run_id": run_id, "round": int(round_number), "counterparty_id": counterparty.id, "level": "warning"},
                self.workspace,
            )
            return False

        await self.repository.mark_call_submitted(call.id, result.handle)
        await self.feed.update(
            run_id,
            activity_id,
            status="done",
            description=f"Call placed to {counterparty.name}{' (test mode)' if result.overridden else ''}. Waiting for transcript...",
        )
        log_event(
            "call_submitted",
            {"run_id": run_id, "round": int(round_number), "call_id": call.id, "handle": result.handle, "attempt": call.attempt},
            self.workspace,
        )
        return True

    def _outreach_variables(self) -> VariablesBuilder:
        async def _build(call: CallRecord, counterparty: CounterpartyRecord) -> Dict[str, str]:
            context = await self.assembler.assemble(call.run_id, counterparty.id, call.round)
            return to_dynamic_variables(context)

        return _build

    def _negotiation_variables(self, benchmark: Optional[Benchmark]) -> VariablesBuilder:
        async def _build(call: CallRecord, counterparty: CounterpartyRecord) -> Dict[str, str]:
            context = await self.assembler.assemble(call.run_id, counterparty.id, call.round, benchmark)
            plan = await self.strategist.generate(context)
            context.negotiation_plan = format_for_agent(plan)
            return to_dynamic_variables(context)

        return _build

    def _confirmation_variables(self) -> VariablesBuilder:
        async def _build(call: CallRecord, counterparty: CounterpartyRecord) -> Dict[str, str]:
            run = await self.repository.require_run(call.run_id)
            resolution = await self._resolve(call.run_id)
            winner = resolution.winner
            if winner is None or winner.counterparty_id != counterparty.id:
                raise CounterpartyNotFound(f"Counterparty {counterparty.id} is not the resolved winner")
            offer = winner.final_offer
            recipient = self.mailer.resolve_recipient(winner.email) if self.mailer is not None else (winner.email or "")
            return {
                "run_id": call.run_id,
                "vendor_id": counterparty.id,
                "round": str(int(call.round)),
                "vendor_name": counterparty.name,
                "item": run.parsed_spec.item,
                "quantity": run.parsed_spec.quantity,
                "agreed_price": money(winner.final_price),
                "original_price": money(winner.original_price),
                "was_negotiated": "yes" if winner.was_negotiated else "no",
                "savings_percent": f"{winner.savings_percent}%" if winner.savings_percent is not None else "",
                "lead_time": f"{offer.lead_time_days} days" if offer.lead_time_days is not None else "",
                "shipping": offer.shipping or "",
                "payment_terms": offer.terms or "",
                "moq": offer.moq or "",
                "vendor_email": recipient,
                "next_step": (
                    "We will send a confirmation email with a request for a formal invoice."
                    if recipient
                    else "We will follow up to finalize the purchase order."
                ),
            }

        return _build

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    async def _advance(self, run_id: str, expected: RunStatus, new_status: RunStatus, reason: str) -> bool:
        advanced = await self.repository.compare_and_set_run_status(run_id, expected, new_status, reason=reason)
        if advanced:
            log_event(
                "run_transition",
                {"run_id": run_id, "from": expected.value, "to": new_status.value, "reason": reason},
                self.workspace,
            )
            if not RunStateMachine.is_terminal(new_status):
                await self.feed.stage(run_id, new_status.value)
        return advanced

    async def publish_calls_change(self, run_id: str) -> None:
        calls, counterparties = await asyncio.gather(
            self.repository.list_calls(run_id),
            self.repository.list_counterparties(run_id),
        )
        names = {counterparty.id: counterparty.name for counterparty in counterparties}
        await self.bus.publish(
            run_id=run_id,
            event_type=RunEventType.CALLS_CHANGE,
            payload={
                "calls": [
                    {
                        "id": call.id,
                        "supplier": names.get(call.counterparty_id, "Unknown"),
                        "round": call.round,
                        "attempt": call.attempt,
                        "status": call.status.value,
                        "duration": call.duration or 0,
                    }
                    for call in calls
                ]
            },
        )

    async def _remember(self, run_id: str, counterparty_id: Optional[str], text: str, channel: MemoryChannel) -> None:
        if self.memory is None or not text:
            return
        try:
            async with self.activity.active(run_id, Service.MEMORY):
                await self.memory.write(text, run_id=run_id, counterparty_id=counterparty_id, channel=channel)
        except InfrastructureError as exc:
            log_event(
                "memory_write_failed",
                {"run_id": run_id, "counterparty_id": counterparty_id, "channel": channel.value, "error": str(exc), "level": "warning"},
                self.workspace,
            )

    async def guard(self, run_id: str, stage: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Run one engine stage; shared-infrastructure faults fail the run instead of escaping."""
        try:
            return await operation()
        except UNRECOVERABLE_ERRORS as exc:
            await self.fail_run(run_id, stage, exc)
            return False

    async def fail_run(self, run_id: str, stage: str, exc: BaseException) -> None:
        log_event(
            "run_failed",
            {"run_id": run_id, "stage": stage, "failure_class": type(exc).__name__, "error": str(exc), "level": "error"},
            self.workspace,
        )
        log_crash(exc, "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), self.workspace)
        try:
            await self.repository.advance_run_status(run_id, RunStatus.FAILED, reason=f"{stage}: {type(exc).__name__}")
        except UNRECOVERABLE_ERRORS as store_exc:
            log_event(
                "run_fail_persist_failed",
                {"run_id": run_id, "error": str(store_exc), "level": "critical"},
                self.workspace,
            )
        self.watchdog.forget_run(run_id)
        await self.feed.error(run_id, "Error", f"Orchestrator failed during {stage}: {exc}")
        await self.feed.stage(run_id, RunStatus.COMPLETE.value, status=RunStatus.FAILED.value)
        await self.bus.clear_run(run_id)

    async def _retire_run(self, run_id: str, *, keep_stream: bool = False) -> None:
        """Release per-run timers and retry markers once no more calls can be placed."""
        self.watchdog.forget_run(run_id)
        # An awaiting_invoice run still publishes its invoice event on the same sequence.
        if not keep_stream:
            await self.bus.clear_run(run_id)

    async def close(self) -> None:
        await self.watchdog.close()
